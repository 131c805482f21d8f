"""
Burnout assessment wizard over the session socket.

Protocol (same /ws/cbt endpoint as the therapy session):
  -> {"type": "start-burnout", "requestId", "userId"}         once, on first open
  <- {"type": "burnout-questions", "sessionId", "questions"}   question list
  -> {"type": "answer", "sessionId", "questionId", "response"} per question
  -> header + blob per modality                              vlog questions only
  -> {"type": "assessment-complete", "sessionId"}             after the last answer
  <- {"type": "assessment-result", "score", "summary"}        final result
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from conversation import Conversation
from frame_classifier import FrameClassifier
from media_devices import ChunkRecorder, MediaDevices
from session_frames import InboundFrame, MediaBlob, Message, MessageKind, Modality, iso_now
from socket_transport import Connection

logger = logging.getLogger(__name__)

LIKERT_OPTIONS = ("Never", "Rarely", "Sometimes", "Often", "Always")

RECORDED_RESPONSE = "recorded"


@dataclass
class BurnoutQuestion:
    question_id: int
    question: str
    domain: str = ""
    multimodal: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "BurnoutQuestion":
        return cls(
            question_id=data.get("questionId", data.get("id")),
            question=str(data.get("question", "")),
            domain=str(data.get("domain") or ""),
            multimodal=bool(data.get("multimodal", False)),
        )


class BurnoutAssessment:
    """Step-through questionnaire driven by server events.

    Usage:
        assessment = BurnoutAssessment(user_id, on_complete=show_result)
        await assessment.connect(url, token)
        receiver = asyncio.create_task(assessment.receive())
        ...
        assessment.answer(q.question_id, "Often")
        await assessment.next()
    """

    def __init__(self, user_id: str | None = None,
                 on_complete: Callable[[dict], None] | None = None,
                 on_questions: Callable[[list], None] | None = None,
                 audio_store=None):
        self.user_id = user_id
        self.request_id = str(uuid.uuid4())
        self.session_id: str | None = None
        self.questions: list[BurnoutQuestion] = []
        self.index = 0
        self.responses: dict = {}
        self.error: str | None = None
        self.finished = False
        self.result: dict | None = None
        self.connection: Connection | None = None

        self.conversation = Conversation()
        self.classifier = FrameClassifier(audio_store)
        self._on_complete = on_complete
        self._on_questions = on_questions
        self._started = False
        self._completion_sent = False
        self._questions_ready = asyncio.Event()
        self._dispatch_lock = asyncio.Lock()

        self.conversation.on(MessageKind.DOMAIN_EVENT, self._on_event)
        self.conversation.on(MessageKind.SYSTEM_NOTICE, self._on_notice)
        self.conversation.on_complete(self._on_final_result)

    # ── Connection ────────────────────────────────────────────────

    async def connect(self, url: str, token: str | None = None, connect=None) -> bool:
        if self.connection is not None:
            await self.connection.close()
        self.connection = await Connection.open(
            url, token,
            on_notice=self._on_transport_notice,
            connect=connect,
            on_open=self._send_start,
        )
        return self.connection.is_open

    async def _send_start(self, conn: Connection):
        if self._started:
            return
        self._started = True
        request = {"type": "start-burnout", "requestId": self.request_id}
        if self.user_id:
            request["userId"] = self.user_id
        await conn.send_json(request)
        logger.info("Requested burnout assessment %s", self.request_id)

    def handle_frame(self, frame: InboundFrame):
        message = self.classifier.classify(frame)
        if message is not None:
            self.conversation.append(message)

    async def receive(self):
        if self.connection is None:
            return
        async for frame in self.connection.frames():
            self.handle_frame(frame)

    async def wait_for_questions(self):
        await self._questions_ready.wait()

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
        self.classifier.audio_store.release_all()

    # ── Server events ─────────────────────────────────────────────

    def _on_event(self, message: Message):
        if message.event_kind == "questions":
            self._load_questions(message.payload)
        elif message.event_kind == "answer-ack":
            logger.debug("Answer acknowledged: %s", message.payload)

    def _load_questions(self, payload: dict):
        self.session_id = payload.get("sessionId", self.session_id)
        raw = payload.get("questions")
        if not isinstance(raw, list):
            logger.warning("Questions event without a question list")
            return
        self.questions = [BurnoutQuestion.from_dict(q) for q in raw if isinstance(q, dict)]
        self.index = 0
        self.responses = {}
        self.error = None
        logger.info("Loaded %d questions for session %s", len(self.questions), self.session_id)
        self._questions_ready.set()
        if self._on_questions:
            try:
                self._on_questions(list(self.questions))
            except Exception as e:
                logger.error("Questions callback error: %s", e)

    def _on_transport_notice(self, text: str):
        self.conversation.append(Message.system_notice(text))
        if not self.finished:
            self.error = text

    def _on_notice(self, message: Message):
        if "error" in message.payload:
            self.error = message.text

    def _on_final_result(self, result: dict):
        self.result = result
        self.finished = True
        if self._on_complete:
            self._on_complete(result)

    # ── Navigation ────────────────────────────────────────────────

    @property
    def current_question(self) -> BurnoutQuestion | None:
        if 0 <= self.index < len(self.questions):
            return self.questions[self.index]
        return None

    @property
    def is_last(self) -> bool:
        return bool(self.questions) and self.index == len(self.questions) - 1

    @property
    def can_advance(self) -> bool:
        q = self.current_question
        return q is not None and q.question_id in self.responses

    def answer(self, question_id, response: str):
        self.responses[question_id] = response

    async def next(self) -> bool:
        """Send the current answer and move on; completes after the last question.

        Returns False without advancing when nothing can be sent, so the
        same question can be retried once the connection is back.
        """
        if self._completion_sent or not self.can_advance or self.connection is None:
            return False
        q = self.current_question
        sent = await self.connection.send_json({
            "type": "answer",
            "sessionId": self.session_id,
            "questionId": q.question_id,
            "response": self.responses[q.question_id],
        })
        if not sent:
            logger.warning("Answer to question %s was not sent", q.question_id)
            return False
        if not self.is_last:
            self.index += 1
            return True

        if not await self.connection.send_json({
            "type": "assessment-complete",
            "sessionId": self.session_id,
        }):
            logger.warning("Assessment %s completion was not sent", self.session_id)
            return False
        self._completion_sent = True
        logger.info("Assessment %s submitted", self.session_id)
        return True

    def previous(self) -> bool:
        if self.index == 0:
            return False
        self.index -= 1
        return True

    async def submit_recording(self, question_id, blobs, started_at: str | None = None,
                               ended_at: str | None = None) -> int:
        """Send a vlog answer: header then blob per modality. Returns pairs sent."""
        started_at = started_at or iso_now()
        ended_at = ended_at or iso_now()
        pairs = 0
        async with self._dispatch_lock:
            for blob in blobs:
                if not len(blob):
                    continue
                header = {
                    "type": "header",
                    "session_id": self.session_id,
                    "file_id": f"{self.session_id}_{question_id}_{blob.modality.value}",
                    "modality": blob.modality.value,
                    "timestamp_start": started_at,
                    "timestamp_end": ended_at,
                    "user_id": self.user_id,
                }
                if not await self.connection.send(json.dumps(header)):
                    break
                if not await self.connection.send(blob.data):
                    break
                pairs += 1
        if pairs:
            self.answer(question_id, RECORDED_RESPONSE)
        return pairs


async def record_vlog(devices: MediaDevices, stop: asyncio.Event,
                      modalities=(Modality.AUDIO, Modality.VIDEO)) -> list[MediaBlob]:
    """Record until ``stop`` is set, then release the devices.

    Raises DeviceError if the camera or microphone is unavailable.
    """
    stream = await devices.acquire(modalities)
    try:
        recorders = [ChunkRecorder(track) for track in stream.tracks]
        for r in recorders:
            r.start()
        await stop.wait()
        return list(await asyncio.gather(*(r.stop() for r in recorders)))
    finally:
        stream.stop()
        await stream.wait_closed()
