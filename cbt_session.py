#!/usr/bin/env python3
"""
Real-time CBT voice/video session.

Wires one Connection to the frame classifier and conversation log (inbound),
and the capture pipeline to the same connection (outbound):

  mic/camera -> CapturePipeline -> header + blob -> Connection -> backend
  backend -> Connection -> FrameClassifier -> Conversation -> UI / playback
"""

import logging
import uuid
from typing import Callable

from audio_player import AudioPlayer
from capture_pipeline import CapturePipeline, CaptureState
from conversation import Conversation
from frame_classifier import AudioStore, FrameClassifier
from media_devices import MediaDevices
from session_frames import Message, MessageKind, Modality
from socket_transport import Connection
from voice_activity import DEFAULT_HISTORY, DEFAULT_THRESHOLD_DB

logger = logging.getLogger(__name__)

GREETING = "Hello, how can I help you today?"


class CBTSession:
    """One therapy session: a connection, a conversation and a capture pipeline."""

    def __init__(self, url: str, token: str | None = None, user_id: str = "anonymous",
                 session_id: str | None = None, video: bool = True,
                 devices: MediaDevices | None = None, player: AudioPlayer | None = None,
                 audio_store: AudioStore | None = None, play_audio: bool = True,
                 vad_threshold_db: float = DEFAULT_THRESHOLD_DB,
                 vad_history: int = DEFAULT_HISTORY, connect=None,
                 on_status: Callable[[str], None] | None = None):
        self.url = url
        self.token = token
        self.user_id = user_id
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.modalities = (Modality.AUDIO, Modality.VIDEO) if video else (Modality.AUDIO,)
        self.devices = devices or MediaDevices()
        self.player = player or AudioPlayer()
        self.play_audio = play_audio
        self.vad_threshold_db = vad_threshold_db
        self.vad_history = vad_history
        self.on_status = on_status or (lambda s: None)
        self._connect = connect

        self.conversation = Conversation(greeting=GREETING)
        self.classifier = FrameClassifier(audio_store)
        self.connection: Connection | None = None
        self.capture: CapturePipeline | None = None
        self.running = False

        self.conversation.on("*", self._on_message)

    def _set_status(self, status):
        self.on_status(status)

    def _on_transport_notice(self, text: str):
        self.conversation.append(Message.system_notice(text))

    def _on_message(self, message: Message):
        # An error notice is the server's last word on the turn too
        ends_turn = message.is_terminal_reply or (
            message.kind is MessageKind.SYSTEM_NOTICE and "error" in message.payload)
        if not ends_turn:
            return
        if self.capture is not None:
            self.capture.response_received()
        if message.kind is MessageKind.AUDIO_REPLY and message.audio_ref and self.play_audio:
            self.player.play(message.audio_ref)

    async def _send_start(self, conn: Connection):
        await conn.send_json({
            "type": "start-session",
            "requestId": str(uuid.uuid4()),
            "userId": self.user_id,
        })

    async def start(self) -> bool:
        """Open the connection and arm capture. Returns False if either fails."""
        if self.connection is not None or self.capture is not None:
            logger.info("Tearing down previous session before starting a new one")
            await self.end()

        self._set_status("connecting")
        self.connection = await Connection.open(
            self.url, self.token,
            on_notice=self._on_transport_notice,
            connect=self._connect,
            on_open=self._send_start,
        )
        if not self.connection.is_open:
            self._set_status("error")
            return False

        self.capture = CapturePipeline(
            self.connection, self.conversation,
            session_id=self.session_id, user_id=self.user_id,
            modalities=self.modalities, devices=self.devices, player=self.player,
            vad_threshold_db=self.vad_threshold_db, vad_history=self.vad_history,
            on_status=self.on_status,
        )
        if not await self.capture.start():
            await self.connection.close()
            self._set_status("error")
            return False

        self.running = True
        logger.info("Session %s started", self.session_id)
        return True

    async def receive(self):
        """Classify and accumulate inbound frames until the connection closes."""
        if self.connection is None:
            return
        async for frame in self.connection.frames():
            message = self.classifier.classify(frame)
            if message is not None:
                self.conversation.append(message)

    async def run(self) -> bool:
        """Start, receive until the socket closes or the task is cancelled, then end.

        Returns False if the session could not be started.
        """
        if not await self.start():
            return False
        try:
            await self.receive()
        finally:
            await self.end()
        return True

    async def end(self):
        """Release devices, playback, the socket and stored audio. Idempotent."""
        self.running = False
        if self.capture is not None:
            capture, self.capture = self.capture, None
            capture.end()
            await capture.wait_released()
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
        self.player.stop()
        self.classifier.audio_store.release_all()
        self._set_status("idle")

    # ── Controls ──────────────────────────────────────────────────

    def toggle_mic(self) -> bool:
        """Flip microphone mute; returns the new muted state."""
        if self.capture is None or self.capture.state is CaptureState.IDLE:
            return False
        self.capture.set_mic_muted(not self.capture.mic_muted)
        return self.capture.mic_muted

    def toggle_camera(self) -> bool:
        """Flip the camera; returns whether it is now on."""
        if self.capture is None or self.capture.state is CaptureState.IDLE:
            return False
        self.capture.set_camera_enabled(not self.capture.camera_enabled)
        return self.capture.camera_enabled
