"""
Inbound frame classification.

Converts each InboundFrame into exactly one Message, or None for frames that
are malformed or carry an unknown discriminator. Classification never raises.

Text frames carry JSON; binary frames carry encoded audio, which is written to
the session's AudioStore so playback can dereference it like an object URL.
"""

import base64
import binascii
import json
import logging
import tempfile
import uuid
from pathlib import Path

from session_frames import FrameType, InboundFrame, Message

logger = logging.getLogger(__name__)

# Shown in place of raw upstream failures; the assistant "briefly failed to respond"
APOLOGY_TEXT = "I'm sorry, I had trouble responding just now. Could you say that again?"

# Caption for binary audio that arrives without a preceding transcription
DEFAULT_AUDIO_CAPTION = "Processed audio response"

# Upstream error codes the backend emits alongside {"error": ...}
RECOGNIZED_ERROR_CODES = frozenset({400, 500})

DEFAULT_AUDIO_MIME = "audio/mpeg"

_MIME_SUFFIXES = {
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/webm": ".webm",
}

# JSON discriminator -> domain event kind
_DOMAIN_EVENTS = {
    "burnout-questions": "questions",
    "assessment-result": "final-result",
    "answer-ack": "answer-ack",
}


class AudioStore:
    """Holds synthesized audio as temp files and hands out file:// references.

    release_all() deletes every file, the equivalent of revoking object URLs
    when the session ends.
    """

    def __init__(self, audio_dir: Path | None = None):
        self._dir = Path(audio_dir) if audio_dir else None
        self._owns_dir = audio_dir is None
        self._paths: list[Path] = []

    def _ensure_dir(self) -> Path:
        if self._dir is None:
            self._dir = Path(tempfile.mkdtemp(prefix="dta-audio-"))
        self._dir.mkdir(parents=True, exist_ok=True)
        return self._dir

    def put(self, data: bytes, mime_type: str = DEFAULT_AUDIO_MIME) -> str:
        suffix = _MIME_SUFFIXES.get(mime_type.split(";")[0].strip(), ".bin")
        path = self._ensure_dir() / f"reply_{uuid.uuid4().hex}{suffix}"
        path.write_bytes(data)
        self._paths.append(path)
        return path.as_uri()

    def __len__(self) -> int:
        return len(self._paths)

    def release_all(self):
        for path in self._paths:
            path.unlink(missing_ok=True)
        self._paths.clear()
        if self._owns_dir and self._dir is not None:
            try:
                self._dir.rmdir()
            except OSError:
                pass
            self._dir = None


class FrameClassifier:
    """Decodes inbound frames into Messages.

    Keeps one piece of state: the text of the latest output transcription,
    used as the caption of the next binary audio frame.
    """

    def __init__(self, audio_store: AudioStore | None = None):
        self.audio_store = audio_store or AudioStore()
        self._pending_caption: str | None = None

    def classify(self, frame: InboundFrame) -> Message | None:
        try:
            if frame.type is FrameType.BINARY:
                return self._classify_binary(frame.payload)
            return self._classify_text(frame.payload)
        except OSError as e:
            # Audio store write failed; the reply is still representable
            logger.error("Could not store audio reply: %s", e)
            return Message.audio_reply(DEFAULT_AUDIO_CAPTION)

    def _classify_binary(self, payload: bytes) -> Message:
        caption = self._pending_caption or DEFAULT_AUDIO_CAPTION
        self._pending_caption = None
        ref = self.audio_store.put(payload, DEFAULT_AUDIO_MIME)
        return Message.audio_reply(caption, audio_ref=ref)

    def _classify_text(self, payload) -> Message | None:
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Dropping text frame that is not UTF-8")
                return None
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Dropping malformed frame (%s): %.80s", e, payload)
            return None
        if not isinstance(data, dict):
            logger.warning("Dropping non-object frame: %.80s", payload)
            return None

        if "error" in data:
            return self._classify_error(data)

        msg_type = data.get("type") or data.get("kind")
        if not isinstance(msg_type, str):
            msg_type = None
        text = data.get("text")
        text = text if isinstance(text, str) else ""

        if msg_type == "input-transcription":
            return Message.transcript(text)

        if msg_type == "output-transcription":
            self._pending_caption = text or None
            return Message.assistant_reply(text)

        if msg_type == "audio":
            return self._classify_inline_audio(data, text)

        if msg_type == "system":
            return Message.system_notice(str(data.get("message") or text))

        if msg_type == "text-processed":
            return Message.assistant_reply(str(data.get("processedContent") or text))

        if msg_type in _DOMAIN_EVENTS:
            payload = {k: v for k, v in data.items() if k != "type"}
            return Message.domain_event(_DOMAIN_EVENTS[msg_type], payload)

        logger.warning("Dropping frame with unrecognized type: %r", msg_type)
        return None

    def _classify_error(self, data: dict) -> Message:
        try:
            code = int(data.get("code"))
        except (TypeError, ValueError):
            code = None
        if code in RECOGNIZED_ERROR_CODES:
            logger.warning("Upstream error %s: %s", code, data.get("error"))
            return Message.audio_reply(APOLOGY_TEXT)
        logger.warning("Server reported error: %s", data.get("error"))
        return Message.system_notice(str(data.get("error")),
                                     payload={"error": data.get("error"), "code": data.get("code")})

    def _classify_inline_audio(self, data: dict, text: str) -> Message:
        caption = text or self._pending_caption or DEFAULT_AUDIO_CAPTION
        self._pending_caption = None

        audio = data.get("audio")
        if isinstance(audio, str) and audio:
            return Message.audio_reply(caption, audio_ref=audio)

        encoded = data.get("processedAudio")
        if isinstance(encoded, str) and encoded:
            try:
                raw = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                logger.warning("Audio frame has undecodable processedAudio: %s", e)
                return Message.audio_reply(caption)
            mime = data.get("mimeType")
            ref = self.audio_store.put(raw, mime if isinstance(mime, str) else DEFAULT_AUDIO_MIME)
            return Message.audio_reply(caption, audio_ref=ref)

        return Message.audio_reply(caption)
