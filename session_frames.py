"""Typed dataclasses that flow between the transport, classifier, conversation and capture."""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto


class FrameType(Enum):
    TEXT = auto()     # UTF-8 text frame, expected to carry JSON
    BINARY = auto()   # Binary frame, encoded audio from the backend


@dataclass(frozen=True)
class InboundFrame:
    type: FrameType
    payload: str | bytes


class MessageKind(Enum):
    TRANSCRIPT = "transcript"            # User utterance text
    ASSISTANT_REPLY = "assistant_reply"  # Finalized assistant text turn
    AUDIO_REPLY = "audio_reply"          # Playable synthesized audio
    SYSTEM_NOTICE = "system_notice"      # Connection lifecycle / upstream error
    DOMAIN_EVENT = "domain_event"        # Questions, acks, final result


# Message kinds that end an assistant turn
TERMINAL_REPLY_KINDS = frozenset({MessageKind.ASSISTANT_REPLY, MessageKind.AUDIO_REPLY})

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"


@dataclass
class Message:
    """One entry in the conversation log."""
    kind: MessageKind
    text: str = ""
    role: str = ROLE_SYSTEM
    audio_ref: str | None = None
    event_kind: str | None = None
    payload: dict = field(default_factory=dict)
    pending: bool = False
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def transcript(cls, text: str) -> "Message":
        return cls(MessageKind.TRANSCRIPT, text=text, role=ROLE_USER)

    @classmethod
    def assistant_reply(cls, text: str) -> "Message":
        return cls(MessageKind.ASSISTANT_REPLY, text=text, role=ROLE_ASSISTANT)

    @classmethod
    def audio_reply(cls, text: str, audio_ref: str | None = None) -> "Message":
        return cls(MessageKind.AUDIO_REPLY, text=text, role=ROLE_ASSISTANT,
                   audio_ref=audio_ref)

    @classmethod
    def system_notice(cls, text: str, payload: dict | None = None) -> "Message":
        return cls(MessageKind.SYSTEM_NOTICE, text=text, role=ROLE_SYSTEM,
                   payload=payload or {})

    @classmethod
    def domain_event(cls, event_kind: str, payload: dict) -> "Message":
        return cls(MessageKind.DOMAIN_EVENT, role=ROLE_SYSTEM,
                   event_kind=event_kind, payload=payload)

    @property
    def is_terminal_reply(self) -> bool:
        return self.kind in TERMINAL_REPLY_KINDS


class Modality(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class MediaBlob:
    """A completed recording for one modality."""
    modality: Modality
    data: bytes
    mime_type: str

    def __len__(self) -> int:
        return len(self.data)


def iso_now() -> str:
    """Current UTC time in ISO-8601, millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Utterance:
    """One user turn of captured speech/video."""
    modalities: tuple
    id: str = field(default_factory=lambda: f"utterance_{uuid.uuid4().hex}")
    started_at: str = field(default_factory=iso_now)
    ended_at: str | None = None
    blobs: dict = field(default_factory=dict)  # Modality -> MediaBlob

    def header(self, modality: Modality, session_id: str | None, user_id: str) -> dict:
        """Build the JSON header that precedes this utterance's blob for one modality."""
        return {
            "type": "header",
            "session_id": session_id,
            "file_id": self.id,
            "modality": Modality(modality).value,
            "timestamp_start": self.started_at,
            "timestamp_end": self.ended_at or iso_now(),
            "user_id": user_id,
        }

