"""Conversation state accumulator.

Provides:
- Conversation: ordered, append-only log of classified Messages
- pending placeholders for optimistic UI, resolved in place by role
- in-process subscriptions (full log, or per message kind)
- a one-shot completion hook fired on the first final-result event

No external dependencies beyond stdlib. Importable independently of the session.
"""

import logging
from typing import Callable

from session_frames import (
    Message, MessageKind, ROLE_ASSISTANT, ROLE_USER,
)

logger = logging.getLogger(__name__)

PENDING_USER_TEXT = "Transcribing your message..."
PENDING_ASSISTANT_TEXT = "Thinking..."

FINAL_RESULT = "final-result"

# Which message kinds resolve a pending placeholder for each role
_RESOLVES = {
    ROLE_USER: frozenset({MessageKind.TRANSCRIPT}),
    ROLE_ASSISTANT: frozenset({MessageKind.ASSISTANT_REPLY, MessageKind.AUDIO_REPLY}),
}


class Conversation:
    """Ordered message log with placeholder resolution and subscriptions.

    Usage:
        convo = Conversation()
        convo.subscribe(lambda log: render(log))     # full log after each change
        convo.on(MessageKind.AUDIO_REPLY, play)      # individual messages
        convo.on_complete(lambda result: finish(result))
        convo.add_pending_placeholder("user")
        convo.append(Message.transcript("I feel tired"))  # replaces placeholder
    """

    def __init__(self, greeting: str | None = None):
        self._log: list[Message] = []
        self._log_subscribers: list[Callable] = []
        self._callbacks: dict = {}  # MessageKind or "*" -> [callback]
        self._complete_callbacks: list[Callable] = []
        self.completed = False
        self.result: dict | None = None
        if greeting:
            self._log.append(Message.assistant_reply(greeting))

    @property
    def messages(self) -> tuple:
        return tuple(self._log)

    def __len__(self) -> int:
        return len(self._log)

    def subscribe(self, callback: Callable):
        """Register a callback receiving the full ordered log after each change."""
        self._log_subscribers.append(callback)

    def on(self, kind, callback: Callable):
        """Register a callback for one MessageKind, or "*" for all messages."""
        self._callbacks.setdefault(kind, []).append(callback)

    def on_complete(self, callback: Callable):
        """Register the session-completion side effect.

        Fires with the final-result payload, exactly once per conversation.
        """
        self._complete_callbacks.append(callback)

    def pending_placeholder(self, role: str) -> Message | None:
        for msg in self._log:
            if msg.pending and msg.role == role:
                return msg
        return None

    def add_pending_placeholder(self, role: str = ROLE_USER) -> Message:
        """Insert an optimistic entry shown until its resolution arrives.

        At most one placeholder exists per role; a second call returns it.
        """
        existing = self.pending_placeholder(role)
        if existing is not None:
            return existing
        text = PENDING_USER_TEXT if role == ROLE_USER else PENDING_ASSISTANT_TEXT
        kind = MessageKind.TRANSCRIPT if role == ROLE_USER else MessageKind.ASSISTANT_REPLY
        placeholder = Message(kind, text=text, role=role, pending=True)
        self._log.append(placeholder)
        self._notify_log()
        return placeholder

    def append(self, message: Message):
        """Add a message, resolving a pending placeholder for its role in place."""
        index = self._placeholder_index(message)
        if index is not None:
            self._log[index] = message
        else:
            self._log.append(message)

        self._fire(message)
        self._notify_log()

        if message.kind is MessageKind.DOMAIN_EVENT and message.event_kind == FINAL_RESULT:
            self._complete(message.payload)

    def _placeholder_index(self, message: Message) -> int | None:
        if message.pending or message.kind not in _RESOLVES.get(message.role, ()):
            return None
        for i, msg in enumerate(self._log):
            if msg.pending and msg.role == message.role:
                return i
        return None

    def _complete(self, payload: dict):
        if self.completed:
            logger.info("Ignoring duplicate final result")
            return
        self.completed = True
        self.result = {"score": payload.get("score"), "summary": payload.get("summary")}
        logger.info("Session complete (score=%s)", self.result["score"])
        for cb in self._complete_callbacks:
            try:
                cb(self.result)
            except Exception as e:
                logger.error("Completion callback error: %s", e)

    def _fire(self, message: Message):
        for key in (message.kind, "*"):
            for cb in self._callbacks.get(key, []):
                try:
                    cb(message)
                except Exception as e:
                    logger.error("Conversation callback error for %s: %s",
                                 message.kind.value, e)

    def _notify_log(self):
        snapshot = self.messages
        for cb in self._log_subscribers:
            try:
                cb(snapshot)
            except Exception as e:
                logger.error("Conversation subscriber error: %s", e)

    def clear(self):
        """Empty the log and reset completion, for a new session."""
        self._log.clear()
        self.completed = False
        self.result = None
        self._notify_log()
