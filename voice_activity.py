"""
Energy-based voice-activity detection.

Flags "speaking" / "stopped_speaking" from microphone level, the same way the
browser hark library does: each chunk's level in dBFS is compared against a
threshold, speech starts on the first loud chunk, and stops once `history`
consecutive chunks have been quiet.
"""

import logging
from typing import Callable

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_DB = -45.0
DEFAULT_HISTORY = 10

# Floor for silent (all-zero) chunks, keeps log10 finite
_SILENCE_DB = -100.0

SPEAKING = "speaking"
STOPPED_SPEAKING = "stopped_speaking"


def chunk_level_db(pcm: bytes) -> float:
    """RMS level of a 16-bit little-endian PCM chunk in dBFS."""
    usable = len(pcm) - (len(pcm) % 2)
    if usable <= 0:
        return _SILENCE_DB
    samples = np.frombuffer(pcm[:usable], dtype=np.int16).astype(np.float32) / 32768.0
    rms = float(np.sqrt(np.mean(samples * samples)))
    if rms <= 0.0:
        return _SILENCE_DB
    return max(20.0 * float(np.log10(rms)), _SILENCE_DB)


class VoiceActivityDetector:
    """Turns a stream of PCM chunks into speaking / stopped_speaking events.

    Args:
        threshold_db: chunk level above which the user is considered speaking
        history: consecutive quiet chunks before stopped_speaking fires
    """

    def __init__(self, threshold_db: float = DEFAULT_THRESHOLD_DB,
                 history: int = DEFAULT_HISTORY):
        self.threshold_db = threshold_db
        self.history = max(1, int(history))
        self.speaking = False
        self.trigger_chunk: bytes | None = None  # chunk that fired the last "speaking"
        self._quiet_chunks = 0
        self._attached = True
        self._callbacks: dict[str, list[Callable]] = {SPEAKING: [], STOPPED_SPEAKING: []}

    def on(self, event: str, callback: Callable):
        if event not in self._callbacks:
            raise ValueError(f"Unknown VAD event: {event}")
        self._callbacks[event].append(callback)

    def process(self, pcm: bytes) -> str | None:
        """Feed one chunk; returns the event fired by it, if any."""
        if not self._attached:
            return None

        loud = chunk_level_db(pcm) > self.threshold_db
        if loud:
            self._quiet_chunks = 0
            if not self.speaking:
                self.speaking = True
                self.trigger_chunk = pcm
                self._emit(SPEAKING)
                return SPEAKING
            return None

        if self.speaking:
            self._quiet_chunks += 1
            if self._quiet_chunks >= self.history:
                self.speaking = False
                self._quiet_chunks = 0
                self._emit(STOPPED_SPEAKING)
                return STOPPED_SPEAKING
        return None

    def _emit(self, event: str):
        logger.debug("VAD: %s", event)
        for cb in self._callbacks[event]:
            try:
                cb()
            except Exception as e:
                logger.error("VAD callback error for %s: %s", event, e)

    def reset(self):
        """Forget the current speech state without firing stopped_speaking."""
        self.speaking = False
        self.trigger_chunk = None
        self._quiet_chunks = 0

    def detach(self):
        """Stop delivering events and drop listeners."""
        self._attached = False
        self.speaking = False
        self._quiet_chunks = 0
        for listeners in self._callbacks.values():
            listeners.clear()
