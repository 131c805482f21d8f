"""Playback of synthesized replies through an ffplay subprocess, stoppable for barge-in."""

import logging
import shutil
import subprocess
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

PLAYER_CMD = ['ffplay', '-nodisp', '-autoexit', '-loglevel', 'quiet']


def ref_to_path(audio_ref: str) -> str:
    """file:// URIs become local paths; http(s) URLs pass through to ffplay."""
    parts = urlsplit(audio_ref)
    if parts.scheme == "file":
        return unquote(parts.path)
    return audio_ref


class AudioPlayer:
    """Plays one audio reference at a time."""

    def __init__(self, cmd: list[str] | None = None):
        self.cmd = cmd or PLAYER_CMD
        self._process: subprocess.Popen | None = None

    @property
    def playing(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def play(self, audio_ref: str) -> bool:
        """Start playing, replacing whatever was playing before."""
        self.stop()
        if shutil.which(self.cmd[0]) is None:
            logger.warning("%s not found, cannot play audio reply", self.cmd[0])
            return False
        try:
            self._process = subprocess.Popen(
                self.cmd + [ref_to_path(audio_ref)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error("Could not start playback: %s", e)
            self._process = None
            return False
        logger.info("Playing audio reply")
        return True

    def stop(self):
        """Stop playback immediately. Idempotent."""
        proc, self._process = self._process, None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=1)
        except subprocess.TimeoutExpired:
            proc.kill()
        logger.info("Playback stopped")
