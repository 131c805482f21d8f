"""
Microphone / camera acquisition and chunk recorders.

Tracks wrap a capture subprocess (pw-record for audio, ffmpeg for video) and
deliver chunks to listeners on the asyncio loop. A disabled (muted) track keeps
capturing but withholds its chunks, so listeners see silence.

Audio format: 24kHz 16-bit mono PCM, recorded into WAV blobs.
Video format: MJPEG frames from ffmpeg, recorded into motion-JPEG blobs.
"""

import asyncio
import io
import logging
import shutil
import wave
from typing import Callable

from session_frames import MediaBlob, Modality

logger = logging.getLogger(__name__)

# Audio settings
SAMPLE_RATE = 24000
CHANNELS = 1
BYTES_PER_SAMPLE = 2
CHUNK_SIZE = 4096  # bytes per read (~85ms at 24kHz 16-bit mono)

# Video settings
VIDEO_DEVICE = "/dev/video0"
VIDEO_FPS = 15
VIDEO_READ_SIZE = 65536
_JPEG_SOI = b"\xff\xd8"
_JPEG_EOI = b"\xff\xd9"

AUDIO_MIME = "audio/wav"
VIDEO_MIME = "video/x-motion-jpeg"


class DeviceError(Exception):
    """Camera or microphone could not be acquired."""


class MediaTrack:
    """A live source of media chunks for one modality."""

    def __init__(self, kind: Modality, label: str = ""):
        self.kind = Modality(kind)
        self.label = label or self.kind.value
        self.enabled = True
        self.ended = False
        self._listeners: list[Callable[[bytes], None]] = []

    def add_listener(self, callback: Callable[[bytes], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[bytes], None]):
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def deliver(self, chunk: bytes):
        """Hand a captured chunk to listeners unless muted or ended."""
        if self.ended or not self.enabled or not chunk:
            return
        for cb in list(self._listeners):
            try:
                cb(chunk)
            except Exception as e:
                logger.error("Track %s listener error: %s", self.label, e)

    async def start(self):
        """Begin capturing. Base tracks are fed externally via deliver()."""

    async def wait_closed(self, timeout: float = 5):
        """Wait until capture has fully shut down after stop()."""

    def stop(self):
        """Stop capture for good. Idempotent."""
        self.enabled = False
        self.ended = True
        self._listeners.clear()


class SubprocessTrack(MediaTrack):
    """Track fed by a capture subprocess writing to stdout."""

    def __init__(self, kind: Modality, cmd: list[str], read_size: int = CHUNK_SIZE,
                 label: str = ""):
        super().__init__(kind, label=label)
        self.cmd = cmd
        self.read_size = read_size
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None

    async def start(self):
        if shutil.which(self.cmd[0]) is None:
            raise DeviceError(f"{self.cmd[0]} not found; cannot capture {self.kind.value}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise DeviceError(f"Could not start {self.kind.value} capture: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("%s capture started (PID %s)", self.label, self._process.pid)

    async def _read_loop(self):
        chunks = 0
        try:
            while not self.ended:
                data = await self._process.stdout.read(self.read_size)
                if not data:
                    logger.warning("%s capture ended unexpectedly", self.label)
                    break
                for piece in self._split(data):
                    self.deliver(piece)
                chunks += 1
        finally:
            logger.info("%s capture stopped (%d reads)", self.label, chunks)

    def _split(self, data: bytes):
        yield data

    def stop(self):
        if self.ended:
            return
        super().stop()
        if self._reader and not self._reader.done():
            self._reader.cancel()
        if self._process and self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
        self._reader = None

    async def wait_closed(self, timeout: float = 5):
        """Reap the capture process, killing it if it ignores terminate()."""
        proc = self._process
        if proc is None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s capture did not exit, killing it", self.label)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        self._process = None


class MjpegTrack(SubprocessTrack):
    """Video track that delivers whole JPEG frames from an MJPEG byte stream."""

    def __init__(self, cmd: list[str], label: str = "camera"):
        super().__init__(Modality.VIDEO, cmd, read_size=VIDEO_READ_SIZE, label=label)
        self._pending = b""

    def _split(self, data: bytes):
        self._pending += data
        while True:
            start = self._pending.find(_JPEG_SOI)
            if start < 0:
                self._pending = b""
                return
            end = self._pending.find(_JPEG_EOI, start + 2)
            if end < 0:
                self._pending = self._pending[start:]
                return
            yield self._pending[start:end + 2]
            self._pending = self._pending[end + 2:]


class MediaStream:
    """The set of tracks acquired for one session."""

    def __init__(self, tracks: list[MediaTrack]):
        self.tracks = list(tracks)

    def track(self, kind: Modality) -> MediaTrack | None:
        for t in self.tracks:
            if t.kind == kind:
                return t
        return None

    @property
    def audio_track(self) -> MediaTrack | None:
        return self.track(Modality.AUDIO)

    @property
    def video_track(self) -> MediaTrack | None:
        return self.track(Modality.VIDEO)

    def stop(self):
        for t in self.tracks:
            t.stop()

    async def wait_closed(self):
        for t in self.tracks:
            await t.wait_closed()


def pcm_to_wav(pcm: bytes) -> bytes:
    """Wrap raw 16-bit mono PCM in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(BYTES_PER_SAMPLE)
        wf.setframerate(SAMPLE_RATE)
        wf.writeframes(pcm)
    return buf.getvalue()


class ChunkRecorder:
    """Buffers a track's chunks between start() and stop(), like MediaRecorder.

    stop() is a coroutine resolving to the assembled MediaBlob; completion of
    several recorders may interleave in any order, so callers join on all.
    """

    def __init__(self, track: MediaTrack, modality: Modality | None = None):
        self.track = track
        self.modality = Modality(modality or track.kind)
        self.state = "inactive"
        self._chunks: list[bytes] = []

    def _on_chunk(self, chunk: bytes):
        if self.state == "recording":
            self._chunks.append(chunk)

    def start(self, first_chunk: bytes | None = None):
        """Begin buffering, seeded with the chunk that triggered recording if given."""
        if self.state == "recording":
            return
        self._chunks = [first_chunk] if first_chunk else []
        self.state = "recording"
        self.track.add_listener(self._on_chunk)

    async def stop(self) -> MediaBlob:
        self.track.remove_listener(self._on_chunk)
        self.state = "inactive"
        # Completion is delivered asynchronously, as with a browser recorder's onstop
        await asyncio.sleep(0)
        chunks, self._chunks = self._chunks, []
        data = b"".join(chunks)
        if self.modality is Modality.AUDIO:
            payload = pcm_to_wav(data) if data else b""
            blob = MediaBlob(Modality.AUDIO, payload, AUDIO_MIME)
        else:
            blob = MediaBlob(Modality.VIDEO, data, VIDEO_MIME)
        logger.debug("%s recorder finalized %d bytes", self.modality.value, len(blob))
        return blob

    def abort(self):
        """Stop immediately and discard buffered chunks."""
        self.track.remove_listener(self._on_chunk)
        self.state = "inactive"
        self._chunks = []


class MediaDevices:
    """Acquires microphone and camera tracks.

    Args:
        audio_device: PipeWire target for pw-record (None = default source)
        video_device: V4L2 device path for ffmpeg
    """

    def __init__(self, audio_device: str | None = None, video_device: str = VIDEO_DEVICE):
        self.audio_device = audio_device
        self.video_device = video_device

    def audio_command(self) -> list[str]:
        cmd = ['pw-record', '--format', 's16', '--rate', str(SAMPLE_RATE),
               '--channels', str(CHANNELS)]
        if self.audio_device:
            cmd += ['--target', self.audio_device]
        return cmd + ['-']

    def video_command(self) -> list[str]:
        return ['ffmpeg', '-loglevel', 'quiet', '-f', 'v4l2',
                '-framerate', str(VIDEO_FPS), '-i', self.video_device,
                '-an', '-c:v', 'mjpeg', '-f', 'mjpeg', '-']

    def create_track(self, kind: Modality) -> MediaTrack:
        if kind is Modality.AUDIO:
            return SubprocessTrack(Modality.AUDIO, self.audio_command(), label="microphone")
        return MjpegTrack(self.video_command())

    async def acquire(self, modalities) -> MediaStream:
        """Start one track per requested modality.

        Raises DeviceError; anything acquired before the failure is released.
        """
        tracks: list[MediaTrack] = []
        try:
            for kind in modalities:
                track = self.create_track(Modality(kind))
                await track.start()
                tracks.append(track)
        except DeviceError:
            for t in tracks:
                t.stop()
                await t.wait_closed()
            raise
        return MediaStream(tracks)
