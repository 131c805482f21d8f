"""
Capture pipeline: microphone/camera -> voice-activity detection -> recorders
-> header + blob pairs over the session connection.

States:
  IDLE -> ACQUIRING -> ARMED -> RECORDING -> FINALIZING -> ARMED
  (device failure: ACQUIRING -> IDLE; end(): any state -> IDLE)

Turn-taking:
  - A new utterance only starts while ARMED and no assistant reply is pending.
  - Speech during playback always stops playback (barge-in), even when a
    reply is pending; it just doesn't start a new recording.
  - Every recorder in scope must finish before anything is sent; then each
    modality's header is sent immediately followed by its blob, and the whole
    utterance goes out under one lock so pairs never interleave.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Callable

from conversation import Conversation
from media_devices import ChunkRecorder, DeviceError, MediaDevices, MediaStream
from session_frames import Message, Modality, ROLE_USER, Utterance, iso_now
from voice_activity import (
    DEFAULT_HISTORY, DEFAULT_THRESHOLD_DB, SPEAKING, STOPPED_SPEAKING,
    VoiceActivityDetector,
)

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ARMED = "armed"
    RECORDING = "recording"
    FINALIZING = "finalizing"


class CapturePipeline:
    """Coordinates device capture and utterance dispatch for one session.

    Args:
        connection: session Connection (anything with ``async send(data)``)
        conversation: Conversation receiving placeholders and notices
        session_id / user_id: copied into every header
        modalities: modalities recorded per utterance (one recorder each)
        devices: MediaDevices used to acquire tracks
        player: AudioPlayer interrupted on barge-in (optional)
        keep_preview: keep the last utterance's blobs for local playback
        on_status: callback(str) for UI status ("listening", "recording", ...)
    """

    def __init__(self, connection, conversation: Conversation,
                 session_id: str | None, user_id: str,
                 modalities=(Modality.AUDIO,), devices: MediaDevices | None = None,
                 player=None, vad_threshold_db: float = DEFAULT_THRESHOLD_DB,
                 vad_history: int = DEFAULT_HISTORY, keep_preview: bool = False,
                 on_status: Callable[[str], None] | None = None):
        self.connection = connection
        self.conversation = conversation
        self.session_id = session_id
        self.user_id = user_id
        self.modalities = tuple(Modality(m) for m in modalities)
        self.devices = devices or MediaDevices()
        self.player = player
        self.vad_threshold_db = vad_threshold_db
        self.vad_history = vad_history
        self.keep_preview = keep_preview
        self.on_status = on_status or (lambda s: None)

        self.state = CaptureState.IDLE
        self.awaiting_response = False
        self.stream: MediaStream | None = None
        self.vad: VoiceActivityDetector | None = None
        self.utterance: Utterance | None = None
        self.mic_muted = False
        self.camera_enabled = True
        self.sent_utterances = 0
        self.last_preview: dict | None = None

        self._recorders: dict[Modality, ChunkRecorder] = {}
        self._released: list[MediaStream] = []
        self._finalize_task: asyncio.Task | None = None
        self._dispatch_lock = asyncio.Lock()

    def _set_status(self, status: str):
        try:
            self.on_status(status)
        except Exception as e:
            logger.error("Status callback error: %s", e)

    def _notice(self, text: str):
        self.conversation.append(Message.system_notice(text))

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> bool:
        """Acquire devices and arm voice-activity detection."""
        if self.state is not CaptureState.IDLE:
            logger.warning("Capture start ignored in state %s", self.state.value)
            return False

        self.state = CaptureState.ACQUIRING
        self._set_status("acquiring")
        try:
            stream = await self.devices.acquire(self.modalities)
        except DeviceError as e:
            logger.error("Device acquisition failed: %s", e)
            self.state = CaptureState.IDLE
            self._notice(f"Could not access microphone/camera: {e}")
            self._set_status("error")
            return False

        if self.state is not CaptureState.ACQUIRING:
            # Session ended while the devices were being acquired
            stream.stop()
            await stream.wait_closed()
            return False

        self.stream = stream
        audio = stream.audio_track
        if audio is not None:
            self.vad = VoiceActivityDetector(self.vad_threshold_db, self.vad_history)
            self.vad.on(SPEAKING, self._vad_speaking)
            self.vad.on(STOPPED_SPEAKING, self.stopped_speaking)
            audio.add_listener(self.vad.process)

        self.state = CaptureState.ARMED
        self._set_status("listening")
        logger.info("Capture armed (%s)", "+".join(m.value for m in self.modalities))
        return True

    def end(self):
        """Stop everything and return to IDLE. Safe from any state."""
        if self._finalize_task and not self._finalize_task.done():
            self._finalize_task.cancel()
        self._finalize_task = None

        for recorder in self._recorders.values():
            recorder.abort()
        self._recorders = {}

        if self.vad is not None:
            if self.stream is not None and self.stream.audio_track is not None:
                self.stream.audio_track.remove_listener(self.vad.process)
            self.vad.detach()
            self.vad = None

        if self.stream is not None:
            self.stream.stop()
            self._released.append(self.stream)
            self.stream = None

        if self.player is not None:
            self.player.stop()

        self.utterance = None
        self.awaiting_response = False
        self.mic_muted = False
        if self.state is not CaptureState.IDLE:
            logger.info("Capture ended from state %s", self.state.value)
        self.state = CaptureState.IDLE
        self._set_status("idle")

    async def wait_released(self):
        """Wait for the capture processes stopped by end() to exit."""
        streams, self._released = self._released, []
        for stream in streams:
            await stream.wait_closed()

    # ── Turn-taking ───────────────────────────────────────────────

    def _vad_speaking(self):
        self.speaking(first_chunk=self.vad.trigger_chunk if self.vad else None)

    def speaking(self, first_chunk: bytes | None = None):
        """User started speaking (VAD or manual trigger).

        first_chunk is the audio that triggered detection; it was delivered
        before the recorder was listening, so the recorder starts with it.
        """
        if self.player is not None and self.player.playing:
            logger.info("Barge-in: stopping assistant playback")
            self.player.stop()

        if self.awaiting_response:
            logger.info("Assistant response pending; not starting a new recording")
            return
        if self.state is not CaptureState.ARMED:
            return

        self.utterance = Utterance(modalities=self.modalities)
        self._recorders = {}
        for modality in self.modalities:
            track = self.stream.track(modality) if self.stream else None
            if track is None:
                continue
            recorder = ChunkRecorder(track, modality)
            recorder.start(first_chunk if modality is Modality.AUDIO else None)
            self._recorders[modality] = recorder

        self.state = CaptureState.RECORDING
        self._set_status("recording")
        logger.info("Utterance started: %s", self.utterance.id)

    def stopped_speaking(self):
        """User stopped speaking; finalize the current utterance once."""
        if self.state is not CaptureState.RECORDING:
            return
        self.state = CaptureState.FINALIZING
        self._set_status("processing")
        utterance, self.utterance = self.utterance, None
        recorders, self._recorders = self._recorders, {}
        self._finalize_task = asyncio.create_task(self._finalize(utterance, recorders))

    def response_received(self):
        """A terminal assistant reply arrived; allow the next utterance."""
        if self.awaiting_response:
            logger.debug("Assistant response received")
        self.awaiting_response = False
        if self.state is CaptureState.ARMED:
            self._set_status("muted" if self.mic_muted else "listening")

    async def wait_finalized(self):
        """Wait for an in-flight finalization to finish, if any."""
        task = self._finalize_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _finalize(self, utterance: Utterance, recorders: dict):
        try:
            blobs = await asyncio.gather(*(r.stop() for r in recorders.values()))
            utterance.ended_at = iso_now()
            for blob in blobs:
                if len(blob):
                    utterance.blobs[blob.modality] = blob
                else:
                    logger.info("No %s captured; withholding", blob.modality.value)

            if not utterance.blobs:
                logger.warning("Utterance %s captured nothing, not sending", utterance.id)
                return

            self.awaiting_response = True
            sent = await self._dispatch(utterance)
            if not sent:
                self.awaiting_response = False
                return

            self.sent_utterances += 1
            self.conversation.add_pending_placeholder(ROLE_USER)
            if self.keep_preview:
                self.last_preview = dict(utterance.blobs)
        finally:
            if self.state is CaptureState.FINALIZING:
                self.state = CaptureState.ARMED
                if not self.awaiting_response:
                    self._set_status("listening")

    async def _dispatch(self, utterance: Utterance) -> int:
        """Send header then blob for each recorded modality; returns pairs sent."""
        pairs = 0
        async with self._dispatch_lock:
            for modality in self.modalities:
                blob = utterance.blobs.get(modality)
                if blob is None:
                    continue
                header = utterance.header(modality, self.session_id, self.user_id)
                if not await self.connection.send(json.dumps(header)):
                    break
                if not await self.connection.send(blob.data):
                    break
                pairs += 1
                logger.info("Sent %s for %s (%d bytes)", modality.value,
                            utterance.id, len(blob))
        return pairs

    # ── Mute controls ─────────────────────────────────────────────

    def set_mic_muted(self, muted: bool):
        """Mute/unmute the microphone track without tearing anything down."""
        track = self.stream.audio_track if self.stream else None
        if track is None:
            return
        self.mic_muted = muted
        track.enabled = not muted
        if muted:
            # The VAD hears nothing while muted, so end the utterance now
            if self.state is CaptureState.RECORDING:
                self.stopped_speaking()
            if self.vad is not None:
                self.vad.reset()
        self._set_status("muted" if muted else "listening")
        logger.info("Microphone %s", "muted" if muted else "unmuted")

    def set_camera_enabled(self, enabled: bool):
        track = self.stream.video_track if self.stream else None
        if track is None:
            return
        self.camera_enabled = enabled
        track.enabled = enabled
        logger.info("Camera %s", "on" if enabled else "off")
