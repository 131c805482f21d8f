#!/usr/bin/env python3
"""Tests for the capture pipeline.

Mocks the media devices, connection and player to test:
  - header immediately followed by its blob, per modality
  - one utterance in flight until the assistant replies
  - deterministic teardown from any state
  - device failures, muting, barge-in, disconnected sends

Run: python3 test_capture_pipeline.py
"""

import asyncio
import io
import json
import sys
import wave
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


LOUD = (0.5 * 32767 * np.sin(np.arange(2048) / 5.0)).astype(np.int16).tobytes()
SILENCE = bytes(4096)


class FakeConnection:
    def __init__(self, connected=True):
        self.connected = connected
        self.sent = []

    async def send(self, data):
        if not self.connected:
            return False
        self.sent.append(data)
        return True


class FakeDevices:
    """Hands out externally-fed MediaTracks, or fails like a denied device."""

    def __init__(self, fail=None, delay=0):
        self.fail = fail
        self.delay = delay
        self.stream = None

    async def acquire(self, modalities):
        from media_devices import DeviceError, MediaStream, MediaTrack
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeviceError(self.fail)
        self.stream = MediaStream([MediaTrack(m) for m in modalities])
        return self.stream


def make_player(playing=False):
    player = MagicMock()
    player.playing = playing
    return player


def make_pipeline(modalities=None, connection=None, devices=None, player=None):
    from capture_pipeline import CapturePipeline
    from conversation import Conversation
    from session_frames import Modality
    return CapturePipeline(
        connection or FakeConnection(), Conversation(),
        session_id="sess1", user_id="user1",
        modalities=modalities or (Modality.AUDIO, Modality.VIDEO),
        devices=devices or FakeDevices(),
        player=player or make_player(),
        vad_history=3,
    )


def decoded(sent):
    """Sent items with text frames parsed as JSON."""
    return [json.loads(s) if isinstance(s, str) else s for s in sent]


async def speak_once(pipeline, audio=(b"\x01\x02" * 100,), video=(b"\xff\xd8jpeg\xff\xd9",)):
    """Drive one manual utterance through to dispatch."""
    pipeline.speaking()
    stream = pipeline.stream
    for chunk in audio:
        stream.audio_track.deliver(chunk)
    if stream.video_track is not None:
        for chunk in video:
            stream.video_track.deliver(chunk)
    pipeline.stopped_speaking()
    await pipeline.wait_finalized()


# ======================================================================
# Test Group 1: Dispatch ordering
# ======================================================================

@test("each modality sends its header immediately followed by its blob")
def test_header_then_blob():
    from capture_pipeline import CaptureState

    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        assert await pipeline.start()
        assert pipeline.state is CaptureState.ARMED
        await speak_once(pipeline)

        sent = decoded(conn.sent)
        assert len(sent) == 4, sent
        audio_header, audio_blob, video_header, video_blob = sent
        assert audio_header["type"] == "header"
        assert audio_header["modality"] == "audio"
        assert audio_blob[:4] == b"RIFF", "Audio blob should be a WAV file"
        assert video_header["modality"] == "video"
        assert video_blob == b"\xff\xd8jpeg\xff\xd9"
        assert pipeline.state is CaptureState.ARMED

    asyncio.run(scenario())


@test("both headers describe the same utterance")
def test_header_fields():
    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        await speak_once(pipeline)

        audio_header, _, video_header, _ = decoded(conn.sent)
        for header in (audio_header, video_header):
            assert header["session_id"] == "sess1"
            assert header["user_id"] == "user1"
            assert header["file_id"].startswith("utterance_")
            assert header["timestamp_start"].endswith("Z")
            assert header["timestamp_end"] >= header["timestamp_start"]
        assert audio_header["file_id"] == video_header["file_id"]

    asyncio.run(scenario())


@test("a sent utterance adds one pending user placeholder")
def test_placeholder_added():
    from conversation import PENDING_USER_TEXT

    async def scenario():
        pipeline = make_pipeline()
        await pipeline.start()
        await speak_once(pipeline)
        messages = pipeline.conversation.messages
        assert len(messages) == 1
        assert messages[0].pending
        assert messages[0].text == PENDING_USER_TEXT
        assert pipeline.sent_utterances == 1

    asyncio.run(scenario())


@test("voice activity on the microphone drives a full utterance")
def test_vad_driven():
    from capture_pipeline import CaptureState

    async def scenario():
        from session_frames import Modality
        conn = FakeConnection()
        pipeline = make_pipeline(modalities=(Modality.AUDIO,), connection=conn)
        await pipeline.start()
        track = pipeline.stream.audio_track
        track.deliver(LOUD)
        assert pipeline.state is CaptureState.RECORDING
        track.deliver(LOUD)
        for _ in range(3):
            track.deliver(SILENCE)
        await pipeline.wait_finalized()
        sent = decoded(conn.sent)
        assert len(sent) == 2
        assert sent[0]["modality"] == "audio"
        assert sent[1][:4] == b"RIFF"
        with wave.open(io.BytesIO(sent[1])) as wf:
            # The chunk that triggered detection is part of the recording
            assert wf.getnframes() * 2 == 2 * len(LOUD) + 3 * len(SILENCE)

    asyncio.run(scenario())


# ======================================================================
# Test Group 2: Turn-taking
# ======================================================================

@test("no new utterance starts until the assistant replies")
def test_single_in_flight():
    from capture_pipeline import CaptureState

    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        await speak_once(pipeline)
        assert pipeline.awaiting_response

        pipeline.speaking()
        assert pipeline.state is CaptureState.ARMED, "Speech while awaiting is ignored"
        pipeline.stopped_speaking()
        await pipeline.wait_finalized()
        assert len(conn.sent) == 4

        pipeline.response_received()
        assert not pipeline.awaiting_response
        await speak_once(pipeline)
        assert len(conn.sent) == 8

    asyncio.run(scenario())


@test("repeated stopped_speaking sends only once")
def test_double_stop():
    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        pipeline.speaking()
        pipeline.stream.audio_track.deliver(b"\x01\x00" * 10)
        pipeline.stopped_speaking()
        pipeline.stopped_speaking()
        await pipeline.wait_finalized()
        assert len(conn.sent) == 2, "Audio pair only; no video captured"

    asyncio.run(scenario())


@test("speech during playback stops the player (barge-in)")
def test_barge_in():
    async def scenario():
        player = make_player(playing=True)
        pipeline = make_pipeline(player=player)
        await pipeline.start()
        pipeline.awaiting_response = True
        pipeline.speaking()
        player.stop.assert_called()

    asyncio.run(scenario())


# ======================================================================
# Test Group 3: Teardown
# ======================================================================

@test("end() mid-recording releases every track and sends nothing")
def test_end_while_recording():
    from capture_pipeline import CaptureState

    async def scenario():
        conn = FakeConnection()
        player = make_player()
        pipeline = make_pipeline(connection=conn, player=player)
        await pipeline.start()
        stream = pipeline.stream
        pipeline.speaking()
        stream.audio_track.deliver(b"\x01\x00" * 10)
        pipeline.end()

        assert pipeline.state is CaptureState.IDLE
        assert all(t.ended and not t.enabled for t in stream.tracks)
        assert pipeline.stream is None
        player.stop.assert_called()
        pipeline.stopped_speaking()
        await asyncio.sleep(0.01)
        assert conn.sent == []

    asyncio.run(scenario())


@test("end() during finalization cancels the dispatch")
def test_end_while_finalizing():
    from capture_pipeline import CaptureState

    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        pipeline.speaking()
        pipeline.stream.audio_track.deliver(b"\x01\x00" * 10)
        pipeline.stopped_speaking()
        assert pipeline.state is CaptureState.FINALIZING
        pipeline.end()
        await asyncio.sleep(0.01)
        assert conn.sent == []
        assert pipeline.state is CaptureState.IDLE

    asyncio.run(scenario())


@test("end() while devices are being acquired releases them when they arrive")
def test_end_while_acquiring():
    from capture_pipeline import CaptureState

    async def scenario():
        devices = FakeDevices(delay=0.01)
        pipeline = make_pipeline(devices=devices)
        starting = asyncio.create_task(pipeline.start())
        await asyncio.sleep(0)
        assert pipeline.state is CaptureState.ACQUIRING
        pipeline.end()
        assert await starting is False
        assert all(t.ended for t in devices.stream.tracks)
        assert pipeline.state is CaptureState.IDLE

    asyncio.run(scenario())


@test("end() is idempotent")
def test_end_twice():
    async def scenario():
        pipeline = make_pipeline()
        await pipeline.start()
        pipeline.end()
        pipeline.end()

    asyncio.run(scenario())


@test("wait_released() waits for every track stopped by end()")
def test_wait_released():
    from media_devices import MediaStream, MediaTrack

    closed = []

    class ClosingTrack(MediaTrack):
        async def wait_closed(self, timeout=5):
            await asyncio.sleep(0)
            closed.append(self.kind)

    class ClosingDevices(FakeDevices):
        async def acquire(self, modalities):
            self.stream = MediaStream([ClosingTrack(m) for m in modalities])
            return self.stream

    async def scenario():
        pipeline = make_pipeline(devices=ClosingDevices())
        await pipeline.start()
        pipeline.end()
        assert closed == []
        await pipeline.wait_released()
        assert len(closed) == 2, closed
        await pipeline.wait_released()
        assert len(closed) == 2

    asyncio.run(scenario())


# ======================================================================
# Test Group 4: Failures and controls
# ======================================================================

@test("device failure reports a notice and returns to idle")
def test_device_failure():
    from capture_pipeline import CaptureState
    from session_frames import MessageKind

    async def scenario():
        pipeline = make_pipeline(devices=FakeDevices(fail="Permission denied"))
        assert await pipeline.start() is False
        assert pipeline.state is CaptureState.IDLE
        notices = [m for m in pipeline.conversation.messages
                   if m.kind is MessageKind.SYSTEM_NOTICE]
        assert len(notices) == 1
        assert "Permission denied" in notices[0].text

    asyncio.run(scenario())


@test("muted microphone withholds audio; only video is sent")
def test_mic_muted():
    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        pipeline.set_mic_muted(True)
        assert pipeline.stream.audio_track.enabled is False
        await speak_once(pipeline)
        sent = decoded(conn.sent)
        assert len(sent) == 2
        assert sent[0]["modality"] == "video"

        pipeline.set_mic_muted(False)
        assert pipeline.stream.audio_track.enabled

    asyncio.run(scenario())


@test("an utterance with nothing captured is not sent")
def test_nothing_captured():
    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        await speak_once(pipeline, audio=(), video=())
        assert conn.sent == []
        assert not pipeline.awaiting_response
        assert len(pipeline.conversation) == 0

    asyncio.run(scenario())


@test("disconnected sends are dropped without raising or awaiting a reply")
def test_disconnected_send():
    async def scenario():
        conn = FakeConnection(connected=False)
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        await speak_once(pipeline)
        assert conn.sent == []
        assert not pipeline.awaiting_response
        assert pipeline.sent_utterances == 0

    asyncio.run(scenario())


@test("camera toggle flips the video track only")
def test_camera_toggle():
    async def scenario():
        pipeline = make_pipeline()
        await pipeline.start()
        pipeline.set_camera_enabled(False)
        assert pipeline.stream.video_track.enabled is False
        assert pipeline.stream.audio_track.enabled is True
        assert pipeline.camera_enabled is False

    asyncio.run(scenario())


@test("muting mid-utterance sends what was captured and re-arms")
def test_mute_while_recording():
    from capture_pipeline import CaptureState

    async def scenario():
        conn = FakeConnection()
        pipeline = make_pipeline(connection=conn)
        await pipeline.start()
        stream = pipeline.stream
        stream.audio_track.deliver(LOUD)
        stream.video_track.deliver(b"\xff\xd8jpeg\xff\xd9")
        assert pipeline.state is CaptureState.RECORDING

        pipeline.set_mic_muted(True)
        assert pipeline.state is CaptureState.FINALIZING
        await pipeline.wait_finalized()
        assert pipeline.state is CaptureState.ARMED
        assert len(conn.sent) == 4

        for _ in range(50):
            stream.audio_track.deliver(SILENCE)
        assert len(conn.sent) == 4

        pipeline.set_mic_muted(False)
        pipeline.response_received()
        stream.audio_track.deliver(LOUD)
        assert pipeline.state is CaptureState.RECORDING, "Speech after unmute starts a new utterance"
        pipeline.end()

    asyncio.run(scenario())


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Capture Pipeline Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
