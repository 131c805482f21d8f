#!/usr/bin/env python3
"""
Digital therapy terminal client.

  dta-client cbt        voice/video CBT session (speak to talk, Ctrl+C to end)
  dta-client burnout    burnout assessment questionnaire

During a CBT session, type a command and press Enter:
  m  toggle microphone    c  toggle camera    q  end the session
"""

import argparse
import asyncio
import logging
import sys

from burnout_assessment import LIKERT_OPTIONS, BurnoutAssessment, record_vlog
from cbt_session import CBTSession
from frame_classifier import AudioStore
from media_devices import DeviceError, MediaDevices
from session_config import (
    ConfigError, get_token, load_config, resolve_session_id, resolve_user_id,
)
from session_frames import Message, MessageKind

log = logging.getLogger("dta_client")

_SPEAKERS = {
    "user": "You",
    "assistant": "Therapist",
    "system": "System",
}


def render_message(message: Message) -> str | None:
    """One transcript line for a message, or None for non-displayed events."""
    if message.kind is MessageKind.DOMAIN_EVENT:
        return None
    speaker = _SPEAKERS.get(message.role, message.role)
    line = f"[{speaker}] {message.text}"
    if message.kind is MessageKind.AUDIO_REPLY and message.audio_ref:
        line += "  (audio)"
    return line


async def _read_line(prompt: str = "") -> str:
    """Read one line from stdin without blocking the event loop. EOF reads as "q"."""
    if prompt:
        print(prompt, end="", flush=True)
    loop = asyncio.get_running_loop()
    fut = loop.create_future()
    fd = sys.stdin.fileno()

    def ready():
        if not fut.done():
            fut.set_result(sys.stdin.readline())

    loop.add_reader(fd, ready)
    try:
        line = await fut
    finally:
        loop.remove_reader(fd)
    return line.strip() if line else "q"


def _make_devices(config: dict) -> MediaDevices:
    return MediaDevices(audio_device=config.get("audio_device"),
                        video_device=config.get("video_device") or "/dev/video0")


def _make_store(config: dict) -> AudioStore:
    return AudioStore(config.get("audio_dir"))


# ── CBT session ───────────────────────────────────────────────────

async def run_cbt(config: dict, token: str | None) -> int:
    session = CBTSession(
        config["ws_url"], token,
        user_id=resolve_user_id(config),
        session_id=resolve_session_id(config),
        video=bool(config.get("video", True)),
        devices=_make_devices(config),
        audio_store=_make_store(config),
        play_audio=bool(config.get("play_audio", True)),
        vad_threshold_db=float(config["vad_threshold_db"]),
        vad_history=int(config["vad_history"]),
        on_status=lambda status: log.debug("Status: %s", status),
    )

    def show(message: Message):
        line = render_message(message)
        if line:
            print(line, flush=True)

    for message in session.conversation.messages:
        show(message)
    session.conversation.on("*", show)

    runner = asyncio.create_task(session.run())

    async def controls():
        while not runner.done():
            command = (await _read_line()).lower()
            if command == "m":
                muted = session.toggle_mic()
                print("Microphone muted" if muted else "Microphone on", flush=True)
            elif command == "c":
                on = session.toggle_camera()
                print("Camera on" if on else "Camera off", flush=True)
            elif command == "q":
                runner.cancel()
                return

    control_task = asyncio.create_task(controls())
    ok = True
    try:
        ok = await runner
    except asyncio.CancelledError:
        log.info("Session ended by user")
    finally:
        control_task.cancel()
        await session.end()
    if not ok:
        print("Error: could not start the session", file=sys.stderr)
        return 1
    return 0


# ── Burnout assessment ────────────────────────────────────────────

def parse_likert(text: str) -> str | None:
    """Accept a 1-5 index or an option label (any case)."""
    if text.isdigit() and 1 <= int(text) <= len(LIKERT_OPTIONS):
        return LIKERT_OPTIONS[int(text) - 1]
    for option in LIKERT_OPTIONS:
        if option.lower() == text.lower():
            return option
    return None


async def _ask(assessment: BurnoutAssessment, devices: MediaDevices) -> bool:
    """Prompt for the current question; returns False if the user quit."""
    q = assessment.current_question
    number = assessment.index + 1
    print(f"\nQuestion {number}/{len(assessment.questions)}"
          + (f" ({q.domain})" if q.domain else ""), flush=True)
    print(q.question, flush=True)

    if q.multimodal:
        await _read_line("Press Enter to start recording your answer...")
        stop = asyncio.Event()
        recording = asyncio.create_task(record_vlog(devices, stop))
        await _read_line("Recording. Press Enter to stop.")
        stop.set()
        try:
            blobs = await recording
        except DeviceError as e:
            print(f"Could not access microphone/camera: {e}", flush=True)
            return True
        if not await assessment.submit_recording(q.question_id, blobs):
            print("Nothing was recorded, please try again.", flush=True)
        return True

    for i, option in enumerate(LIKERT_OPTIONS, 1):
        print(f"  {i}. {option}", flush=True)
    text = await _read_line("> ")
    if text.lower() == "q":
        return False
    response = parse_likert(text)
    if response is None:
        print("Please pick 1-5.", flush=True)
        return True
    assessment.answer(q.question_id, response)
    return True


async def run_burnout(config: dict, token: str | None) -> int:
    loop = asyncio.get_running_loop()
    done = loop.create_future()

    def on_complete(result: dict):
        if not done.done():
            done.set_result(result)

    assessment = BurnoutAssessment(resolve_user_id(config), on_complete=on_complete,
                                   audio_store=_make_store(config))
    devices = _make_devices(config)

    if not await assessment.connect(config["ws_url"], token):
        print(f"Error: {assessment.error}", file=sys.stderr)
        return 1

    receiver = asyncio.create_task(assessment.receive())
    try:
        waiter = asyncio.create_task(assessment.wait_for_questions())
        await asyncio.wait({waiter, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if not assessment.questions:
            waiter.cancel()
            print(f"Error: {assessment.error or 'no questions received'}", file=sys.stderr)
            return 1

        while not assessment.finished and not receiver.done():
            if assessment.error:
                print(f"Error: {assessment.error}", flush=True)
                assessment.error = None
            if not await _ask(assessment, devices):
                return 1
            if assessment.can_advance:
                last = assessment.is_last
                if not await assessment.next():
                    print(f"Error: could not send your answer: {assessment.error or 'connection lost'}",
                          file=sys.stderr)
                    return 1
                if last:
                    break

        print("\nSubmitting your answers...", flush=True)
        await asyncio.wait({done, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if not done.done():
            print(f"Error: {assessment.error or 'no result received'}", file=sys.stderr)
            return 1
        result = done.result()
        print(f"\nBurnout score: {result['score']}", flush=True)
        if result.get("summary"):
            print(result["summary"], flush=True)
        return 0
    finally:
        receiver.cancel()
        await assessment.close()


# ── Entry point ───────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Digital therapy session client")
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("--url", help="Session WebSocket URL (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)
    cbt = sub.add_parser("cbt", help="Start a voice/video CBT session")
    cbt.add_argument("--no-video", action="store_true", help="Audio only")
    sub.add_parser("burnout", help="Take the burnout assessment")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    if args.url:
        config["ws_url"] = args.url
    if getattr(args, "no_video", False):
        config["video"] = False
    token = get_token()

    try:
        if args.command == "cbt":
            return asyncio.run(run_cbt(config, token))
        return asyncio.run(run_burnout(config, token))
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
