"""Soundscape command-line player. Composition root for the context, engine, and focus timer."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from soundscape import __version__
from soundscape.catalog import ALARM_TONES, AMBIENT_SOUNDS, SILENT_ID, find_alarm_tone, find_ambient
from soundscape.config import AppConfig, load_config
from soundscape.context import SynthContext
from soundscape.engine import SoundEngine
from soundscape.errors import ContextUnavailableError
from soundscape.focus import FocusSession

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.25


def build_engine(config: AppConfig) -> SoundEngine:
    """Create the process-wide synthesis context and the engine that owns it."""
    context = SynthContext(config.audio)
    return SoundEngine(context, config)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="soundscape", description="Procedural ambient sounds and alarm tones")
    parser.add_argument("--version", action="version", version=f"soundscape {__version__}")
    parser.add_argument("--config", metavar="PATH", help="YAML config file (default: config.yaml in the project root)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List ambient sounds and alarm tones")

    ambient = sub.add_parser("ambient", help="Play an ambient texture")
    ambient.add_argument("sound", help="Ambient sound id (see `list`)")
    ambient.add_argument("--duration", type=float, metavar="SEC", help="Stop after SEC seconds")
    ambient.add_argument("--no-loop", action="store_true", help="Play the noise buffer once")

    alarm = sub.add_parser("alarm", help="Preview an alarm tone")
    alarm.add_argument("tone", help="Alarm tone id (see `list`)")
    alarm.add_argument("--duration", type=float, metavar="SEC", help="Tone length (default: alarm.preview_ms)")

    sub.add_parser("chime", help="Play the reminder chime")

    focus = sub.add_parser("focus", help="Run a focus session")
    focus.add_argument("--minutes", type=int, help="Session length (default: focus.session_minutes)")
    focus.add_argument("--sound", help=f"Ambient sound id, or '{SILENT_ID}'")
    return parser


def _print_catalog() -> None:
    print("Ambient sounds:")
    for sound in AMBIENT_SOUNDS:
        print(f"  {sound.id:<12} {sound.name}")
    print("Alarm tones:")
    for tone in ALARM_TONES:
        print(f"  {tone.id:<12} {tone.name} ({tone.frequency:g} Hz)")


def _wait(engine: SoundEngine) -> None:
    """Block until the engine goes Idle; Ctrl+C stops playback."""
    try:
        while not engine.wait_until_idle(POLL_INTERVAL_SEC):
            pass
    except KeyboardInterrupt:
        engine.stop()


def _run_focus(engine: SoundEngine, config: AppConfig, args: argparse.Namespace) -> None:
    session = FocusSession(engine, config.focus, sound_id=args.sound)
    if args.minutes is not None:
        session.adjust(args.minutes - config.focus.session_minutes)
    session.start()
    try:
        while session.running:
            print(f"\r{session.format_time()}  ({session.progress:5.1f}%)", end="", flush=True)
            time.sleep(1)
            if session.tick():
                print(f"\r{session.format_time()}  (100.0%)")
                engine.wait_until_idle(1.0)
    except KeyboardInterrupt:
        session.pause()
        print()


def main(argv: list[str] | None = None) -> None:
    """Entry point for `soundscape`."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if args.command == "list":
        _print_catalog()
        return

    config = load_config(Path(args.config).expanduser() if args.config else None)

    try:
        if args.command == "ambient":
            sound = find_ambient(args.sound)
        elif args.command == "alarm":
            sound = find_alarm_tone(args.tone)
        elif args.command == "focus" and args.sound and args.sound != SILENT_ID:
            find_ambient(args.sound)
    except KeyError as exc:
        parser.error(f"unknown sound id {exc.args[0]!r}")

    engine = build_engine(config)
    try:
        if args.command == "ambient":
            duration_ms = args.duration * 1000 if args.duration is not None else None
            engine.play_ambient(sound, loop=not args.no_loop, duration_ms=duration_ms)
            _wait(engine)
        elif args.command == "alarm":
            seconds = args.duration if args.duration is not None else config.alarm.preview_ms / 1000
            engine.play_alarm_tone(sound, duration_ms=seconds * 1000)
            _wait(engine)
        elif args.command == "chime":
            engine.play_notification_chime()
            _wait(engine)
        elif args.command == "focus":
            _run_focus(engine, config, args)
    except ContextUnavailableError as exc:
        logger.error("Audio output unavailable: %s", exc)
        sys.exit(1)
    finally:
        engine.stop()
        engine.context.close()


if __name__ == "__main__":
    main()
