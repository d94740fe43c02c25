#!/usr/bin/env python3
"""
drumcoach - Real-time drum hit detection and practice scoring

Listens to a microphone, classifies hits as kick / snare / hi-hat / open
hi-hat and scores practice runs against a step pattern.
"""

import argparse
import cProfile
import json
import sys
import time
from pathlib import Path

from config import ClassifierStrategy, Config
from config_persistence import load_config, save_config
from errors import DeviceError
from logging_utils import add_file_handler, log_event, set_log_level
from pattern import Pattern
from step_aligner import step_duration_ms


def _load(args) -> Config:
    config = load_config(Path(args.config) if args.config else None)
    if args.log_level:
        config.log_level = args.log_level
    set_log_level(config.log_level)
    if args.log_file:
        add_file_handler(args.log_file)
    return config


def _wait(listener, seconds: float | None) -> None:
    """Block until Ctrl+C, the time limit, or the listener stops by itself."""
    deadline = time.monotonic() + seconds if seconds else None
    try:
        while listener.is_listening:
            if deadline is not None and time.monotonic() >= deadline:
                break
            time.sleep(0.1)
    except KeyboardInterrupt:
        print("", flush=True)


def cmd_devices(args) -> int:
    from audio_capture import list_input_devices

    try:
        devices = list_input_devices()
    except DeviceError as e:
        print(f"Could not query audio devices: {e}", file=sys.stderr)
        return 1
    if not devices:
        print("No input devices found.")
        return 1
    for d in devices:
        print(f"[{d['index']:2d}] {d['name']}  ({d['channels']} ch, {d['default_samplerate']:.0f} Hz)")
    return 0


def cmd_listen(args) -> int:
    from drum_listener import DrumListener

    config = _load(args)
    if args.strategy:
        config.classifier.strategy = ClassifierStrategy[args.strategy.upper()]
    if args.threshold is not None:
        config.debounce.confidence_threshold = args.threshold
    if args.device is not None:
        config.audio.device_index = args.device
    if args.save_config:
        save_config(config, Path(args.config) if args.config else None)

    listener = DrumListener(config)

    def _print(detection):
        print(f"{detection.timestamp_ms:14.0f} ms  {detection.type.value:8s} {detection.confidence:.2f}",
              flush=True)

    listener.subscribe(_print)
    if not listener.start_listening():
        print(f"Error: {listener.error}", file=sys.stderr)
        return 1

    try:
        print("Listening... press Ctrl+C to stop.", flush=True)
        _wait(listener, args.seconds)
        error = listener.error
    finally:
        listener.stop_listening()
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    return 0


def cmd_practice(args) -> int:
    from drum_listener import DrumListener

    config = _load(args)
    if args.device is not None:
        config.audio.device_index = args.device
    try:
        with open(args.pattern, 'r', encoding='utf-8') as f:
            pattern = Pattern.from_dict(json.load(f))
    except (OSError, ValueError) as e:
        print(f"Could not read pattern '{args.pattern}': {e}", file=sys.stderr)
        return 2

    bpm = config.practice.default_bpm if args.bpm is None else args.bpm
    try:
        step_duration_ms(bpm, config.practice.steps_per_beat)
    except ValueError as e:
        print(f"Invalid tempo: {e}", file=sys.stderr)
        return 2
    if args.save_config:
        save_config(config, Path(args.config) if args.config else None)

    listener = DrumListener(config)
    if not listener.start_listening():
        print(f"Error: {listener.error}", file=sys.stderr)
        return 1

    try:
        listener.start_practice(pattern, bpm, tolerance_ms=args.tolerance)
        print(f"Practice at {bpm:g} BPM over {pattern.length} steps... press Ctrl+C to finish.", flush=True)
        _wait(listener, args.seconds)
        stats = listener.stop_practice()
        error = listener.error
    finally:
        listener.stop_listening()

    print(f"Expected beats: {stats.total_expected_beats}")
    print(f"Correct beats:  {stats.correct_beats}")
    print(f"Accuracy:       {stats.accuracy:.1f}%")
    print(f"Timing:         early={stats.timing.early} on_time={stats.timing.on_time} "
          f"late={stats.timing.late}")
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run drumcoach")
    parser.add_argument("--config", help="Path to config JSON (default: ~/.drumcoach/config.json)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARN", "WARNING", "ERROR"],
                        help="Override the configured log level")
    parser.add_argument("--log-file", help="Also write log output to this file")
    parser.add_argument("--save-config", action="store_true",
                        help="Write the effective config back to disk")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    devices = sub.add_parser("devices", help="List audio input devices")
    devices.set_defaults(func=cmd_devices)

    listen = sub.add_parser("listen", help="Print detected drum hits")
    listen.add_argument("--strategy", choices=[s.name.lower() for s in ClassifierStrategy])
    listen.add_argument("--threshold", type=float, help="Confidence threshold (0-1)")
    listen.add_argument("--seconds", type=float, help="Stop after this many seconds")
    listen.add_argument("--device", type=int, help="Input device index")
    listen.set_defaults(func=cmd_listen)

    practice = sub.add_parser("practice", help="Score a practice run against a pattern")
    practice.add_argument("--pattern", required=True, help="Pattern JSON file")
    practice.add_argument("--bpm", type=float, help="Tempo (default from config)")
    practice.add_argument("--seconds", type=float, help="Stop after this many seconds")
    practice.add_argument("--tolerance", type=float, help="On-time window in ms")
    practice.add_argument("--device", type=int, help="Input device index")
    practice.set_defaults(func=cmd_practice)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log_event("DEBUG", "Startup", "Command", command=args.command)

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = args.func(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = args.func(args)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
