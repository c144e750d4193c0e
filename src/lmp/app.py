"""Command-line entry point: play one file through the engine."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from threading import Event
from typing import List, Optional

from lmp.audio.engine import AudioEngine
from lmp.audio.errors import PlaybackError
from lmp.audio.types import EndReason
from lmp.core.config import SettingsManager

logger = logging.getLogger(__name__)

_STATUS_INTERVAL = 1.0


def _configure_logging(level_override: Optional[str] = None) -> Optional[Path]:
    env_level = os.environ.get("LOGLEVEL")
    level_name = (env_level or level_override or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)

    primary_dir = Path.cwd() / "logs"
    fallback_dir = Path(tempfile.gettempdir()) / "lmp_logs"
    logs_dir = primary_dir
    log_path: Path | None = None

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        logs_dir = fallback_dir
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logging.basicConfig(level=level)
            return None

    try:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        log_path = logs_dir / f"lmp-{timestamp}.log"
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        file_handler.setFormatter(formatter)
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logging.basicConfig(level=level, handlers=[file_handler, stream_handler])
    except OSError:
        logging.basicConfig(level=level)
    if log_path:
        logger.info("Writing log to %s", log_path)
        if logs_dir is fallback_dir:
            logger.warning("Using fallback log directory %s", logs_dir)
    return log_path


def _format_time(seconds: float) -> str:
    minutes, secs = divmod(int(max(0.0, seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lmp", description="Play an audio file.")
    parser.add_argument("path", nargs="?", help="audio file to play")
    parser.add_argument("--volume", type=float, help="volume multiplier, 0.0-2.0")
    parser.add_argument("--speed", type=float, help="speed multiplier, 0.25-3.0")
    parser.add_argument("--start", type=float, default=0.0, help="start position in seconds")
    parser.add_argument("--device", help="output device index or name")
    parser.add_argument("--decoder", choices=("ffmpeg", "soundfile"), help="decode backend")
    parser.add_argument("--list-devices", action="store_true", help="list output devices and exit")
    parser.add_argument("--null-output", action="store_true", help="discard audio instead of playing it")
    parser.add_argument("--config", type=Path, help="settings file")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--quiet", action="store_true", help="do not print the position")
    return parser


def _list_devices(engine: AudioEngine) -> int:
    try:
        devices = engine.list_devices()
    except PlaybackError as exc:
        print(f"lmp: {exc}", file=sys.stderr)
        return 1
    for device in devices:
        marker = "*" if device.is_default else " "
        print(f"{marker} {device.id:3d}  {device.name}  ({device.max_output_channels} ch)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = SettingsManager(args.config) if args.config else SettingsManager()
    _configure_logging(args.log_level or settings.get_diagnostics_log_level())

    if args.list_devices:
        with AudioEngine(settings) as engine:
            return _list_devices(engine)
    if not args.path:
        print("lmp: a file to play is required", file=sys.stderr)
        return 2

    if args.device is not None:
        settings.set_output_device(args.device)
    if args.decoder:
        settings.set_decoder_backend(args.decoder)
    if args.volume is not None:
        settings.set_volume(args.volume)
    if args.speed is not None:
        settings.set_speed(args.speed)
    if args.null_output:
        os.environ["LMP_NULL_OUTPUT"] = "1"

    finished = Event()
    outcome: List[EndReason] = []

    def _on_ended(reason: EndReason) -> None:
        outcome.append(reason)
        finished.set()

    with AudioEngine(settings) as engine:
        engine.set_track_ended_callback(_on_ended)
        try:
            engine.play(args.path)
        except PlaybackError as exc:
            print(f"lmp: {exc}", file=sys.stderr)
            return 1
        if args.start > 0:
            engine.seek_to(args.start)
        try:
            while not finished.wait(timeout=_STATUS_INTERVAL):
                if not args.quiet:
                    total = _format_time(engine.total_seconds) if engine.duration_known else "--:--"
                    print(f"\r{_format_time(engine.position_seconds)} / {total}", end="", flush=True)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping playback")
            engine.stop()
            return 130
        finally:
            if not args.quiet:
                print()

    if outcome and outcome[0] is not EndReason.NATURAL:
        print(f"lmp: playback ended with {outcome[0].value}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
