"""Format probing run once before playback starts."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

from mutagen import File as MutagenFile

from lmp.audio.types import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 3.0


def _to_int(value: Any) -> Optional[int]:
    try:
        result = int(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def _to_seconds(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    # NaN, negative and zero lengths all mean "unknown"
    if result != result or result <= 0.0:
        return None
    return result


def parse_ffprobe_output(raw: str, defaults: ProbeResult) -> ProbeResult:
    """Build a ProbeResult from ``ffprobe -print_format json`` output.

    Missing or malformed fields fall back to ``defaults`` one by one.
    """

    try:
        payload = json.loads(raw or "{}")
    except ValueError:
        logger.debug("ffprobe returned malformed JSON")
        return defaults
    if not isinstance(payload, dict):
        return defaults

    streams = payload.get("streams") or []
    audio: Dict[str, Any] = {}
    for stream in streams:
        if isinstance(stream, dict) and stream.get("codec_type") == "audio":
            audio = stream
            break

    sample_rate = _to_int(audio.get("sample_rate")) or defaults.sample_rate
    channels = _to_int(audio.get("channels")) or defaults.channels

    fmt = payload.get("format") if isinstance(payload.get("format"), dict) else {}
    duration = _to_seconds(fmt.get("duration"))
    if duration is None:
        duration = _to_seconds(audio.get("duration"))
    if duration is None:
        duration = defaults.duration_seconds
    return ProbeResult(sample_rate=sample_rate, channels=channels, duration_seconds=duration)


def _probe_with_ffprobe(path: Path, ffprobe: str, timeout: float) -> Optional[str]:
    cmd = [
        ffprobe,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    try:
        completed = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("ffprobe timed out after %.1fs for %s", timeout, path)
        return None
    except OSError as exc:
        logger.warning("ffprobe could not be started: %s", exc)
        return None
    if completed.returncode != 0:
        logger.debug("ffprobe exited with %s for %s", completed.returncode, path)
        return None
    return completed.stdout.decode("utf-8", errors="replace")


def _probe_with_mutagen(path: Path, defaults: ProbeResult) -> Optional[ProbeResult]:
    try:
        audio = MutagenFile(path)
    except Exception as exc:  # pylint: disable=broad-except
        logger.debug("mutagen could not read %s: %s", path, exc)
        return None
    info = getattr(audio, "info", None) if audio is not None else None
    if info is None:
        return None
    duration = _to_seconds(getattr(info, "length", None))
    return ProbeResult(
        sample_rate=_to_int(getattr(info, "sample_rate", None)) or defaults.sample_rate,
        channels=_to_int(getattr(info, "channels", None)) or defaults.channels,
        duration_seconds=duration if duration is not None else defaults.duration_seconds,
    )


def probe_format(
    path: str | Path,
    *,
    ffprobe: Optional[str] = None,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    defaults: Optional[ProbeResult] = None,
) -> ProbeResult:
    """Return sample rate, channel count and duration of ``path``.

    ffprobe is asked first, bounded by ``timeout``; when it is missing, hangs
    or fails, the file header is read with mutagen. If both fail the defaults
    (44100 Hz, stereo, unknown duration) are returned. Never raises for a
    probe problem: an unknown duration only degrades seeking.
    """

    path = Path(path)
    defaults = defaults or ProbeResult()

    binary = ffprobe or shutil.which("ffprobe")
    if binary:
        raw = _probe_with_ffprobe(path, binary, timeout)
        if raw is not None:
            result = parse_ffprobe_output(raw, defaults)
            logger.debug("Probed %s via ffprobe: %s", path, result)
            return result
    else:
        logger.debug("ffprobe not found in PATH")

    result = _probe_with_mutagen(path, defaults)
    if result is not None:
        logger.debug("Probed %s via mutagen: %s", path, result)
        return result

    logger.warning("Could not probe %s, using defaults", path)
    return defaults
