"""Default configuration values."""

from __future__ import annotations

from typing import Any, Dict

DEFAULT_CONFIG: Dict[str, Any] = {
    "playback": {
        "volume": 1.0,
        "speed": 1.0,
        "buffer_bytes": 16384,
        "stop_timeout_seconds": 0.5,
        "pause_poll_seconds": 0.02,
    },
    "decoder": {
        "backend": "ffmpeg",
        "ffmpeg": "",
    },
    "probe": {
        "ffprobe": "",
        "timeout_seconds": 3.0,
        "default_sample_rate": 44100,
        "default_channels": 2,
    },
    "output": {
        "device": None,
        "latency": "high",
    },
    "diagnostics": {
        "log_level": "WARNING",
    },
}
