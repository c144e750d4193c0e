"""Application configuration management module."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .defaults import DEFAULT_CONFIG
from .merge import deep_merge
from lmp.audio.decoding import BACKENDS
from lmp.audio.types import ProbeResult
from lmp.audio.volume import clamp_speed, clamp_volume
from lmp.core.env import default_config_path, resolve_config_path

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SettingsManager:
    """YAML configuration layered over built-in defaults.

    With ``autoload=False`` the file is not read, which gives an in-memory
    settings object holding only the defaults.
    """

    config_path: Path = field(default_factory=default_config_path)
    autoload: bool = True

    def __post_init__(self) -> None:
        self.config_path = resolve_config_path(Path(self.config_path))
        self._data: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        if self.autoload:
            self.load()

    def load(self) -> None:
        if not self.config_path.exists():
            self._data = copy.deepcopy(DEFAULT_CONFIG)
            return
        try:
            with self.config_path.open("r", encoding="utf-8") as file:
                user_config = yaml.safe_load(file) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Could not read settings from %s: %s", self.config_path, exc)
            user_config = {}
        if not isinstance(user_config, dict):
            user_config = {}
        self._data = deep_merge(DEFAULT_CONFIG, user_config)

    def save(self) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with self.config_path.open("w", encoding="utf-8") as file:
            yaml.safe_dump(self._data, file, allow_unicode=False, sort_keys=True)

    def get_raw(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    def _float(self, section: str, key: str, *, minimum: float = 0.0) -> float:
        default = DEFAULT_CONFIG[section][key]
        value = self._section(section).get(key, default)
        try:
            return max(minimum, float(value))
        except (TypeError, ValueError):
            return default

    def _int(self, section: str, key: str, *, minimum: int = 1) -> int:
        default = DEFAULT_CONFIG[section][key]
        value = self._section(section).get(key, default)
        try:
            return max(minimum, int(value))
        except (TypeError, ValueError):
            return default

    def _path(self, section: str, key: str) -> Optional[str]:
        value = self._section(section).get(key)
        if not value:
            return None
        return str(value)

    # playback

    def get_volume(self) -> float:
        return clamp_volume(self._float("playback", "volume"))

    def set_volume(self, value: float) -> None:
        self._data.setdefault("playback", {})["volume"] = clamp_volume(value)

    def get_speed(self) -> float:
        return clamp_speed(self._float("playback", "speed", minimum=0.0))

    def set_speed(self, value: float) -> None:
        self._data.setdefault("playback", {})["speed"] = clamp_speed(value)

    def get_buffer_bytes(self) -> int:
        return self._int("playback", "buffer_bytes", minimum=256)

    def get_stop_timeout(self) -> float:
        return self._float("playback", "stop_timeout_seconds")

    def get_pause_poll_seconds(self) -> float:
        return self._float("playback", "pause_poll_seconds", minimum=0.001)

    # decoder

    def get_decoder_backend(self) -> str:
        backend = str(self._section("decoder").get("backend", "")).strip().lower()
        return backend if backend in BACKENDS else DEFAULT_CONFIG["decoder"]["backend"]

    def set_decoder_backend(self, backend: str) -> None:
        backend = str(backend).strip().lower()
        if backend not in BACKENDS:
            raise ValueError(f"Unknown decoder backend: {backend}")
        self._data.setdefault("decoder", {})["backend"] = backend

    def get_ffmpeg_path(self) -> Optional[str]:
        return self._path("decoder", "ffmpeg")

    # probe

    def get_ffprobe_path(self) -> Optional[str]:
        return self._path("probe", "ffprobe")

    def get_probe_timeout(self) -> float:
        return self._float("probe", "timeout_seconds", minimum=0.1)

    def get_probe_defaults(self) -> ProbeResult:
        return ProbeResult(
            sample_rate=self._int("probe", "default_sample_rate"),
            channels=self._int("probe", "default_channels"),
            duration_seconds=None,
        )

    # output

    def get_output_device(self) -> Optional[Union[int, str]]:
        value = self._section("output").get("device")
        if value is None or value == "":
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        return int(text) if text.isdigit() else text

    def set_output_device(self, device: Optional[Union[int, str]]) -> None:
        self._data.setdefault("output", {})["device"] = device

    def get_output_latency(self) -> Union[str, float]:
        value = self._section("output").get("latency", DEFAULT_CONFIG["output"]["latency"])
        if isinstance(value, str) and value.lower() in ("low", "high"):
            return value.lower()
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            return DEFAULT_CONFIG["output"]["latency"]

    # diagnostics

    def get_diagnostics_log_level(self) -> str:
        level = str(self._section("diagnostics").get("log_level", "")).upper()
        return level if level in _LOG_LEVELS else DEFAULT_CONFIG["diagnostics"]["log_level"]

    def set_diagnostics_log_level(self, level: str) -> None:
        self._data.setdefault("diagnostics", {})["log_level"] = str(level).upper()
