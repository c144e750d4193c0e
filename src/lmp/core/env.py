"""Helpers for environment flags shared across the app."""

from __future__ import annotations

import os
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


def is_null_output_mode() -> bool:
    """Return True when audio should go to an in-memory sink instead of a device."""

    flag = os.environ.get("LMP_NULL_OUTPUT", "")
    return str(flag).strip().lower() in _TRUTHY


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "lmp" / "settings.yaml"


def resolve_config_path(default_path: Path) -> Path:
    """Pick config path based on environment overrides."""

    env_path = os.environ.get("LMP_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    env_dir = os.environ.get("LMP_CONFIG_DIR")
    if env_dir:
        return Path(env_dir) / "settings.yaml"
    return default_path
