"""Software volume for 16-bit little-endian PCM."""

from __future__ import annotations

import numpy as np

MIN_VOLUME = 0.0
MAX_VOLUME = 2.0
MIN_SPEED = 0.25
MAX_SPEED = 3.0

UNITY_EPSILON = 0.001

_INT16_MIN = -32768
_INT16_MAX = 32767


def clamp_volume(value: float) -> float:
    return max(MIN_VOLUME, min(float(value), MAX_VOLUME))


def clamp_speed(value: float) -> float:
    return max(MIN_SPEED, min(float(value), MAX_SPEED))


def apply_volume(data: bytes, volume: float) -> bytes:
    """Scale interleaved s16le samples by ``volume``.

    Results are truncated toward zero and clamped to the int16 range, so loud
    settings saturate instead of wrapping. A trailing odd byte is passed
    through untouched. Unity gain returns ``data`` as is.
    """

    if abs(volume - 1.0) < UNITY_EPSILON or not data:
        return data
    usable = len(data) - (len(data) % 2)
    samples = np.frombuffer(data, dtype="<i2", count=usable // 2)
    scaled = np.trunc(samples.astype(np.float64) * volume)
    np.clip(scaled, _INT16_MIN, _INT16_MAX, out=scaled)
    result = scaled.astype("<i2").tobytes()
    if usable != len(data):
        result += data[usable:]
    return result
