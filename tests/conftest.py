"""Shared fakes for engine tests.

Tracks are mono 16-bit PCM at 1 kHz whose sample values are their own frame
index, so any written buffer tells exactly which part of the track it holds.
"""

from __future__ import annotations

from threading import Condition, Lock, Semaphore
from typing import Dict, List, Optional

import numpy as np
import pytest

from lmp.audio.errors import DecoderLaunchError
from lmp.audio.sink import RecordingSink
from lmp.audio.types import ProbeResult
from lmp.core.config import SettingsManager

SR = 1000
CHANNELS = 1
BYTES_PER_SECOND = SR * CHANNELS * 2


def indexed_pcm(seconds: float) -> bytes:
    frames = int(seconds * SR)
    return np.arange(frames, dtype="<i2").tobytes()


def first_frame(chunk: bytes) -> int:
    return int(np.frombuffer(chunk[:2], dtype="<i2")[0])


class FakeDecodeSource:
    def __init__(
        self,
        pcm: bytes,
        path: str,
        *,
        offset_seconds: float,
        speed: float,
        sample_rate: int,
        channels: int,
        exit_code: int = 0,
        fail_start: bool = False,
    ) -> None:
        self.path = path
        self.offset_seconds = offset_seconds
        self.speed = speed
        self.sample_rate = sample_rate
        self.channels = channels
        self._pcm = pcm
        self._exit_code = exit_code
        self._fail_start = fail_start
        self._pos = int(offset_seconds * sample_rate) * channels * 2
        self._returncode: Optional[int] = None
        self._produced = 0
        self._lock = Lock()
        self.started = False
        self.stop_calls = 0

    def start(self) -> None:
        if self._fail_start:
            raise DecoderLaunchError(f"cannot decode {self.path}")
        self.started = True

    def read(self, size: int) -> bytes:
        with self._lock:
            if self._returncode is not None:
                return b""
            chunk = self._pcm[self._pos : self._pos + size]
            self._pos += len(chunk)
            if not chunk:
                self._returncode = self._exit_code
            self._produced += len(chunk)
            return chunk

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self._returncode

    def stop(self) -> None:
        with self._lock:
            self.stop_calls += 1
            if self._returncode is None:
                self._returncode = -9

    @property
    def alive(self) -> bool:
        return self.started and self._returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def bytes_produced(self) -> int:
        return self._produced

    @property
    def error_output(self) -> str:
        return "boom" if self._exit_code else ""


class FakeSourceFactory:
    def __init__(self, tracks: Dict[str, bytes], *, exit_codes=None, failing=()) -> None:
        self.tracks = tracks
        self.exit_codes = dict(exit_codes or {})
        self.failing = set(failing)
        self.created: List[FakeDecodeSource] = []

    def __call__(self, path, *, offset_seconds, speed, sample_rate, channels):
        source = FakeDecodeSource(
            self.tracks[path],
            path,
            offset_seconds=offset_seconds,
            speed=speed,
            sample_rate=sample_rate,
            channels=channels,
            exit_code=self.exit_codes.get(path, 0),
            fail_start=path in self.failing,
        )
        self.created.append(source)
        return source

    def live(self) -> List[FakeDecodeSource]:
        return [source for source in self.created if source.alive]


class GatedSink(RecordingSink):
    """RecordingSink whose writes block until the test allows them."""

    def __init__(self, sample_rate: int, channels: int, *, permits: int = 0) -> None:
        super().__init__(sample_rate, channels)
        self._gate = Semaphore(permits)
        self._aborted = False
        self._written = Condition()

    def allow(self, count: int = 1) -> None:
        for _ in range(count):
            self._gate.release()

    def write(self, data: bytes) -> None:
        self._gate.acquire()
        if self._aborted:
            return
        super().write(data)
        with self._written:
            self._written.notify_all()

    def wait_for_writes(self, count: int, timeout: float = 5.0) -> bool:
        with self._written:
            return self._written.wait_for(lambda: len(self.writes) >= count, timeout=timeout)

    def abort(self) -> None:
        self._aborted = True
        self._gate.release(1000)


class SinkRecorder:
    """Sink factory remembering every sink it created."""

    def __init__(self, kind=RecordingSink, **kwargs) -> None:
        self.kind = kind
        self.kwargs = kwargs
        self.sinks: list = []

    def __call__(self, sample_rate: int, channels: int):
        sink = self.kind(sample_rate, channels, **self.kwargs)
        self.sinks.append(sink)
        return sink


@pytest.fixture
def settings(tmp_path, monkeypatch) -> SettingsManager:
    monkeypatch.delenv("LMP_CONFIG_PATH", raising=False)
    monkeypatch.delenv("LMP_CONFIG_DIR", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(
        "playback:\n  buffer_bytes: 256\n  stop_timeout_seconds: 0.2\n  pause_poll_seconds: 0.005\n",
        encoding="utf-8",
    )
    return SettingsManager(path)


def make_prober(durations: Dict[str, Optional[float]]):
    def _probe(path: str) -> ProbeResult:
        return ProbeResult(sample_rate=SR, channels=CHANNELS, duration_seconds=durations.get(path))

    return _probe
