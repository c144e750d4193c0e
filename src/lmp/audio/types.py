"""Audio engine type definitions.

Shared by the engine, the playback loop and the decode/output backends so the
backends can be imported without pulling in the engine itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

BYTES_PER_SAMPLE = 2


class EndReason(Enum):
    NATURAL = "natural"
    DECODE_FAILED = "decode-failed"
    SINK_FAILED = "sink-failed"


class LoopState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    SEEK_PENDING = "seek-pending"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ProbeResult:
    sample_rate: int = 44100
    channels: int = 2
    duration_seconds: Optional[float] = None

    @property
    def duration_known(self) -> bool:
        return self.duration_seconds is not None

    @property
    def frame_bytes(self) -> int:
        return self.channels * BYTES_PER_SAMPLE

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.frame_bytes


@dataclass
class AudioDevice:
    id: int
    name: str
    is_default: bool = False
    max_output_channels: int = 0
    default_samplerate: float = 0.0


class DecodeSource(Protocol):
    path: str
    offset_seconds: float
    speed: float

    def start(self) -> None: ...

    def read(self, size: int) -> bytes: ...

    def wait(self, timeout: Optional[float] = None) -> Optional[int]: ...

    def stop(self) -> None: ...

    @property
    def returncode(self) -> Optional[int]: ...

    @property
    def bytes_produced(self) -> int: ...

    @property
    def error_output(self) -> str: ...


class OutputSink(Protocol):
    sample_rate: int
    channels: int

    def open(self) -> None: ...

    def write(self, data: bytes) -> None: ...

    def drain(self) -> None: ...

    def abort(self) -> None: ...

    def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...


class SourceFactory(Protocol):
    def __call__(
        self,
        path: str,
        *,
        offset_seconds: float,
        speed: float,
        sample_rate: int,
        channels: int,
    ) -> DecodeSource: ...


class SinkFactory(Protocol):
    def __call__(self, sample_rate: int, channels: int) -> OutputSink: ...
