"""Output sinks delivering s16le PCM to the system audio service."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import List, Optional, Union

from lmp.audio.errors import SinkOpenError, SinkWriteError
from lmp.audio.types import BYTES_PER_SAMPLE, AudioDevice

logger = logging.getLogger(__name__)


def _import_sounddevice():
    # PortAudio is loaded at import time; keep that out of module import.
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        raise SinkOpenError(f"sounddevice is not available: {exc}") from exc
    return sd


def list_output_devices() -> List[AudioDevice]:
    sd = _import_sounddevice()
    devices: List[AudioDevice] = []
    try:
        default_output = sd.default.device[1]
    except Exception:  # pylint: disable=broad-except
        default_output = -1
    for index, info in enumerate(sd.query_devices()):
        try:
            max_out = int(info.get("max_output_channels") or 0)
        except (TypeError, ValueError):
            max_out = 0
        if max_out <= 0:
            continue
        devices.append(
            AudioDevice(
                id=index,
                name=str(info.get("name", f"device {index}")),
                is_default=index == default_output,
                max_output_channels=max_out,
                default_samplerate=float(info.get("default_samplerate") or 0.0),
            )
        )
    logger.debug("Found %d output devices", len(devices))
    return devices


class SoundDeviceSink:
    """Blocking PCM sink on a sounddevice ``RawOutputStream``.

    ``write`` returns once PortAudio has accepted the buffer, which paces the
    playback loop in real time.
    """

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        *,
        device: Optional[Union[int, str]] = None,
        latency: Union[str, float] = "high",
        blocksize: int = 0,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._device = device
        self._latency = latency
        self._blocksize = blocksize
        self._stream = None
        self._lock = Lock()

    def open(self) -> None:
        sd = _import_sounddevice()
        try:
            stream = sd.RawOutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                device=self._device,
                latency=self._latency,
                blocksize=self._blocksize,
            )
            stream.start()
        except Exception as exc:  # pylint: disable=broad-except
            raise SinkOpenError(
                f"Could not open audio output ({self.sample_rate} Hz, {self.channels} ch): {exc}"
            ) from exc
        with self._lock:
            self._stream = stream
        logger.debug("Opened audio output %s Hz / %s ch on %s", self.sample_rate, self.channels, self._device)

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def write(self, data: bytes) -> None:
        stream = self._stream
        if stream is None:
            raise SinkWriteError("audio output is closed")
        try:
            underflowed = stream.write(data)
        except Exception as exc:  # pylint: disable=broad-except
            raise SinkWriteError(f"audio output write failed: {exc}") from exc
        if underflowed:
            logger.debug("Output underflow")

    def drain(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            # stop() returns after queued buffers have played
            stream.stop()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Draining audio output failed: %s", exc)

    def abort(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            stream.abort()
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Aborting audio output failed: %s", exc)

    def close(self) -> None:
        with self._lock:
            stream = self._stream
            self._stream = None
        if stream is None:
            return
        try:
            stream.close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Closing audio output failed: %s", exc)
        logger.debug("Closed audio output")


class RecordingSink:
    """Sink keeping written PCM in memory.

    Used for headless runs and tests. With ``realtime=True`` each write sleeps
    for the buffer's play time so timing behaves like a device.
    """

    def __init__(self, sample_rate: int, channels: int, *, realtime: bool = False) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.realtime = realtime
        self.writes: List[bytes] = []
        self.drained = False
        self.opened = False
        self.closed = False
        self._open = False
        self._lock = Lock()

    def open(self) -> None:
        with self._lock:
            self._open = True
            self.opened = True

    @property
    def is_open(self) -> bool:
        return self._open

    def write(self, data: bytes) -> None:
        if not self._open:
            raise SinkWriteError("audio output is closed")
        with self._lock:
            self.writes.append(bytes(data))
        if self.realtime:
            time.sleep(len(data) / float(self.sample_rate * self.channels * BYTES_PER_SAMPLE))

    def drain(self) -> None:
        self.drained = True

    def abort(self) -> None:
        return None

    def close(self) -> None:
        with self._lock:
            self._open = False
            self.closed = True

    @property
    def data(self) -> bytes:
        with self._lock:
            return b"".join(self.writes)
