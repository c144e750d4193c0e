"""Decode sources turning compressed files into s16le PCM byte streams.

Two backends share the ``DecodeSource`` protocol:

- ``FfmpegDecodeSource`` pipes the file through an ffmpeg subprocess. It
  handles any format ffmpeg knows and applies tempo changes with ``atempo``.
- ``SoundFileDecodeSource`` decodes in-process with soundfile (libsndfile
  formats only) and applies speed as varispeed resampling.

Both emit whole frames only, at the session sample rate and channel count.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections import deque
from threading import Lock, Thread
from typing import List, Optional

import numpy as np
import soundfile as sf

from lmp.audio.errors import DecoderLaunchError
from lmp.audio.types import BYTES_PER_SAMPLE, DecodeSource

logger = logging.getLogger(__name__)

SPEED_EPSILON = 0.01
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0
STOP_WAIT_SECONDS = 2.0
_STDERR_TAIL_LINES = 20


def atempo_chain(speed: float) -> List[float]:
    """Split ``speed`` into atempo factors each within ffmpeg's [0.5, 2.0]."""

    if speed <= 0:
        raise ValueError("speed must be positive")
    factors: List[float] = []
    remaining = float(speed)
    while remaining > ATEMPO_MAX:
        factors.append(ATEMPO_MAX)
        remaining /= ATEMPO_MAX
    while remaining < ATEMPO_MIN:
        factors.append(ATEMPO_MIN)
        remaining /= ATEMPO_MIN
    factors.append(remaining)
    return factors


def build_ffmpeg_command(
    ffmpeg: str,
    path: str,
    *,
    offset_seconds: float = 0.0,
    speed: float = 1.0,
    sample_rate: int = 44100,
    channels: int = 2,
) -> List[str]:
    cmd = [ffmpeg, "-nostdin", "-hide_banner", "-loglevel", "error"]
    if offset_seconds > 0:
        # input-side seek, before -i, so ffmpeg skips without decoding
        cmd += ["-ss", f"{offset_seconds:.3f}"]
    cmd += ["-i", str(path), "-vn"]
    if abs(speed - 1.0) > SPEED_EPSILON:
        chain = ",".join(f"atempo={factor:.4f}" for factor in atempo_chain(speed))
        cmd += ["-af", chain]
    cmd += [
        "-f",
        "s16le",
        "-acodec",
        "pcm_s16le",
        "-ar",
        str(int(sample_rate)),
        "-ac",
        str(int(channels)),
        "pipe:1",
    ]
    return cmd


class FfmpegDecodeSource:
    """Decode source backed by one ffmpeg process."""

    def __init__(
        self,
        path: str,
        *,
        offset_seconds: float = 0.0,
        speed: float = 1.0,
        sample_rate: int = 44100,
        channels: int = 2,
        ffmpeg: Optional[str] = None,
    ) -> None:
        self.path = str(path)
        self.offset_seconds = max(0.0, float(offset_seconds))
        self.speed = float(speed)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._ffmpeg = ffmpeg
        self._frame_bytes = self.channels * BYTES_PER_SAMPLE
        self._process: Optional[subprocess.Popen] = None
        self._stderr_thread: Optional[Thread] = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_lock = Lock()
        self._pending = b""
        self._bytes_produced = 0

    def __repr__(self) -> str:
        return (
            f"FfmpegDecodeSource({self.path!r}, offset={self.offset_seconds:.2f}, "
            f"speed={self.speed:.2f})"
        )

    def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("decode source already started")
        binary = self._ffmpeg or shutil.which("ffmpeg")
        if not binary:
            raise DecoderLaunchError("FFmpeg was not found in PATH")
        cmd = build_ffmpeg_command(
            binary,
            self.path,
            offset_seconds=self.offset_seconds,
            speed=self.speed,
            sample_rate=self.sample_rate,
            channels=self.channels,
        )
        logger.debug("Starting decoder: %s", " ".join(cmd))
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise DecoderLaunchError(f"Could not start ffmpeg for {self.path}: {exc}") from exc
        self._stderr_thread = Thread(target=self._drain_stderr, name="lmp-ffmpeg-stderr", daemon=True)
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        try:
            for raw_line in process.stderr:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    with self._stderr_lock:
                        self._stderr_tail.append(line)
        except (OSError, ValueError):
            return

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes of whole frames, ``b""`` at end of stream."""

        process = self._process
        if process is None or process.stdout is None:
            return b""
        while True:
            try:
                chunk = process.stdout.read(size)
            except (OSError, ValueError):
                # pipe closed by stop()
                chunk = b""
            if not chunk:
                self._pending = b""
                return b""
            data = self._pending + chunk
            usable = len(data) - (len(data) % self._frame_bytes)
            self._pending = data[usable:]
            if usable:
                self._bytes_produced += usable
                return data[:usable]

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        process = self._process
        if process is None:
            return None
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def stop(self) -> None:
        """Kill the process and reap it. Safe to call repeatedly or after exit."""

        process = self._process
        if process is None:
            return
        if process.poll() is None:
            try:
                process.kill()
            except OSError:
                pass
        try:
            process.wait(timeout=STOP_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg (pid %s) did not exit after kill", process.pid)
        thread = self._stderr_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=0.5)
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.poll()

    @property
    def bytes_produced(self) -> int:
        return self._bytes_produced

    @property
    def error_output(self) -> str:
        with self._stderr_lock:
            return "\n".join(self._stderr_tail)


def _match_channels(data: np.ndarray, channels: int) -> np.ndarray:
    if data.shape[1] == channels:
        return data
    if channels == 1:
        return data.mean(axis=1, keepdims=True)
    if data.shape[1] > channels:
        return data[:, :channels]
    pad = np.repeat(data[:, -1:], channels - data.shape[1], axis=1)
    return np.concatenate([data, pad], axis=1)


def _stretch(block: np.ndarray, target_frames: int) -> np.ndarray:
    src_frames = block.shape[0]
    if target_frames <= 0 or src_frames == target_frames:
        return block
    if src_frames == 1:
        return np.repeat(block, target_frames, axis=0)
    src_idx = np.arange(src_frames, dtype=np.float64)
    target_idx = np.linspace(0.0, src_frames - 1, target_frames, dtype=np.float64)
    out = np.empty((target_frames, block.shape[1]), dtype=np.float32)
    for channel in range(block.shape[1]):
        out[:, channel] = np.interp(target_idx, src_idx, block[:, channel])
    return out


class SoundFileDecodeSource:
    """In-process decode source using soundfile.

    Speed is applied as varispeed: the block is resampled so the pitch moves
    with the tempo. Sample-rate conversion to the session rate uses the same
    linear interpolation.
    """

    def __init__(
        self,
        path: str,
        *,
        offset_seconds: float = 0.0,
        speed: float = 1.0,
        sample_rate: int = 44100,
        channels: int = 2,
    ) -> None:
        self.path = str(path)
        self.offset_seconds = max(0.0, float(offset_seconds))
        self.speed = float(speed)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._file: Optional[sf.SoundFile] = None
        self._ratio = 1.0
        self._src_pos = 0.0
        self._dst_pos = 0
        self._bytes_produced = 0
        self._returncode: Optional[int] = None
        self._error = ""
        self._lock = Lock()

    def __repr__(self) -> str:
        return (
            f"SoundFileDecodeSource({self.path!r}, offset={self.offset_seconds:.2f}, "
            f"speed={self.speed:.2f})"
        )

    def start(self) -> None:
        try:
            sound_file = sf.SoundFile(self.path, mode="r")
        except Exception as exc:  # pylint: disable=broad-except
            raise DecoderLaunchError(f"Could not open {self.path}: {exc}") from exc
        start_frame = int(self.offset_seconds * sound_file.samplerate)
        if start_frame:
            try:
                sound_file.seek(min(start_frame, max(len(sound_file), 0)))
            except Exception as exc:  # pylint: disable=broad-except
                sound_file.close()
                raise DecoderLaunchError(f"Could not seek in {self.path}: {exc}") from exc
        # output frames per input frame
        self._ratio = (self.sample_rate / float(sound_file.samplerate)) / max(self.speed, 1e-6)
        self._file = sound_file

    def read(self, size: int) -> bytes:
        with self._lock:
            sound_file = self._file
            if sound_file is None or self._returncode is not None:
                return b""
            frames_out = max(1, size // (self.channels * BYTES_PER_SAMPLE))
            frames_in = max(1, int(frames_out / self._ratio))
            try:
                data = sound_file.read(frames_in, dtype="float32", always_2d=True)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("soundfile read failed for %s: %s", self.path, exc)
                self._error = str(exc)
                self._returncode = 1
                return b""
            if data.size == 0:
                self._returncode = 0
                return b""
            block = _match_channels(data, self.channels)
            if abs(self._ratio - 1.0) > 1e-6:
                self._src_pos += len(block)
                target = int(round(self._src_pos * self._ratio)) - self._dst_pos
                block = _stretch(block, max(1, target))
                self._dst_pos += len(block)
            pcm = np.clip(np.round(block * 32767.0), -32768, 32767).astype("<i2").tobytes()
            self._bytes_produced += len(pcm)
            return pcm

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        del timeout
        return self._returncode

    def stop(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            if self._returncode is None:
                self._returncode = -1

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def bytes_produced(self) -> int:
        return self._bytes_produced

    @property
    def error_output(self) -> str:
        return self._error


BACKENDS = ("ffmpeg", "soundfile")


def create_decode_source(
    path: str,
    *,
    offset_seconds: float = 0.0,
    speed: float = 1.0,
    sample_rate: int = 44100,
    channels: int = 2,
    backend: str = "ffmpeg",
    ffmpeg: Optional[str] = None,
) -> DecodeSource:
    """Create (but do not start) a decode source for ``backend``."""

    if backend == "ffmpeg":
        return FfmpegDecodeSource(
            path,
            offset_seconds=offset_seconds,
            speed=speed,
            sample_rate=sample_rate,
            channels=channels,
            ffmpeg=ffmpeg,
        )
    if backend == "soundfile":
        return SoundFileDecodeSource(
            path,
            offset_seconds=offset_seconds,
            speed=speed,
            sample_rate=sample_rate,
            channels=channels,
        )
    raise ValueError(f"Unknown decoder backend: {backend}")
