"""Playback loop: decode source -> volume -> output sink.

One worker thread per session pulls buffers from the decode source, scales
them, writes them to the sink and advances the position cursor. Callers talk
to it only through the ``CommandChannel``; commands are applied between
buffers, never in the middle of one.
"""

from __future__ import annotations

import logging
from threading import Event, Lock, Thread, current_thread
from typing import Callable, Optional

from lmp.audio.commands import (
    CommandChannel,
    Pause,
    Resume,
    SeekTo,
    SetSpeed,
    SetVolume,
    Stop,
)
from lmp.audio.errors import PlaybackStartError, SinkWriteError
from lmp.audio.types import (
    DecodeSource,
    EndReason,
    LoopState,
    OutputSink,
    ProbeResult,
    SourceFactory,
)
from lmp.audio.volume import apply_volume

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_BYTES = 16 * 1024
DEFAULT_PAUSE_POLL_SECONDS = 0.02
_EXIT_WAIT_SECONDS = 1.0


class PlaybackSession:
    """State of the currently loaded track.

    The position cursor counts source-time bytes: each written buffer
    advances it by its length times the speed it was decoded at, so the
    cursor stays in track time after a speed change.
    """

    def __init__(
        self,
        path: str,
        probe: ProbeResult,
        *,
        volume: float = 1.0,
        speed: float = 1.0,
    ) -> None:
        self.path = path
        self.probe = probe
        self._lock = Lock()
        self._volume = volume
        self._speed = speed
        self._paused = False
        self._position_bytes = 0.0
        self._pending_seek: Optional[float] = None

    @property
    def sample_rate(self) -> int:
        return self.probe.sample_rate

    @property
    def channels(self) -> int:
        return self.probe.channels

    @property
    def duration_seconds(self) -> Optional[float]:
        return self.probe.duration_seconds

    @property
    def volume(self) -> float:
        with self._lock:
            return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        with self._lock:
            self._volume = value

    @property
    def speed(self) -> float:
        with self._lock:
            return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        with self._lock:
            self._speed = value

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @paused.setter
    def paused(self, value: bool) -> None:
        with self._lock:
            self._paused = bool(value)

    @property
    def pending_seek(self) -> Optional[float]:
        with self._lock:
            return self._pending_seek

    @pending_seek.setter
    def pending_seek(self, seconds: Optional[float]) -> None:
        with self._lock:
            self._pending_seek = seconds

    @property
    def bytes_written(self) -> int:
        with self._lock:
            return int(self._position_bytes)

    @property
    def position_seconds(self) -> float:
        with self._lock:
            if self._pending_seek is not None:
                return self._pending_seek
            bytes_per_second = self.probe.bytes_per_second
            if not bytes_per_second:
                return 0.0
            return self._position_bytes / bytes_per_second

    def advance(self, nbytes: int, speed: float) -> None:
        with self._lock:
            self._position_bytes += nbytes * speed

    def reset_position(self, seconds: float) -> None:
        frame_bytes = self.probe.frame_bytes
        frames = int(max(0.0, seconds) * self.probe.sample_rate)
        with self._lock:
            self._position_bytes = float(frames * frame_bytes)
            self._pending_seek = None


class PlaybackLoop:
    """Worker thread for one playback session.

    States: RUNNING reads and writes; PAUSED waits on the command channel
    without touching source or sink; SEEK_PENDING restarts the decode source
    at the next iteration; STOPPED is terminal.
    """

    def __init__(
        self,
        session: PlaybackSession,
        source: DecodeSource,
        sink: OutputSink,
        commands: CommandChannel,
        *,
        source_factory: SourceFactory,
        on_finished: Optional[Callable[[EndReason], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        buffer_bytes: int = DEFAULT_BUFFER_BYTES,
        pause_poll: float = DEFAULT_PAUSE_POLL_SECONDS,
    ) -> None:
        frame_bytes = session.probe.frame_bytes
        self._session = session
        self._source: Optional[DecodeSource] = source
        self._sink = sink
        self._commands = commands
        self._source_factory = source_factory
        self._on_finished = on_finished
        self._on_progress = on_progress
        self._buffer_bytes = max(frame_bytes, buffer_bytes - (buffer_bytes % frame_bytes))
        self._pause_poll = pause_poll
        self._volume = session.volume
        self._speed = session.speed
        self._paused = session.paused
        self._restart_target: Optional[float] = None
        self._state = LoopState.PAUSED if self._paused else LoopState.RUNNING
        self._end_reason: Optional[EndReason] = None
        self._stop_event = Event()
        self._lock = Lock()
        self._released = False
        self._thread: Optional[Thread] = None

    # -- caller side -------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("playback loop already started")
        self._thread = Thread(target=self._run, name="lmp-playback", daemon=True)
        self._thread.start()

    @property
    def state(self) -> LoopState:
        with self._lock:
            return self._state

    @property
    def end_reason(self) -> Optional[EndReason]:
        with self._lock:
            return self._end_reason

    @property
    def is_running(self) -> bool:
        return self.state is not LoopState.STOPPED and self._thread is not None

    @property
    def current_source(self) -> Optional[DecodeSource]:
        with self._lock:
            return self._source

    def request_stop(self) -> None:
        with self._lock:
            self._stop_event.set()
        self._commands.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; returns True when it has exited."""

        thread = self._thread
        if thread is None or thread is current_thread():
            # a callback on the worker itself cannot wait for its own exit
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def release(self) -> None:
        """Kill the decode source and close the sink, whatever the loop is doing.

        Used by teardown after a bounded join; unblocks a worker stuck in a
        read or write. Idempotent.
        """

        with self._lock:
            self._released = True
            source = self._source
            self._source = None
        if source is not None:
            source.stop()
        self._sink.abort()
        self._sink.close()

    # -- worker side -------------------------------------------------

    def _set_state_locked(self) -> None:
        if self._state is LoopState.STOPPED:
            return
        if self._restart_target is not None:
            self._state = LoopState.SEEK_PENDING
        elif self._paused:
            self._state = LoopState.PAUSED
        else:
            self._state = LoopState.RUNNING

    def _apply_commands(self) -> bool:
        """Apply queued commands; False means a stop was requested."""

        for command in self._commands.drain():
            if isinstance(command, Stop):
                return False
            if isinstance(command, Pause):
                self._paused = True
            elif isinstance(command, Resume):
                self._paused = False
            elif isinstance(command, SetVolume):
                self._volume = command.volume
            elif isinstance(command, SeekTo):
                self._restart_target = command.seconds
            elif isinstance(command, SetSpeed):
                self._speed = command.speed
                if command.seconds is not None:
                    self._restart_target = command.seconds
                elif self._restart_target is None:
                    self._restart_target = self._session.position_seconds
        with self._lock:
            self._set_state_locked()
        return not self._stop_event.is_set()

    def _restart_source(self) -> bool:
        target = self._restart_target or 0.0
        self._restart_target = None
        with self._lock:
            old = self._source
            self._source = None
        if old is not None:
            old.stop()
        # cursor moves before the new generation produces any data
        self._session.reset_position(target)
        self._session.speed = self._speed
        new = self._source_factory(
            self._session.path,
            offset_seconds=target,
            speed=self._speed,
            sample_rate=self._session.sample_rate,
            channels=self._session.channels,
        )
        try:
            new.start()
        except PlaybackStartError as exc:
            logger.error("Could not restart decoder at %.2fs: %s", target, exc)
            return False
        with self._lock:
            if self._released:
                released = True
            else:
                released = False
                self._source = new
                self._set_state_locked()
        if released:
            new.stop()
            return False
        logger.debug("Decoder restarted at %.2fs, speed %.2f", target, self._speed)
        return True

    def _classify_end(self, source: DecodeSource) -> EndReason:
        code = source.wait(timeout=_EXIT_WAIT_SECONDS)
        if code is None:
            logger.warning("Decoder output ended but the process is still running; stopping it")
            return EndReason.NATURAL
        if code != 0:
            details = source.error_output
            logger.error(
                "Decoder exited with status %s after %d bytes%s",
                code,
                source.bytes_produced,
                f": {details}" if details else "",
            )
            return EndReason.DECODE_FAILED
        return EndReason.NATURAL

    def _play(self) -> Optional[EndReason]:
        while not self._stop_event.is_set():
            if not self._apply_commands():
                return None
            state = self.state
            if state is LoopState.SEEK_PENDING:
                if not self._restart_source():
                    return None if self._stop_event.is_set() else EndReason.DECODE_FAILED
                continue
            if state is LoopState.PAUSED:
                self._commands.wait(timeout=self._pause_poll)
                continue

            source = self.current_source
            if source is None:
                return None
            chunk = source.read(self._buffer_bytes)
            if not chunk:
                if self._stop_event.is_set():
                    return None
                # a seek or speed change queued during the last read still applies
                if not self._apply_commands():
                    return None
                if self.state is LoopState.SEEK_PENDING:
                    continue
                return self._classify_end(source)
            chunk = apply_volume(chunk, self._volume)
            try:
                self._sink.write(chunk)
            except SinkWriteError as exc:
                if self._stop_event.is_set():
                    return None
                logger.error("Audio output failed, ending playback of %s: %s", self._session.path, exc)
                return EndReason.SINK_FAILED
            self._session.advance(len(chunk), self._speed)
            if self._on_progress:
                try:
                    self._on_progress(self._session.position_seconds)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.error("Progress callback failed: %s", exc)
        return None

    def _run(self) -> None:
        reason: Optional[EndReason] = None
        try:
            reason = self._play()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Playback loop crashed on %s", self._session.path)
            reason = EndReason.DECODE_FAILED
        finally:
            self._finish(reason)

    def _finish(self, reason: Optional[EndReason]) -> None:
        with self._lock:
            if self._stop_event.is_set():
                reason = None
            self._state = LoopState.STOPPED
            self._end_reason = reason
            source = self._source
            self._source = None
        self._session.pending_seek = None
        if source is not None:
            source.stop()
        if reason in (EndReason.NATURAL, EndReason.DECODE_FAILED):
            # let the decoded tail play out
            self._sink.drain()
        elif reason is EndReason.SINK_FAILED:
            self._sink.abort()
        if reason is not None:
            self._sink.close()
        logger.debug("Playback loop for %s finished: %s", self._session.path, reason)
        if reason is not None and self._on_finished:
            try:
                self._on_finished(reason)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("Track-ended callback failed: %s", exc)
