"""Playback engine facade used by the UI/control layer."""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from threading import Lock, RLock
from typing import Callable, List, Optional, Union

from lmp.audio.commands import CommandChannel, Pause, Resume, SeekTo, SetSpeed, SetVolume
from lmp.audio.decoding import create_decode_source
from lmp.audio.errors import PlaybackStartError
from lmp.audio.loop import PlaybackLoop, PlaybackSession
from lmp.audio.probe import probe_format
from lmp.audio.sink import RecordingSink, SoundDeviceSink, list_output_devices
from lmp.audio.types import (
    AudioDevice,
    DecodeSource,
    EndReason,
    LoopState,
    OutputSink,
    ProbeResult,
    SinkFactory,
    SourceFactory,
)
from lmp.audio.volume import clamp_speed, clamp_volume
from lmp.core.config import SettingsManager
from lmp.core.env import is_null_output_mode

logger = logging.getLogger(__name__)

Prober = Callable[[str], ProbeResult]


class AudioEngine:
    """Owns the current playback session and its decode source, sink and loop.

    Control methods may be called from any thread while audio is flowing.
    Volume and speed belong to the engine and carry over to the next track.
    The track-ended callback runs on the playback thread.
    """

    def __init__(
        self,
        settings: Optional[SettingsManager] = None,
        *,
        sink_factory: Optional[SinkFactory] = None,
        source_factory: Optional[SourceFactory] = None,
        prober: Optional[Prober] = None,
    ) -> None:
        self._settings = settings or SettingsManager(autoload=False)
        self._sink_factory = sink_factory or self._default_sink_factory
        self._source_factory = source_factory or functools.partial(
            create_decode_source,
            backend=self._settings.get_decoder_backend(),
            ffmpeg=self._settings.get_ffmpeg_path(),
        )
        self._prober = prober or functools.partial(
            probe_format,
            ffprobe=self._settings.get_ffprobe_path(),
            timeout=self._settings.get_probe_timeout(),
            defaults=self._settings.get_probe_defaults(),
        )
        self._lock = RLock()
        self._callback_lock = Lock()
        self._session: Optional[PlaybackSession] = None
        self._loop: Optional[PlaybackLoop] = None
        self._commands: Optional[CommandChannel] = None
        self._volume = self._settings.get_volume()
        self._speed = self._settings.get_speed()
        self._last_end_reason: Optional[EndReason] = None
        self._on_track_ended: Optional[Callable[[EndReason], None]] = None
        self._on_progress: Optional[Callable[[float], None]] = None

    def __enter__(self) -> "AudioEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _default_sink_factory(self, sample_rate: int, channels: int) -> OutputSink:
        if is_null_output_mode():
            return RecordingSink(sample_rate, channels, realtime=True)
        return SoundDeviceSink(
            sample_rate,
            channels,
            device=self._settings.get_output_device(),
            latency=self._settings.get_output_latency(),
        )

    # -- callbacks ---------------------------------------------------

    def set_track_ended_callback(self, callback: Optional[Callable[[EndReason], None]]) -> None:
        with self._callback_lock:
            self._on_track_ended = callback

    def set_progress_callback(self, callback: Optional[Callable[[float], None]]) -> None:
        with self._callback_lock:
            self._on_progress = callback

    def _handle_finished(self, reason: EndReason) -> None:
        with self._callback_lock:
            self._last_end_reason = reason
            callback = self._on_track_ended
        if reason is EndReason.NATURAL:
            logger.info("Track ended")
        if callback:
            callback(reason)

    def _handle_progress(self, seconds: float) -> None:
        with self._callback_lock:
            callback = self._on_progress
        if callback:
            callback(seconds)

    # -- lifecycle ---------------------------------------------------

    def play(self, path: Union[str, Path]) -> None:
        """Start playing ``path`` from the beginning, replacing any current track.

        Raises ``PlaybackStartError`` when the output cannot be opened or the
        decoder cannot be launched; the engine is left idle in that case.
        """

        path = str(path)
        with self._lock:
            self._teardown()
            self._last_end_reason = None
            probe = self._prober(path)
            logger.info(
                "Playing %s (%s Hz, %s ch, %s)",
                path,
                probe.sample_rate,
                probe.channels,
                f"{probe.duration_seconds:.2f}s" if probe.duration_known else "unknown duration",
            )
            session = PlaybackSession(path, probe, volume=self._volume, speed=self._speed)
            sink: Optional[OutputSink] = None
            source: Optional[DecodeSource] = None
            try:
                sink = self._sink_factory(probe.sample_rate, probe.channels)
                sink.open()
                source = self._source_factory(
                    path,
                    offset_seconds=0.0,
                    speed=self._speed,
                    sample_rate=probe.sample_rate,
                    channels=probe.channels,
                )
                source.start()
            except Exception as exc:  # pylint: disable=broad-except
                if source is not None:
                    source.stop()
                if sink is not None:
                    sink.close()
                logger.error("Could not start playback of %s: %s", path, exc)
                if isinstance(exc, PlaybackStartError):
                    raise
                raise PlaybackStartError(f"Could not start playback of {path}: {exc}") from exc

            commands = CommandChannel()
            loop = PlaybackLoop(
                session,
                source,
                sink,
                commands,
                source_factory=self._source_factory,
                on_finished=self._handle_finished,
                on_progress=self._handle_progress,
                buffer_bytes=self._settings.get_buffer_bytes(),
                pause_poll=self._settings.get_pause_poll_seconds(),
            )
            self._session = session
            self._commands = commands
            self._loop = loop
            loop.start()

    def stop(self) -> None:
        """Stop playback and release decoder and output. Safe in any state."""

        with self._lock:
            self._teardown()

    def close(self) -> None:
        self.stop()
        with self._callback_lock:
            self._on_track_ended = None
            self._on_progress = None

    def _teardown(self) -> None:
        loop = self._loop
        self._loop = None
        self._commands = None
        self._session = None
        if loop is None:
            return
        timeout = self._settings.get_stop_timeout()
        loop.request_stop()
        if not loop.join(timeout=timeout):
            logger.warning("Playback loop did not stop within %.2fs, forcing teardown", timeout)
        # kill and close regardless; unblocks a loop stuck in read/write
        loop.release()
        if not loop.join(timeout=timeout):
            logger.error("Playback loop still running after teardown")

    # -- control -----------------------------------------------------

    def _send(self, command) -> bool:
        commands = self._commands
        if commands is None or self._loop is None or not self._loop.is_running:
            return False
        commands.put(command)
        return True

    def pause(self) -> None:
        with self._lock:
            session = self._session
            if session is None or session.paused:
                return
            session.paused = True
            self._send(Pause())

    def resume(self) -> None:
        with self._lock:
            session = self._session
            if session is None or not session.paused:
                return
            session.paused = False
            self._send(Resume())

    def toggle_pause(self) -> None:
        with self._lock:
            if self.is_paused:
                self.resume()
            else:
                self.pause()

    def seek_to(self, seconds: float) -> None:
        """Jump to ``seconds``, clamped to the track length.

        Ignored when nothing is playing or the duration is unknown.
        """

        with self._lock:
            session = self._session
            if session is None or not self.is_playing:
                return
            duration = session.duration_seconds
            if duration is None:
                logger.debug("Seek ignored, duration of %s is unknown", session.path)
                return
            target = max(0.0, min(float(seconds), duration))
            session.pending_seek = target
            if not self._send(SeekTo(target)):
                session.pending_seek = None

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        volume = clamp_volume(value)
        with self._lock:
            self._volume = volume
            if self._session is not None:
                self._session.volume = volume
                self._send(SetVolume(volume))

    @property
    def speed(self) -> float:
        return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        # takes effect on apply_speed() or the next play()
        self._speed = clamp_speed(value)

    def apply_speed(self) -> None:
        """Restart decoding at the current position with the current speed."""

        with self._lock:
            if self._session is None:
                return
            self._send(SetSpeed(self._speed))

    # -- state -------------------------------------------------------

    @property
    def is_playing(self) -> bool:
        loop = self._loop
        return loop is not None and loop.is_running

    @property
    def is_paused(self) -> bool:
        session = self._session
        return session is not None and session.paused and self.is_playing

    @property
    def state(self) -> LoopState:
        loop = self._loop
        return loop.state if loop is not None else LoopState.STOPPED

    @property
    def current_file(self) -> Optional[str]:
        session = self._session
        return session.path if session is not None else None

    @property
    def total_seconds(self) -> float:
        session = self._session
        if session is None or session.duration_seconds is None:
            return 0.0
        return session.duration_seconds

    @property
    def duration_known(self) -> bool:
        session = self._session
        return session is not None and session.duration_seconds is not None

    @property
    def position_seconds(self) -> float:
        session = self._session
        return session.position_seconds if session is not None else 0.0

    @property
    def last_end_reason(self) -> Optional[EndReason]:
        with self._callback_lock:
            return self._last_end_reason

    def list_devices(self) -> List[AudioDevice]:
        return list_output_devices()
