"""Command channel from caller threads to the playback loop.

Callers enqueue commands; the loop drains them only between buffers, so
every state change lands on an iteration boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Condition
from typing import List, Optional, Union


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class SetVolume:
    volume: float


@dataclass(frozen=True)
class SeekTo:
    seconds: float


@dataclass(frozen=True)
class SetSpeed:
    speed: float
    # None restarts at the position current when the loop handles it
    seconds: Optional[float] = None


Command = Union[Pause, Resume, Stop, SetVolume, SeekTo, SetSpeed]
RESTART_COMMANDS = (SeekTo, SetSpeed)


class CommandChannel:
    """Thread-safe FIFO with coalescing of restart requests.

    A new seek or speed change supersedes any restart that has not been
    handled yet; the superseded request is dropped. Merging keeps the newest
    speed and the newest explicit seek target.
    """

    def __init__(self) -> None:
        self._items: List[Command] = []
        self._cond = Condition()
        self._closed = False

    def put(self, command: Command) -> None:
        with self._cond:
            if self._closed:
                return
            if isinstance(command, RESTART_COMMANDS):
                command = self._coalesce_locked(command)
            self._items.append(command)
            self._cond.notify_all()

    def _coalesce_locked(self, command: Command) -> Command:
        speed: Optional[float] = None
        kept: List[Command] = []
        seconds: Optional[float] = None
        for item in self._items:
            if isinstance(item, SetSpeed):
                speed = item.speed
                seconds = item.seconds
            elif isinstance(item, SeekTo):
                seconds = item.seconds
            else:
                kept.append(item)
        self._items = kept
        if isinstance(command, SeekTo) and speed is not None:
            return SetSpeed(speed=speed, seconds=command.seconds)
        if isinstance(command, SetSpeed) and command.seconds is None and seconds is not None:
            return SetSpeed(speed=command.speed, seconds=seconds)
        return command

    def drain(self) -> List[Command]:
        with self._cond:
            items, self._items = self._items, []
            return items

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a command is pending or ``timeout`` elapses."""

        with self._cond:
            if self._items or self._closed:
                return True
            self._cond.wait(timeout=timeout)
            return bool(self._items) or self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._items = [Stop()]
            self._cond.notify_all()
