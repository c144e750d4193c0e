"""Playback error hierarchy."""

from __future__ import annotations


class PlaybackError(RuntimeError):
    """Base class for playback failures."""


class PlaybackStartError(PlaybackError):
    """Playback could not start; the engine stays idle."""


class DecoderLaunchError(PlaybackStartError):
    """The decode source could not be started."""


class SinkOpenError(PlaybackStartError):
    """The audio output could not be opened."""


class SinkWriteError(PlaybackError):
    """The audio output rejected a buffer mid-stream."""
