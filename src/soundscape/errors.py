"""Exception types raised by the synthesis context, graph nodes, and engine."""

from __future__ import annotations


class SoundscapeError(Exception):
    """Base class for soundscape errors."""


class ContextUnavailableError(SoundscapeError):
    """The audio output could not be created or resumed (no device, no PortAudio, permission denied)."""


class InvalidStateError(SoundscapeError):
    """A source node was started twice, or stopped before start / after it finished."""
