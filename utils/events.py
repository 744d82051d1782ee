"""
Input events that drive a playback session.

The player and the acquisition subprocesses never touch session state
directly; they emit one of these and the session's transition function
decides what happens.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class PlayerIdle:
    """The audio player finished the current stream."""


@dataclass(frozen=True)
class PlayerError:
    """The audio player stopped because of an error."""

    error: Optional[BaseException] = None


@dataclass(frozen=True)
class ProcessExited:
    """An acquisition subprocess exited."""

    name: str
    returncode: Optional[int]


@dataclass(frozen=True)
class CriticalStderr:
    """A subprocess printed a line that means the stream is broken."""

    name: str
    line: str


SessionEvent = Union[PlayerIdle, PlayerError, ProcessExited, CriticalStderr]
EventSink = Callable[[SessionEvent], None]


def discard_event(event: SessionEvent) -> None:
    """Default sink for streams not attached to a session."""
