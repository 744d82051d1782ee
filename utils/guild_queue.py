"""
Per-guild queue of pending tracks plus the one currently playing.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional, Tuple

from config.constants import DEFAULT_VOLUME
from utils.track import Track


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class QueueSnapshot:
    """Read-only view of a guild queue for the /queue command."""

    current: Optional[Track]
    upcoming: Tuple[Track, ...]
    pending_count: int
    playback_state: PlaybackState
    volume: float

    @property
    def is_empty(self) -> bool:
        return self.current is None and self.pending_count == 0

    @property
    def remaining(self) -> int:
        """Pending tracks not included in ``upcoming``."""
        return self.pending_count - len(self.upcoming)


class GuildQueue:
    """FIFO of pending tracks for one guild."""

    __slots__ = ("guild_id", "pending", "current", "playback_state", "_volume")

    def __init__(self, guild_id: int, volume: float = DEFAULT_VOLUME) -> None:
        self.guild_id = guild_id
        self.pending: Deque[Track] = deque()
        self.current: Optional[Track] = None
        self.playback_state = PlaybackState.IDLE
        self._volume = 0.0
        self.volume = volume

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = max(0.0, min(1.0, float(value)))

    def __len__(self) -> int:
        return len(self.pending)

    def enqueue(self, track: Track) -> int:
        """Append *track*; returns its 1-based position in ``pending``."""
        self.pending.append(track)
        return len(self.pending)

    def dequeue_next(self) -> Optional[Track]:
        """Pop the head of ``pending`` or return ``None`` when empty."""
        if not self.pending:
            return None
        return self.pending.popleft()

    def clear(self) -> None:
        self.pending.clear()
        self.current = None
        self.playback_state = PlaybackState.IDLE

    def snapshot(self, limit: int = 10) -> QueueSnapshot:
        upcoming = tuple(list(self.pending)[: max(0, limit)])
        return QueueSnapshot(
            current=self.current,
            upcoming=upcoming,
            pending_count=len(self.pending),
            playback_state=self.playback_state,
            volume=self.volume,
        )
