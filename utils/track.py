"""
Track descriptor shared by the resolver, queue, acquirer and embeds.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class SourceKind(str, Enum):
    YOUTUBE = "youtube"
    SPOTIFY = "spotify"
    SOUNDCLOUD = "soundcloud"

    @property
    def label(self) -> str:
        return {"youtube": "YouTube", "spotify": "Spotify", "soundcloud": "SoundCloud"}[self.value]


@dataclass(frozen=True)
class Track:
    """A resolved, playable reference to a song. Immutable once created."""

    title: str
    url: str
    source_kind: SourceKind = SourceKind.YOUTUBE
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    artist: Optional[str] = None
    resolved_search_query: Optional[str] = None
    requested_by: Optional[int] = None

    @property
    def duration_formatted(self) -> str:
        return format_duration(self.duration_seconds)

    @property
    def needs_youtube_lookup(self) -> bool:
        """True when the audio bytes must come from a YouTube re-search."""
        return self.source_kind is SourceKind.SPOTIFY and bool(self.resolved_search_query)

    @property
    def display_name(self) -> str:
        if self.artist:
            return f"{self.title} — {self.artist}"
        return self.title


def format_duration(seconds: Any) -> str:
    """Convert seconds to M:SS (or H:MM:SS) format; ``Unknown`` if missing."""
    try:
        total = int(seconds)
    except (TypeError, ValueError):
        return "Unknown"
    if total < 0:
        return "Unknown"
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
