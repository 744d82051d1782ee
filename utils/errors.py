"""
Exception hierarchy for the music pipeline.

Every error carries a ``user_message`` that command handlers can show
verbatim; the exception text itself is for the logs.
"""

from __future__ import annotations

from typing import List, Optional, Tuple


class MusicError(Exception):
    """Base exception for music errors."""

    default_user_message = "Something went wrong with playback."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class ResolutionError(MusicError):
    """A query produced no playable search results."""

    default_user_message = "No results found for your search."


class AcquisitionError(MusicError):
    """No strategy could turn a track into an audio stream."""

    default_user_message = "Could not play the requested song."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        failures: Optional[List[Tuple[str, str]]] = None,
    ):
        super().__init__(message, user_message)
        self.failures: List[Tuple[str, str]] = list(failures or [])


class VoiceConnectionError(MusicError):
    """Joining the voice channel failed."""

    default_user_message = "Could not join the voice channel."
