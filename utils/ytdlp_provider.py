"""
Thin async layer over the yt-dlp library.

yt-dlp is blocking, so every extraction runs on the default executor.
Its console output is routed into this module's logger at debug level.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional

import yt_dlp

from utils.track import SourceKind, Track

logger = logging.getLogger(__name__)


class _YTDLLogger:
    """Forward yt-dlp chatter to ``logging`` instead of stdout/stderr."""

    def debug(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)

    def info(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)

    def warning(self, msg: str) -> None:
        logger.debug("yt-dlp warning: %s", msg)

    def error(self, msg: str) -> None:
        logger.debug("yt-dlp error: %s", msg)


_BASE_OPTIONS: Dict[str, Any] = {
    "noplaylist": True,
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "logger": _YTDLLogger(),
}

# Flat extraction: metadata only, no format negotiation (fast)
SEARCH_OPTIONS: Dict[str, Any] = {**_BASE_OPTIONS, "extract_flat": "in_playlist"}

# Full extraction restricted to the best audio-only format
AUDIO_OPTIONS: Dict[str, Any] = {**_BASE_OPTIONS, "format": "bestaudio/best"}


def _extract_blocking(target: str, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    with yt_dlp.YoutubeDL(options) as ydl:
        return ydl.extract_info(target, download=False)


async def extract_info(target: str, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Run ``YoutubeDL.extract_info`` off the event loop.

    Raises ``yt_dlp.utils.DownloadError`` on extractor failures.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(_extract_blocking, target, options))


def _best_thumbnail(entry: Dict[str, Any]) -> Optional[str]:
    if entry.get("thumbnail"):
        return entry["thumbnail"]
    thumbs = entry.get("thumbnails")
    if isinstance(thumbs, list):
        for thumb in reversed(thumbs):
            if isinstance(thumb, dict) and thumb.get("url"):
                return thumb["url"]
    return None


def _entry_url(entry: Dict[str, Any], kind: SourceKind) -> str:
    url = entry.get("webpage_url") or entry.get("original_url") or ""
    if url:
        return url
    raw = entry.get("url") or ""
    if raw.startswith(("http://", "https://")):
        return raw
    video_id = entry.get("id") or raw
    if kind is SourceKind.YOUTUBE and video_id:
        return f"https://www.youtube.com/watch?v={video_id}"
    return raw


def entry_to_track(entry: Dict[str, Any], kind: SourceKind) -> Optional[Track]:
    """Normalise one yt-dlp info dict into a ``Track`` (``None`` if unusable)."""
    if not isinstance(entry, dict):
        return None
    title = entry.get("title")
    url = _entry_url(entry, kind)
    if not title or not url:
        return None

    duration = entry.get("duration")
    try:
        duration_seconds: Optional[int] = int(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration_seconds = None

    artist = entry.get("artist") or entry.get("uploader") or entry.get("channel")
    return Track(
        title=str(title),
        url=url,
        source_kind=kind,
        duration_seconds=duration_seconds,
        thumbnail_url=_best_thumbnail(entry),
        artist=str(artist) if artist else None,
    )


def info_to_tracks(info: Optional[Dict[str, Any]], kind: SourceKind) -> List[Track]:
    """Turn a search result (``entries``) or a single-video info dict into tracks."""
    if not info:
        return []
    entries = info.get("entries")
    if entries is None:
        track = entry_to_track(info, kind)
        return [track] if track else []
    tracks: List[Track] = []
    for entry in entries:
        track = entry_to_track(entry, kind)
        if track:
            tracks.append(track)
    return tracks


def pick_audio_url(info: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the direct media URL of the best audio-only format in *info*."""
    if not info:
        return None
    if info.get("url") and info.get("vcodec") in (None, "none"):
        return info["url"]

    formats = info.get("formats") or []
    audio_only = [
        f for f in formats
        if isinstance(f, dict)
        and f.get("url")
        and f.get("acodec") not in (None, "none")
        and f.get("vcodec") in (None, "none")
    ]
    if not audio_only:
        return info.get("url")
    best = max(audio_only, key=lambda f: f.get("abr") or f.get("tbr") or 0)
    return best["url"]
