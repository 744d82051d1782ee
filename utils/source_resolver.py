"""
Source resolver — turn a user query into a playable Track.

Sources:
    • YouTube     (search or youtube.com / youtu.be / music.youtube.com URL)
    • SoundCloud  (search or soundcloud.com URL; falls back to YouTube)
    • Spotify     (Web API with client credentials; the audio itself is
                   found by searching YouTube for "title artist")

When Spotify credentials are missing or the API misbehaves, Spotify
queries are answered from YouTube instead of failing the command.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp
import yt_dlp
from cachetools import TTLCache

from config.constants import (
    REQUEST_TIMEOUT,
    SEARCH_CACHE_SIZE,
    SEARCH_CACHE_TTL,
    SEARCH_LIMIT,
    SOURCE_AUTO,
    SPOTIFY_TOKEN_SKEW,
)
from utils.errors import ResolutionError
from utils.track import SourceKind, Track
from utils.ytdlp_provider import SEARCH_OPTIONS, extract_info, info_to_tracks

logger = logging.getLogger(__name__)

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_BASE = "https://api.spotify.com/v1"

# =====================================================================
#  URL regex patterns
# =====================================================================

SPOTIFY_TRACK_PATTERN = re.compile(
    r"(?:https?://)?open\.spotify\.com/(?:intl-\w+/)?track/([a-zA-Z0-9]+)"
)
SPOTIFY_ANY_PATTERN = re.compile(r"(?:https?://)?open\.spotify\.com/")

# youtube.com/watch?v=XXXX  |  youtu.be/XXXX  |  youtube.com/shorts/XXXX  |  music.youtube.com
YT_PATTERN = re.compile(
    r"(?:https?://)?"
    r"(?:"
    r"(?:www\.|m\.|music\.)?youtube\.com/(?:watch\?(?:.*&)?v=|shorts/)([a-zA-Z0-9_-]{11})"
    r"|"
    r"youtu\.be/([a-zA-Z0-9_-]{11})"
    r")"
)

SOUNDCLOUD_PATTERN = re.compile(
    r"(?:https?://)?(?:www\.|m\.|on\.)?soundcloud\.com/\S+"
)


def detect_source(query: str, requested: str = SOURCE_AUTO) -> SourceKind:
    """Pick the provider for *query*: explicit choice wins, else sniff the URL."""
    requested = (requested or SOURCE_AUTO).strip().lower()
    if requested != SOURCE_AUTO:
        try:
            return SourceKind(requested)
        except ValueError:
            logger.debug("Unknown source '%s', auto-detecting", requested)

    text = query.strip()
    if YT_PATTERN.search(text):
        return SourceKind.YOUTUBE
    if SPOTIFY_ANY_PATTERN.search(text):
        return SourceKind.SPOTIFY
    if SOUNDCLOUD_PATTERN.search(text):
        return SourceKind.SOUNDCLOUD
    return SourceKind.YOUTUBE


def _is_url(text: str) -> bool:
    return text.startswith(("http://", "https://")) or bool(
        YT_PATTERN.match(text) or SPOTIFY_ANY_PATTERN.match(text) or SOUNDCLOUD_PATTERN.match(text)
    )


def _normalize_url(text: str) -> str:
    text = text.strip()
    if not text.startswith(("http://", "https://")):
        text = f"https://{text}"
    return text


def spotify_item_to_track(item: Dict[str, Any]) -> Optional[Track]:
    """Normalise a Spotify Web API track object."""
    if not isinstance(item, dict) or not item.get("name"):
        return None
    name = item["name"]
    artists = [a.get("name", "") for a in item.get("artists") or [] if isinstance(a, dict)]
    artist = artists[0] if artists and artists[0] else None

    images = (item.get("album") or {}).get("images") or []
    thumbnail = images[0].get("url") if images and isinstance(images[0], dict) else None

    duration_ms = item.get("duration_ms")
    duration = int(duration_ms) // 1000 if isinstance(duration_ms, (int, float)) else None

    url = (item.get("external_urls") or {}).get("spotify") or ""
    if not url and item.get("id"):
        url = f"https://open.spotify.com/track/{item['id']}"

    return Track(
        title=name,
        url=url,
        source_kind=SourceKind.SPOTIFY,
        duration_seconds=duration,
        thumbnail_url=thumbnail,
        artist=artist,
        resolved_search_query=f"{name} {artist}" if artist else name,
    )


class SourceResolver:
    """Search YouTube / SoundCloud / Spotify and normalise results to ``Track``."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        spotify_client_id: str = "",
        spotify_client_secret: str = "",
        search_limit: int = SEARCH_LIMIT,
    ) -> None:
        self._session = session
        self._spotify_client_id = spotify_client_id
        self._spotify_client_secret = spotify_client_secret
        self.search_limit = search_limit
        self._cache: TTLCache[Tuple[str, str], Tuple[Track, ...]] = TTLCache(
            maxsize=SEARCH_CACHE_SIZE, ttl=SEARCH_CACHE_TTL
        )
        self._spotify_token: Optional[str] = None
        self._spotify_token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def spotify_enabled(self) -> bool:
        return bool(
            self._spotify_client_id and self._spotify_client_secret and self._session is not None
        )

    # ── Public API ────────────────────────────────────────────────────

    async def resolve(
        self,
        query: str,
        source: str = SOURCE_AUTO,
        *,
        requested_by: Optional[int] = None,
    ) -> Track:
        """Return the top result for *query* or raise ``ResolutionError``."""
        results = await self.search(query, source)
        if not results:
            raise ResolutionError(f"no results for {query!r} ({source})")
        return replace(results[0], requested_by=requested_by)

    async def search(self, query: str, source: str = SOURCE_AUTO) -> List[Track]:
        query = query.strip()
        if not query:
            return []
        kind = detect_source(query, source)
        key = (kind.value, query)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        if kind is SourceKind.SPOTIFY:
            results = await self._search_spotify(query)
        elif kind is SourceKind.SOUNDCLOUD:
            results = await self._search_soundcloud(query)
        else:
            results = await self._search_youtube(query)

        if results:
            self._cache[key] = tuple(results)
        logger.info("Search %s '%s' returned %d result(s)", kind.value, query, len(results))
        return results

    async def playable_url(self, track: Track) -> str:
        """URL that yt-dlp can pull audio from (re-searching YouTube for Spotify)."""
        if not track.needs_youtube_lookup:
            return track.url
        query = track.resolved_search_query or track.title
        results = await self._search_youtube(query, limit=1)
        if not results:
            raise ResolutionError(f"no YouTube match for {query!r}")
        logger.debug("Located '%s' on YouTube: %s", track.title, results[0].url)
        return results[0].url

    # ── yt-dlp backed providers ───────────────────────────────────────

    async def _ytdl_tracks(self, target: str, kind: SourceKind) -> List[Track]:
        try:
            info = await extract_info(target, SEARCH_OPTIONS)
        except yt_dlp.utils.DownloadError as exc:
            logger.warning("yt-dlp lookup failed for '%s': %s", target, exc)
            return []
        return info_to_tracks(info, kind)

    async def _search_youtube(self, query: str, limit: Optional[int] = None) -> List[Track]:
        if YT_PATTERN.search(query):
            return await self._ytdl_tracks(_normalize_url(query), SourceKind.YOUTUBE)
        count = limit or self.search_limit
        return await self._ytdl_tracks(f"ytsearch{count}:{query}", SourceKind.YOUTUBE)

    async def _search_soundcloud(self, query: str) -> List[Track]:
        if SOUNDCLOUD_PATTERN.search(query):
            target = _normalize_url(query)
        else:
            target = f"scsearch{self.search_limit}:{query}"
        results = await self._ytdl_tracks(target, SourceKind.SOUNDCLOUD)
        if results:
            return results
        if _is_url(query):
            logger.info("SoundCloud URL could not be resolved: %s", query)
            return []
        logger.info("SoundCloud search empty, falling back to YouTube for '%s'", query)
        return await self._search_youtube(query)

    # ── Spotify ───────────────────────────────────────────────────────

    async def _search_spotify(self, query: str) -> List[Track]:
        if not self.spotify_enabled:
            logger.debug("Spotify not configured, using YouTube for '%s'", query)
            return await self._youtube_for_spotify(query)

        try:
            match = SPOTIFY_TRACK_PATTERN.search(query)
            if match:
                data = await self._spotify_get(f"/tracks/{match.group(1)}")
                items = [data]
            elif _is_url(query):
                # Albums / playlists / artists are not single tracks
                return []
            else:
                data = await self._spotify_get(
                    "/search", {"q": query, "type": "track", "limit": self.search_limit}
                )
                items = ((data.get("tracks") or {}).get("items")) or []
        except (aiohttp.ClientError, asyncio.TimeoutError, ResolutionError) as exc:
            logger.warning("Spotify lookup failed for '%s', using YouTube: %s", query, exc)
            return await self._youtube_for_spotify(query)

        tracks = [t for t in (spotify_item_to_track(i) for i in items) if t]
        return tracks

    async def _youtube_for_spotify(self, query: str) -> List[Track]:
        """Answer a Spotify query from YouTube (no credentials / API failure)."""
        if SPOTIFY_ANY_PATTERN.search(query):
            title = await self._spotify_oembed_title(_normalize_url(query))
            if not title:
                return []
            query = title
        return await self._search_youtube(query)

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise ResolutionError("no HTTP session for Spotify requests")
        return self._session

    async def _spotify_access_token(self) -> str:
        async with self._token_lock:
            now = time.monotonic()
            if self._spotify_token and now < self._spotify_token_expiry:
                return self._spotify_token

            async with self._http().post(
                SPOTIFY_TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=aiohttp.BasicAuth(self._spotify_client_id, self._spotify_client_secret),
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    raise ResolutionError(f"Spotify token request returned {resp.status}")
                data = await resp.json(content_type=None)

            token = data.get("access_token")
            if not token:
                raise ResolutionError("Spotify token response had no access_token")
            expires_in = int(data.get("expires_in", 3600))
            self._spotify_token = token
            self._spotify_token_expiry = now + max(0, expires_in - SPOTIFY_TOKEN_SKEW)
            logger.info("Fetched Spotify access token (expires in %ds)", expires_in)
            return token

    async def _spotify_get(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        token = await self._spotify_access_token()
        async with self._http().get(
            f"{SPOTIFY_API_BASE}{path}",
            params=params,
            headers={"Authorization": f"Bearer {token}"},
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
        ) as resp:
            if resp.status == 401:
                # Token revoked early, refresh on next call
                self._spotify_token = None
            if resp.status != 200:
                raise ResolutionError(f"Spotify API {path} returned {resp.status}")
            data = await resp.json(content_type=None)
        return data if isinstance(data, dict) else {}

    async def _spotify_oembed_title(self, url: str) -> Optional[str]:
        """Resolve a Spotify URL to its title via the public oEmbed endpoint."""
        if self._session is None:
            return None
        try:
            oembed_url = f"https://open.spotify.com/oembed?url={quote(url, safe='')}"
            async with self._session.get(
                oembed_url,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    logger.warning("Spotify oEmbed returned %d", resp.status)
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Spotify oEmbed failed: %s", exc)
            return None
        title = data.get("title", "") if isinstance(data, dict) else ""
        if title:
            logger.info("Resolved Spotify URL to: %s", title)
        return title or None
