"""
Command dispatcher — the Discord-agnostic half of every music command.

The cog checks preconditions (guild, voice channel, permissions) and
renders replies; everything that touches queues and sessions goes
through ``MusicController`` so it can be exercised without Discord.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from config.constants import SOURCE_AUTO
from utils.guild_queue import GuildQueue, PlaybackState, QueueSnapshot
from utils.playback_session import Connector, PlaybackSession, SessionListener
from utils.registry import MusicRegistry
from utils.source_resolver import SourceResolver
from utils.stream_acquirer import StreamAcquirer
from utils.track import Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayResult:
    track: Track
    position: int
    started: bool  # True if the session was idle and playback is starting


class MusicController:
    """Apply music commands to the registry's queues and sessions."""

    def __init__(
        self,
        registry: MusicRegistry,
        resolver: SourceResolver,
        acquirer: StreamAcquirer,
        *,
        preview_size: int = 10,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.acquirer = acquirer
        self.preview_size = preview_size

    def _new_session(self, queue: GuildQueue) -> PlaybackSession:
        return PlaybackSession(queue, self.acquirer)

    def session_for(self, guild_id: int) -> PlaybackSession:
        return self.registry.session_for(guild_id, self._new_session)

    # ── Commands ──────────────────────────────────────────────────────

    async def play(
        self,
        guild_id: int,
        query: str,
        *,
        source: str = SOURCE_AUTO,
        connector: Optional[Connector] = None,
        listener: Optional[SessionListener] = None,
        requested_by: Optional[int] = None,
    ) -> PlayResult:
        """Resolve *query*, enqueue it and kick the session if idle.

        Raises ``ResolutionError`` before touching the queue when the
        search comes back empty.
        """
        queue = self.registry.queue_for(guild_id)
        track = await self.resolver.resolve(query, source, requested_by=requested_by)

        session = self.session_for(guild_id)
        idle = session.accepts_start
        if idle:
            session.bind(connector, listener)
        position = queue.enqueue(track)
        logger.info(
            "Guild %d: queued '%s' at position %d (%s)",
            guild_id, track.title, position, track.source_kind.value,
        )
        if idle:
            session.request_start()
        return PlayResult(track=track, position=position, started=idle)

    def pause(self, guild_id: int) -> bool:
        session = self.registry.get_session(guild_id)
        return session.pause() if session else False

    def resume(self, guild_id: int) -> bool:
        session = self.registry.get_session(guild_id)
        return session.resume() if session else False

    def skip(self, guild_id: int) -> Optional[Track]:
        session = self.registry.get_session(guild_id)
        return session.skip() if session else None

    async def stop(self, guild_id: int) -> bool:
        session = self.registry.get_session(guild_id)
        if session is None:
            queue = self.registry.get_queue(guild_id)
            if queue is not None:
                queue.clear()
            return False
        return await session.stop()

    def snapshot(self, guild_id: int) -> QueueSnapshot:
        queue = self.registry.get_queue(guild_id)
        if queue is None:
            return QueueSnapshot(
                current=None,
                upcoming=(),
                pending_count=0,
                playback_state=PlaybackState.IDLE,
                volume=self.registry.default_volume,
            )
        return queue.snapshot(self.preview_size)

    def now_playing(self, guild_id: int) -> Optional[Track]:
        queue = self.registry.get_queue(guild_id)
        return queue.current if queue is not None else None

    def set_volume(self, guild_id: int, level: int) -> Optional[float]:
        """Set the queue volume from a 0–100 level; ``None`` if the guild has no queue.

        Takes effect from the next acquired track.
        """
        queue = self.registry.get_queue(guild_id)
        if queue is None:
            return None
        queue.volume = max(0, min(100, level)) / 100
        logger.info("Guild %d: volume set to %d%%", guild_id, round(queue.volume * 100))
        return queue.volume
