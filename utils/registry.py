"""
Process-wide registry of guild queues and playback sessions.

Created once at startup and handed to whoever needs it.  Entries are
created lazily (first /play in a guild) and live until the process exits.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from config.constants import DEFAULT_VOLUME
from utils.guild_queue import GuildQueue
from utils.playback_session import PlaybackSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[GuildQueue], PlaybackSession]


class MusicRegistry:
    """guild id → queue and guild id → session maps."""

    def __init__(self, default_volume: float = DEFAULT_VOLUME) -> None:
        self.default_volume = default_volume
        self.queues: Dict[int, GuildQueue] = {}
        self.sessions: Dict[int, PlaybackSession] = {}

    def get_queue(self, guild_id: int) -> Optional[GuildQueue]:
        return self.queues.get(guild_id)

    def queue_for(self, guild_id: int) -> GuildQueue:
        queue = self.queues.get(guild_id)
        if queue is None:
            queue = GuildQueue(guild_id, volume=self.default_volume)
            self.queues[guild_id] = queue
            logger.debug("Created queue for guild %d", guild_id)
        return queue

    def get_session(self, guild_id: int) -> Optional[PlaybackSession]:
        return self.sessions.get(guild_id)

    def session_for(self, guild_id: int, factory: SessionFactory) -> PlaybackSession:
        session = self.sessions.get(guild_id)
        if session is None:
            session = factory(self.queue_for(guild_id))
            self.sessions[guild_id] = session
        return session

    def active_sessions(self) -> List[PlaybackSession]:
        return [s for s in self.sessions.values() if not s.is_idle]

    def temp_files_in_use(self) -> List[str]:
        """Downloaded files that an active session is still reading."""
        return [
            s.stream.temp_path
            for s in self.sessions.values()
            if s.stream is not None and s.stream.temp_path
        ]

    async def shutdown(self) -> None:
        """Stop every session (cog unload / bot close)."""
        for guild_id, session in list(self.sessions.items()):
            try:
                await session.stop()
            except Exception as exc:
                logger.warning("Failed to stop session for guild %d: %s", guild_id, exc)
