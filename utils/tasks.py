"""
Background tasks for maintenance and cleanup.
"""

from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Iterable, List, Optional

from discord.ext import tasks

if TYPE_CHECKING:
    from bot import EncoreBot

logger = logging.getLogger(__name__)


def cleanup_old_files(
    directory: str,
    max_age_seconds: float,
    protected: Iterable[str] = (),
    now: Optional[float] = None,
) -> List[str]:
    """Delete regular files in *directory* older than *max_age_seconds*.

    Paths in *protected* (files a session is still playing) are kept.
    Returns the deleted paths.
    """
    if not os.path.isdir(directory):
        return []
    now = time.time() if now is None else now
    keep = {os.path.abspath(p) for p in protected}
    deleted: List[str] = []
    for entry in os.scandir(directory):
        if not entry.is_file():
            continue
        path = os.path.abspath(entry.path)
        if path in keep:
            continue
        try:
            age = now - entry.stat().st_mtime
            if age > max_age_seconds:
                os.unlink(path)
                deleted.append(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Could not clean up %s: %s", path, exc)
    return deleted


class BackgroundTasks:
    """Scheduled background tasks for the bot."""

    def __init__(self, bot: EncoreBot):
        self.bot = bot
        settings = bot.settings
        self.downloads_dir = settings.downloads_dir
        self.max_age_seconds = settings.file_retention_minutes * 60
        self.cleanup_task.change_interval(minutes=settings.cleanup_interval_minutes)
        self.cleanup_task.start()

    @tasks.loop(minutes=10)
    async def cleanup_task(self):
        """Delete stale downloads that no session is playing."""
        try:
            deleted = cleanup_old_files(
                self.downloads_dir,
                self.max_age_seconds,
                protected=self.bot.music.temp_files_in_use(),
            )
            if deleted:
                logger.info("🧹 Cleaned up %d old download(s)", len(deleted))
        except Exception as e:
            logger.error("Error during cleanup task: %s", e, exc_info=True)

    @cleanup_task.before_loop
    async def before_cleanup(self):
        """Wait until bot is ready before starting cleanup task."""
        await self.bot.wait_until_ready()
        logger.info(
            "🕐 Download cleanup task started (every %s min, max age %ds)",
            self.cleanup_task.minutes, self.max_age_seconds,
        )

    def stop(self):
        """Stop all background tasks."""
        self.cleanup_task.cancel()
        logger.info("Background tasks stopped")
