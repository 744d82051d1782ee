"""
Standardized Discord embed builder for consistent bot responses.
"""

from __future__ import annotations

import datetime
from typing import List, Optional, Tuple

import discord

from config.constants import (
    BOT_COLOR,
    BOT_ERROR_COLOR,
    BOT_INFO_COLOR,
    BOT_NAME,
    BOT_SUCCESS_COLOR,
    BOT_WARN_COLOR,
    MAX_EMBED_DESC,
    MAX_FIELD_VALUE,
)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 2] + "\n…"


class Embedder:
    """Factory for creating consistent, branded Discord embeds."""

    @staticmethod
    def _base(
        title: str,
        description: str,
        color: int,
        *,
        footer: Optional[str] = None,
    ) -> discord.Embed:
        embed = discord.Embed(
            title=title,
            description=_clip(description, MAX_EMBED_DESC),
            color=color,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )
        embed.set_footer(text=footer or f"♫ {BOT_NAME}")
        return embed

    # ── Standard Embed Types ─────────────────────────────────────────

    @classmethod
    def standard(
        cls,
        title: str,
        description: str,
        *,
        fields: Optional[List[Tuple[str, str, bool]]] = None,
        footer: Optional[str] = None,
        thumbnail: Optional[str] = None,
    ) -> discord.Embed:
        """Create a standard themed embed."""
        embed = cls._base(title, description, BOT_COLOR, footer=footer)
        if thumbnail:
            embed.set_thumbnail(url=thumbnail)
        for name, value, inline in (fields or []):
            embed.add_field(name=name, value=_clip(value, MAX_FIELD_VALUE), inline=inline)
        return embed

    @classmethod
    def success(cls, title: str, description: str) -> discord.Embed:
        return cls._base(f"✅ {title}", description, BOT_SUCCESS_COLOR)

    @classmethod
    def error(cls, title: str, description: str) -> discord.Embed:
        return cls._base(f"❌ {title}", description, BOT_ERROR_COLOR)

    @classmethod
    def warning(cls, title: str, description: str) -> discord.Embed:
        return cls._base(f"⚠️ {title}", description, BOT_WARN_COLOR)

    @classmethod
    def info(cls, title: str, description: str) -> discord.Embed:
        return cls._base(f"ℹ️ {title}", description, BOT_INFO_COLOR)
