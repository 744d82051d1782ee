"""
discord.py adapter for the session's voice transport.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import discord

from utils.errors import VoiceConnectionError
from utils.playback_session import Connector

logger = logging.getLogger(__name__)

VOICE_CONNECT_TIMEOUT = 30  # seconds


class DiscordVoiceConnection:
    """Wrap a ``discord.VoiceClient`` in the session's connection interface."""

    def __init__(self, voice_client: discord.VoiceClient) -> None:
        self.voice_client = voice_client

    def play(self, source: Any, *, after: Callable[[Optional[Exception]], Any]) -> None:
        self.voice_client.play(source, after=after)

    def pause(self) -> None:
        self.voice_client.pause()

    def resume(self) -> None:
        self.voice_client.resume()

    def stop(self) -> None:
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()

    async def destroy(self) -> None:
        if self.voice_client.is_connected():
            await self.voice_client.disconnect(force=True)
        else:
            self.voice_client.cleanup()


async def connect_to(channel: discord.VoiceChannel) -> DiscordVoiceConnection:
    """Join *channel*, reusing (and moving) an existing guild voice client."""
    existing = channel.guild.voice_client
    try:
        if isinstance(existing, discord.VoiceClient) and existing.is_connected():
            if existing.channel.id != channel.id:
                await existing.move_to(channel)
            return DiscordVoiceConnection(existing)
        voice_client = await channel.connect(self_deaf=True, timeout=VOICE_CONNECT_TIMEOUT)
    except (asyncio.TimeoutError, discord.ClientException, discord.HTTPException) as exc:
        raise VoiceConnectionError(f"could not join {channel}: {exc}") from exc
    logger.info("Joined voice channel %s in guild %d", channel, channel.guild.id)
    return DiscordVoiceConnection(voice_client)


def channel_connector(channel: discord.VoiceChannel) -> Connector:
    async def connect() -> DiscordVoiceConnection:
        return await connect_to(channel)

    return connect
