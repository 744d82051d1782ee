"""
Music Cog — queue and play audio from YouTube, Spotify and SoundCloud in voice channels.

Commands:
    /play       — Search (or paste a URL) and queue it in your voice channel
    /pause      — Pause playback
    /resume     — Resume playback
    /skip       — Skip the current song
    /stop       — Stop playback, clear the queue & leave VC
    /queue      — Show the current queue
    /nowplaying — Show current song info
    /volume     — Set the volume for upcoming songs
    /help       — Show available commands

System requirement:
    ``yt-dlp`` and ``ffmpeg`` must be installed on the host system
    (e.g. ``pip install yt-dlp`` / ``apt install ffmpeg``).  Without them
    every acquisition strategy fails and /play reports an error.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands

from config.constants import BRAND, SOURCE_AUTO
from utils.controller import MusicController
from utils.embedder import Embedder
from utils.errors import MusicError, ResolutionError
from utils.guild_queue import QueueSnapshot
from utils.playback_session import SessionListener
from utils.source_resolver import SourceResolver
from utils.stream_acquirer import StreamAcquirer
from utils.track import Track
from utils.voice import channel_connector

if TYPE_CHECKING:
    from bot import EncoreBot

logger = logging.getLogger(__name__)

SOURCE_OPTIONS = [
    app_commands.Choice(name="Auto-detect", value=SOURCE_AUTO),
    app_commands.Choice(name="YouTube", value="youtube"),
    app_commands.Choice(name="Spotify", value="spotify"),
    app_commands.Choice(name="SoundCloud", value="soundcloud"),
]


# =====================================================================
#  Embed builders
# =====================================================================

def _requester_line(track: Track) -> str:
    return f"\n\U0001f464 Requested by <@{track.requested_by}>" if track.requested_by else ""


def _now_playing_embed(track: Track) -> discord.Embed:
    """Build the Now Playing embed."""
    desc = f"**[{track.title}]({track.url})**\n" if track.url.startswith("http") else f"**{track.title}**\n"
    if track.artist:
        desc += f"\U0001f3a4 {track.artist}\n"
    desc += f"⏱ {track.duration_formatted} • {track.source_kind.label}"
    desc += _requester_line(track)
    return Embedder.standard(
        "\U0001f3b5 Now Playing",
        desc,
        footer=BRAND,
        thumbnail=track.thumbnail_url,
    )


def _queued_embed(track: Track, position: int, started: bool) -> discord.Embed:
    """Build the Added-to-Queue embed."""
    desc = f"**{track.display_name}**\n⏱ {track.duration_formatted} • {track.source_kind.label}"
    if started:
        desc += "\n\n▶ Starting playback…"
    else:
        desc += f"\n\n\U0001f4cb Position in queue: **{position}**"
    return Embedder.standard(
        "➕ Added to Queue",
        desc,
        footer=BRAND,
        thumbnail=track.thumbnail_url,
    )


def _queue_embed(snapshot: QueueSnapshot) -> discord.Embed:
    """Build the queue embed."""
    lines: List[str] = []
    if snapshot.current:
        state = "⏸ **Paused:**" if snapshot.playback_state.value == "paused" else "\U0001f3b5 **Now Playing:**"
        lines.append(f"{state} {snapshot.current.display_name} ({snapshot.current.duration_formatted})")

    if snapshot.upcoming:
        lines.append("")
        lines.append("**Up Next:**")
        for i, track in enumerate(snapshot.upcoming, 1):
            lines.append(f"**{i}.** {track.display_name} ({track.duration_formatted})")
        if snapshot.remaining > 0:
            lines.append(f"… and {snapshot.remaining} more")
    elif not snapshot.current:
        lines.append("The queue is empty.")

    total = snapshot.pending_count + (1 if snapshot.current else 0)
    return Embedder.standard(
        "\U0001f4cb Music Queue",
        "\n".join(lines),
        footer=(
            f"{total} song{'s' if total != 1 else ''} in queue • "
            f"Volume {round(snapshot.volume * 100)}% • {BRAND}"
        ),
    )


def _help_embed() -> discord.Embed:
    """Build the help embed."""
    return Embedder.standard(
        "\U0001f3b5 Music Bot Help",
        "Queue and play music in your voice channel from YouTube, Spotify or SoundCloud.",
        fields=[
            (
                "\U0001f3b5 Music Commands",
                "`/play <query> [source]` - Play music from search or URL\n"
                "`/pause` - Pause the current song\n"
                "`/resume` - Resume the paused song\n"
                "`/skip` - Skip to the next song\n"
                "`/stop` - Stop playing and clear the queue\n"
                "`/queue` - Show the queue\n"
                "`/nowplaying` - Show the current song\n"
                "`/volume <0-100>` - Set the volume for upcoming songs",
                False,
            ),
            (
                "\U0001f3af Supported Sources",
                "**YouTube** - Direct URLs and search by name\n"
                "**Spotify** - Search by name/URL (audio is streamed from YouTube)\n"
                "**SoundCloud** - URLs and search, falls back to YouTube\n"
                "**Auto-detect** - Detects the source from the URL",
                False,
            ),
            (
                "\U0001f4a1 Usage Examples",
                "`/play Never Gonna Give You Up`\n"
                "`/play https://youtube.com/watch?v=dQw4w9WgXcQ`\n"
                "`/play Bohemian Rhapsody source:Spotify`\n"
                "`/play https://open.spotify.com/track/4iV5W9uYEdYUVa79Axb7Rh`",
                False,
            ),
        ],
        footer=BRAND,
    )


# =====================================================================
#  Session listener (posts playback updates to the command channel)
# =====================================================================

class _ChannelListener(SessionListener):
    """Send playback notifications to the text channel /play was used in."""

    def __init__(self, channel: Optional[discord.abc.Messageable]) -> None:
        self.channel = channel

    async def _send(self, embed: discord.Embed) -> None:
        if self.channel is None:
            return
        try:
            await self.channel.send(embed=embed)
        except discord.HTTPException as exc:
            logger.warning("Could not post music update: %s", exc)

    async def on_track_start(self, track: Track) -> None:
        await self._send(_now_playing_embed(track))

    async def on_track_error(self, track: Track, message: str) -> None:
        await self._send(Embedder.error("Playback Failed", f"**{track.title}**\n{message}"))

    async def on_queue_end(self) -> None:
        await self._send(
            Embedder.info("Queue Finished", "⏹ Nothing left to play, leaving the voice channel.")
        )


# =====================================================================
#  Cog
# =====================================================================

class MusicCog(commands.Cog, name="Music"):
    """Voice channel playback backed by yt-dlp and ffmpeg.

    Requires ``yt-dlp`` and ``ffmpeg`` on the host system.
    """

    def __init__(self, bot: "EncoreBot") -> None:
        self.bot = bot
        self._session: Optional[aiohttp.ClientSession] = None
        self.controller: Optional[MusicController] = None

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def cog_load(self) -> None:
        """Create the shared aiohttp session and the music services."""
        settings = self.bot.settings
        self._session = aiohttp.ClientSession()
        resolver = SourceResolver(
            self._session,
            spotify_client_id=settings.spotify_client_id,
            spotify_client_secret=settings.spotify_client_secret,
        )
        acquirer = StreamAcquirer.from_settings(
            settings, session=self._session, locator=resolver.playable_url
        )
        self.controller = MusicController(
            self.bot.music,
            resolver,
            acquirer,
            preview_size=settings.queue_preview_size,
        )
        logger.info(
            "Music cog loaded — strategies: %s, Spotify API: %s",
            ", ".join(acquirer.strategy_names),
            "on" if resolver.spotify_enabled else "off",
        )

    async def cog_unload(self) -> None:
        """Stop every session and close the HTTP session."""
        await self.bot.music.shutdown()
        if self._session and not self._session.closed:
            await self._session.close()
        logger.info("Music cog unloaded — session closed")

    # ── Service availability guard ─────────────────────────────────────

    async def _ensure_services(
        self, interaction: discord.Interaction
    ) -> Optional[MusicController]:
        """Return the controller, or send an error and return None if services are down."""
        if self.controller is not None:
            return self.controller
        await interaction.response.send_message(
            embed=Embedder.error(
                "Service Unavailable",
                "❌ Music services are not available right now. Please try again later.",
            ),
            ephemeral=True,
        )
        return None

    async def _ensure_guild(
        self, interaction: discord.Interaction
    ) -> Optional[MusicController]:
        if interaction.guild is not None:
            return await self._ensure_services(interaction)
        await interaction.response.send_message(
            embed=Embedder.error("Server Only", "This command can only be used in a server."),
            ephemeral=True,
        )
        return None

    async def _voice_channel(
        self, interaction: discord.Interaction
    ) -> Optional[discord.abc.GuildChannel]:
        """Return the caller's voice channel if the bot may speak there."""
        guild = interaction.guild
        if guild is None:
            return None
        member = guild.get_member(interaction.user.id)
        if member is None and isinstance(interaction.user, discord.Member):
            member = interaction.user
        if not member or not member.voice or not member.voice.channel:
            await interaction.response.send_message(
                embed=Embedder.error(
                    "Not in VC", "\U0001f50a You need to be in a voice channel to play music!"
                ),
                ephemeral=True,
            )
            return None

        channel = member.voice.channel
        perms = channel.permissions_for(guild.me)
        if not perms.connect or not perms.speak:
            await interaction.response.send_message(
                embed=Embedder.error(
                    "Missing Permissions",
                    "I need the permissions to join and speak in your voice channel!",
                ),
                ephemeral=True,
            )
            return None
        return channel

    # ── /play ─────────────────────────────────────────────────────────

    @app_commands.command(name="play", description="Play music from YouTube, Spotify, or SoundCloud")
    @app_commands.describe(
        query="The song name or URL",
        source="Where to search (default: auto-detect from the URL)",
    )
    @app_commands.choices(source=SOURCE_OPTIONS)
    async def play_cmd(
        self,
        interaction: discord.Interaction,
        query: str,
        source: Optional[app_commands.Choice[str]] = None,
    ) -> None:
        """Search for a song and queue it in the user's voice channel."""
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        channel = await self._voice_channel(interaction)
        if channel is None:
            return

        await interaction.response.defer()
        try:
            result = await controller.play(
                interaction.guild_id,
                query,
                source=source.value if source else SOURCE_AUTO,
                connector=channel_connector(channel),
                listener=_ChannelListener(interaction.channel),
                requested_by=interaction.user.id,
            )
        except ResolutionError as exc:
            await interaction.followup.send(embed=Embedder.error("No Results", exc.user_message))
            return
        except MusicError as exc:
            logger.error("Play failed in guild %s: %s", interaction.guild_id, exc)
            await interaction.followup.send(embed=Embedder.error("Playback Error", exc.user_message))
            return

        await interaction.followup.send(
            embed=_queued_embed(result.track, result.position, result.started)
        )

    # ── /pause ────────────────────────────────────────────────────────

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        if controller.pause(interaction.guild_id):
            await interaction.response.send_message(
                embed=Embedder.info("Paused", "⏸ Music paused.")
            )
        else:
            await interaction.response.send_message(
                embed=Embedder.warning("Nothing Playing", "No music is currently playing."),
                ephemeral=True,
            )

    # ── /resume ───────────────────────────────────────────────────────

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        if controller.resume(interaction.guild_id):
            await interaction.response.send_message(
                embed=Embedder.success("Resumed", "▶ Music resumed.")
            )
        else:
            await interaction.response.send_message(
                embed=Embedder.warning("Not Paused", "Music is not paused."),
                ephemeral=True,
            )

    # ── /skip ─────────────────────────────────────────────────────────

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        skipped = controller.skip(interaction.guild_id)
        if skipped is not None:
            await interaction.response.send_message(
                embed=Embedder.success("Skipped", f"⏭ Skipping **{skipped.title}**…")
            )
        else:
            await interaction.response.send_message(
                embed=Embedder.warning("Nothing Playing", "There’s nothing to skip."),
                ephemeral=True,
            )

    # ── /stop ─────────────────────────────────────────────────────────

    @app_commands.command(name="stop", description="Stop playing music and clear the queue")
    async def stop_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        if await controller.stop(interaction.guild_id):
            await interaction.response.send_message(
                embed=Embedder.info("Stopped", "⏹ Music stopped and queue cleared.")
            )
        else:
            await interaction.response.send_message(
                embed=Embedder.warning("Nothing Playing", "No music is currently playing."),
                ephemeral=True,
            )

    # ── /queue ────────────────────────────────────────────────────────

    @app_commands.command(name="queue", description="Show the current music queue")
    async def queue_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        snapshot = controller.snapshot(interaction.guild_id)
        await interaction.response.send_message(embed=_queue_embed(snapshot))

    # ── /nowplaying ───────────────────────────────────────────────────

    @app_commands.command(name="nowplaying", description="Show the currently playing song")
    async def nowplaying_cmd(self, interaction: discord.Interaction) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        track = controller.now_playing(interaction.guild_id)
        if track is not None:
            await interaction.response.send_message(embed=_now_playing_embed(track))
        else:
            await interaction.response.send_message(
                embed=Embedder.warning("Nothing Playing", "No song is currently playing."),
                ephemeral=True,
            )

    # ── /volume ───────────────────────────────────────────────────────

    @app_commands.command(name="volume", description="Set the bot's volume")
    @app_commands.describe(level="Volume level (0-100)")
    async def volume_cmd(
        self,
        interaction: discord.Interaction,
        level: app_commands.Range[int, 0, 100],
    ) -> None:
        controller = await self._ensure_guild(interaction)
        if controller is None:
            return
        volume = controller.set_volume(interaction.guild_id, level)
        if volume is None:
            await interaction.response.send_message(
                embed=Embedder.warning("No Queue", "No music queue found."),
                ephemeral=True,
            )
            return
        await interaction.response.send_message(
            embed=Embedder.info(
                "Volume",
                f"\U0001f50a Volume set to **{round(volume * 100)}%** (applies from the next song)",
            )
        )

    # ── /help ─────────────────────────────────────────────────────────

    @app_commands.command(name="help", description="Show help information and available commands")
    async def help_cmd(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(embed=_help_embed())

    # ── Error handler ─────────────────────────────────────────────────

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        """Reply to music errors; anything else is left to the tree handler."""
        original = getattr(error, "original", error)
        if not isinstance(original, MusicError):
            return
        logger.warning("Music command failed: %s", original)
        embed = Embedder.error("Music Error", original.user_message)
        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            pass  # Interaction may have expired

    # ── Voice state change listener ───────────────────────────────────

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Release the guild's session if the bot was kicked out of voice."""
        if self.bot.user is None or member.id != self.bot.user.id:
            return
        if before.channel is None or after.channel is not None:
            return

        session = self.bot.music.get_session(member.guild.id)
        # No connection means the session is already tearing it down itself
        if session is None or session.is_idle or session.connection is None:
            return
        logger.info("Disconnected from voice in guild %d, stopping session", member.guild.id)
        await session.stop()


# =====================================================================
#  Setup
# =====================================================================

async def setup(bot: "EncoreBot") -> None:
    await bot.add_cog(MusicCog(bot))
