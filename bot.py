"""
Encore Discord Music Bot — Main entry point.
Loads configuration, initializes services, and starts the bot.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import discord
from aiohttp import web
from discord import app_commands
from discord.ext import commands

from config.settings import Settings
from utils.embedder import Embedder
from utils.errors import MusicError
from utils.registry import MusicRegistry
from utils.tasks import BackgroundTasks

# ── Logging ──────────────────────────────────────────────────────────
settings = Settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s │ %(levelname)-8s │ %(name)-20s │ %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("encore")

# ── Cog list ─────────────────────────────────────────────────────────
COGS = [
    "cogs.music",
]


# ── Bot subclass ─────────────────────────────────────────────────────
class EncoreBot(commands.Bot):
    """Custom Bot with the music registry attached."""

    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        intents.guilds = True           # Guild (server) events
        intents.voice_states = True     # Voice channel membership
        intents.typing = False          # Not used

        super().__init__(
            command_prefix="!",  # Slash commands are primary
            intents=intents,
            application_id=settings.application_id,
            help_command=None,
        )

        self.settings = settings
        self.music = MusicRegistry()
        self.background_tasks: Optional[BackgroundTasks] = None
        self._health_runner: Optional[web.AppRunner] = None

    # ── Startup ──────────────────────────────────────────────────────

    async def setup_hook(self) -> None:
        """Called once when the bot starts. Load cogs and init services."""
        logger.info("Running setup_hook…")

        for note in self.settings.warnings():
            logger.warning("CONFIG: %s", note)

        # Load cogs
        for cog_path in COGS:
            try:
                await self.load_extension(cog_path)
                logger.info("Loaded cog: %s", cog_path)
            except Exception as exc:
                logger.error("Failed to load cog %s: %s", cog_path, exc, exc_info=True)

        # Sync slash commands
        try:
            synced = await self.tree.sync()
            logger.info("Synced %d slash commands", len(synced))
        except Exception as exc:
            logger.error("Failed to sync commands: %s", exc)

        await self._start_health_server()

        # Start background tasks
        self.background_tasks = BackgroundTasks(self)

    async def on_ready(self) -> None:
        logger.info("♫ %s is online! Guilds: %d", self.user, len(self.guilds))
        await self.change_presence(
            activity=discord.Activity(
                type=discord.ActivityType.listening,
                name="/play • /help",
            )
        )

    # ── Shutdown ─────────────────────────────────────────────────────

    async def close(self) -> None:
        logger.info("Shutting down…")
        if self.background_tasks:
            self.background_tasks.stop()
        await self.music.shutdown()
        if self._health_runner:
            await self._health_runner.cleanup()
        await super().close()

    # ── Global Error Handler ─────────────────────────────────────────

    async def on_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        """Global handler for unhandled slash-command errors."""
        if isinstance(getattr(error, "original", error), MusicError):
            return  # Already answered by the music cog
        logger.error("Unhandled app command error: %s", error, exc_info=error)
        embed = Embedder.error(
            "Something went wrong",
            "An unexpected error occurred. Please try again later.",
        )
        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            pass  # Interaction may have expired

    # ── Health Check Server ──────────────────────────────────────────

    async def _start_health_server(self) -> None:
        """Start a tiny HTTP server so the host knows the bot is alive."""
        app = web.Application()
        app.router.add_get("/", self._health_handler)
        app.router.add_get("/health", self._health_handler)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.settings.port)
        await site.start()
        self._health_runner = runner
        logger.info("Health-check server listening on port %d", self.settings.port)

    async def _health_handler(self, _request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "bot": str(self.user),
                "guilds": len(self.guilds),
                "active_sessions": len(self.music.active_sessions()),
                "latency_ms": round(self.latency * 1000, 2),
            }
        )


# ── Entry Point ──────────────────────────────────────────────────────
def main() -> None:
    errors = settings.validate()
    if errors:
        for e in errors:
            logger.critical("CONFIG ERROR: %s", e)
        sys.exit(1)

    bot = EncoreBot(settings)

    # Attach the app-command error handler to the tree
    bot.tree.on_error = bot.on_app_command_error

    try:
        bot.run(settings.discord_token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as exc:
        logger.critical("Bot crashed: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
