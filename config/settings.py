"""
Application settings loaded from environment variables.
All configuration is centralized here for easy management.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from config.constants import KNOWN_STRATEGIES

load_dotenv()


def _parse_list(raw: str, sep: str = ",") -> List[str]:
    """Parse a comma-separated env string into a list of stripped strings."""
    return [item.strip() for item in raw.split(sep) if item.strip()]


def _parse_optional_int(raw: str) -> Optional[int]:
    raw = raw.strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _parse_int(raw: str, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    """Immutable application settings loaded once at startup."""

    # Discord
    discord_token: str = field(default_factory=lambda: os.getenv("DISCORD_TOKEN", ""))
    application_id: Optional[int] = field(
        default_factory=lambda: _parse_optional_int(os.getenv("DISCORD_APPLICATION_ID", ""))
    )

    # Spotify (optional, YouTube is used when these are missing)
    spotify_client_id: str = field(
        default_factory=lambda: os.getenv("SPOTIFY_CLIENT_ID", "")
    )
    spotify_client_secret: str = field(
        default_factory=lambda: os.getenv("SPOTIFY_CLIENT_SECRET", "")
    )

    # Bot
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Audio acquisition
    downloads_dir: str = field(
        default_factory=lambda: os.getenv("DOWNLOADS_DIR", "downloads")
    )
    ytdlp_path: str = field(default_factory=lambda: os.getenv("YTDLP_PATH", "yt-dlp"))
    ffmpeg_path: str = field(default_factory=lambda: os.getenv("FFMPEG_PATH", "ffmpeg"))
    acquisition_strategies: List[str] = field(
        default_factory=lambda: [
            s.lower()
            for s in _parse_list(os.getenv("ACQUISITION_STRATEGIES", "pipeline,download"))
        ]
    )
    download_timeout: int = field(
        default_factory=lambda: _parse_int(os.getenv("DOWNLOAD_TIMEOUT", "300"), 300)
    )

    # Housekeeping
    file_retention_minutes: int = field(
        default_factory=lambda: _parse_int(os.getenv("FILE_RETENTION_MINUTES", "30"), 30)
    )
    cleanup_interval_minutes: int = field(
        default_factory=lambda: _parse_int(os.getenv("CLEANUP_INTERVAL_MINUTES", "10"), 10)
    )

    # Presentation
    queue_preview_size: int = field(
        default_factory=lambda: _parse_int(os.getenv("QUEUE_PREVIEW_SIZE", "10"), 10)
    )

    # Health check
    port: int = field(default_factory=lambda: _parse_int(os.getenv("PORT", "8080"), 8080))

    # ── Helpers ──────────────────────────────────────────────────────
    @property
    def spotify_enabled(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty = OK)."""
        errors: List[str] = []
        if not self.discord_token:
            errors.append("DISCORD_TOKEN is required")
        if not self.acquisition_strategies:
            errors.append("ACQUISITION_STRATEGIES must name at least one strategy")
        unknown = [s for s in self.acquisition_strategies if s not in KNOWN_STRATEGIES]
        if unknown:
            errors.append(
                f"Unknown acquisition strategies: {', '.join(unknown)} "
                f"(expected any of {', '.join(KNOWN_STRATEGIES)})"
            )
        if self.download_timeout <= 0:
            errors.append("DOWNLOAD_TIMEOUT must be positive")
        return errors

    def warnings(self) -> List[str]:
        """Return non-fatal configuration problems."""
        notes: List[str] = []
        if not self.spotify_enabled:
            notes.append(
                "SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET not set, "
                "Spotify queries will be searched on YouTube"
            )
        return notes
