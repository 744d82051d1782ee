"""
Bot-wide constants and default values.
"""

# ── Bot Identity ─────────────────────────────────────────────────────
BOT_NAME = "Encore"
BOT_COLOR = 0x1DB954  # Green theme
BOT_ERROR_COLOR = 0xE74C3C  # Red
BOT_SUCCESS_COLOR = 0x2ECC71  # Green
BOT_INFO_COLOR = 0x3498DB  # Blue
BOT_WARN_COLOR = 0xF39C12  # Orange

# ── Discord limits ───────────────────────────────────────────────────
MAX_EMBED_DESC = 4096
MAX_FIELD_VALUE = 1024

# ── PCM contract (what the voice transport expects) ──────────────────
PCM_SAMPLE_RATE = 48000
PCM_CHANNELS = 2
PCM_FORMAT = "s16le"  # signed 16-bit little-endian

# ── Volume ───────────────────────────────────────────────────────────
DEFAULT_VOLUME = 0.5

# ── Acquisition ──────────────────────────────────────────────────────
STRATEGY_DIRECT = "direct"
STRATEGY_PIPELINE = "pipeline"
STRATEGY_DOWNLOAD = "download"
KNOWN_STRATEGIES = (STRATEGY_DIRECT, STRATEGY_PIPELINE, STRATEGY_DOWNLOAD)

URL_PROBE_TIMEOUT = 5         # seconds, direct-extraction URL check
PIPELINE_STARTUP_WINDOW = 2   # seconds, watch ffmpeg stderr before committing
PROCESS_REAP_TIMEOUT = 10     # seconds, wait for killed subprocesses to exit
DOWNLOAD_HTTP_CHUNK = "10M"

# ffmpeg stderr fragments that mean the pipeline will not produce audio
CRITICAL_STDERR_MARKERS = (
    "error reading",
    "read error",
    "session has been invalidated",
    "i/o error",
    "input/output error",
    "invalid data found",
    "server returned",
    "connection reset",
    "broken pipe",
    "end of file",
)

FFMPEG_BEFORE_OPTIONS = "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5"
FFMPEG_OPTIONS = "-vn"

# ── Search ───────────────────────────────────────────────────────────
SEARCH_LIMIT = 5
SEARCH_CACHE_TTL = 300        # 5-minute cache for repeated queries
SEARCH_CACHE_SIZE = 256
SPOTIFY_TOKEN_SKEW = 60       # refresh the token this many seconds early
REQUEST_TIMEOUT = 15          # seconds for Spotify / oEmbed calls

SOURCE_AUTO = "auto"
SOURCE_CHOICES = ("youtube", "spotify", "soundcloud", SOURCE_AUTO)

# ── Branding (user-facing) ───────────────────────────────────────────
BRAND = "Encore ♫ yt-dlp + ffmpeg"
