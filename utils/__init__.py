from utils.controller import MusicController
from utils.embedder import Embedder
from utils.guild_queue import GuildQueue
from utils.playback_session import PlaybackSession
from utils.registry import MusicRegistry
from utils.source_resolver import SourceResolver
from utils.stream_acquirer import StreamAcquirer

__all__ = [
    "MusicController",
    "Embedder",
    "GuildQueue",
    "PlaybackSession",
    "MusicRegistry",
    "SourceResolver",
    "StreamAcquirer",
]
