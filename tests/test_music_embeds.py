"""
Tests for the music cog's embed builders and the shared Embedder.
"""

import unittest

from cogs.music import _help_embed, _now_playing_embed, _queue_embed, _queued_embed
from config.constants import BOT_ERROR_COLOR, MAX_EMBED_DESC
from utils.embedder import Embedder
from utils.guild_queue import GuildQueue, PlaybackState
from utils.track import SourceKind, Track


def _track(n, **kw):
    return Track(title=f"Song {n}", url=f"https://example.com/{n}", duration_seconds=200, **kw)


class TestEmbedder(unittest.TestCase):
    def test_error_colour_and_title(self):
        embed = Embedder.error("No Results", "No results found for your search.")
        self.assertEqual(embed.colour.value, BOT_ERROR_COLOR)
        self.assertTrue(embed.title.endswith("No Results"))

    def test_long_description_is_clipped(self):
        embed = Embedder.standard("t", "x" * (MAX_EMBED_DESC + 100))
        self.assertLessEqual(len(embed.description), MAX_EMBED_DESC)


class TestMusicEmbeds(unittest.TestCase):
    def test_now_playing(self):
        track = _track(1, artist="Band", source_kind=SourceKind.SPOTIFY, requested_by=55,
                       thumbnail_url="https://img/1")
        embed = _now_playing_embed(track)
        self.assertIn("Song 1", embed.description)
        self.assertIn("Band", embed.description)
        self.assertIn("3:20", embed.description)
        self.assertIn("Spotify", embed.description)
        self.assertIn("<@55>", embed.description)
        self.assertEqual(embed.thumbnail.url, "https://img/1")

    def test_queued_shows_position(self):
        embed = _queued_embed(_track(2), 3, started=False)
        self.assertIn("**3**", embed.description)
        embed = _queued_embed(_track(2), 1, started=True)
        self.assertNotIn("Position", embed.description)

    def test_queue_preview_and_overflow(self):
        queue = GuildQueue(1)
        queue.current = _track(0)
        queue.playback_state = PlaybackState.PLAYING
        for n in range(1, 13):
            queue.enqueue(_track(n))
        embed = _queue_embed(queue.snapshot(10))
        self.assertIn("Now Playing", embed.description)
        self.assertIn("**10.** Song 10", embed.description)
        self.assertNotIn("Song 11", embed.description)
        self.assertIn("and 2 more", embed.description)
        self.assertIn("13 songs", embed.footer.text)

    def test_paused_queue(self):
        queue = GuildQueue(1)
        queue.current = _track(0)
        queue.playback_state = PlaybackState.PAUSED
        self.assertIn("Paused", _queue_embed(queue.snapshot()).description)

    def test_empty_queue(self):
        embed = _queue_embed(GuildQueue(1).snapshot())
        self.assertIn("The queue is empty.", embed.description)

    def test_help_lists_commands(self):
        embed = _help_embed()
        commands_field = embed.fields[0].value
        for name in ("/play", "/pause", "/resume", "/skip", "/stop", "/queue", "/volume"):
            self.assertIn(name, commands_field)
        self.assertEqual(len(embed.fields), 3)


if __name__ == "__main__":
    unittest.main()
