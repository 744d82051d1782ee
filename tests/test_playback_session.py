"""
Tests for the playback session state machine.

Voice connections and the acquirer are in-test fakes; no Discord, yt-dlp
or ffmpeg is involved.
"""

import asyncio
import unittest
from unittest.mock import MagicMock

from utils.errors import AcquisitionError, VoiceConnectionError
from utils.events import CriticalStderr, PlayerError, PlayerIdle, ProcessExited
from utils.guild_queue import GuildQueue, PlaybackState
from utils.playback_session import PlaybackSession, SessionListener, SessionState
from utils.stream_acquirer import AcquiredStream
from utils.track import Track


def _track(title: str) -> Track:
    return Track(title=title, url=f"https://example.com/{title}")


class FakeConnection:
    def __init__(self):
        self.played = []
        self.after = None
        self.paused = False
        self.stopped = 0
        self.destroyed = False

    def play(self, source, *, after):
        self.played.append(source)
        self.after = after

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def stop(self):
        self.stopped += 1

    async def destroy(self):
        self.destroyed = True

    def finish(self, error=None):
        """Simulate the player reaching the end of the stream."""
        self.after(error)


class FakeAcquirer:
    def __init__(self, fail=(), block=()):
        self.fail = set(fail)
        self.block = set(block)
        self.gate = asyncio.Event()
        self.acquired = []
        self.streams = []
        self.sinks = []
        self.volumes = []

    async def acquire(self, track, *, volume, on_event=None):
        self.acquired.append(track.title)
        self.volumes.append(volume)
        self.sinks.append(on_event)
        if track.title in self.block:
            await self.gate.wait()
        if track.title in self.fail:
            raise AcquisitionError(f"all strategies failed for {track.title}")
        stream = AcquiredStream(MagicMock(name=f"source-{track.title}"), "fake")
        self.streams.append(stream)
        return stream


class RecordingListener(SessionListener):
    def __init__(self):
        self.started = []
        self.errors = []
        self.queue_ends = 0

    async def on_track_start(self, track):
        self.started.append(track.title)

    async def on_track_error(self, track, message):
        self.errors.append((track.title, message))

    async def on_queue_end(self):
        self.queue_ends += 1


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.queue = GuildQueue(42)
        self.acquirer = FakeAcquirer()
        self.connections = []
        self.listener = RecordingListener()

    async def _connect(self):
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    def _session(self, *titles):
        for title in titles:
            self.queue.enqueue(_track(title))
        return PlaybackSession(
            self.queue, self.acquirer, connector=self._connect, listener=self.listener
        )

    async def _settle(self, session):
        for _ in range(3):
            await asyncio.sleep(0)
        await session.drain()

    async def _wait_for_state(self, session, state):
        for _ in range(50):
            if session.state is state:
                return
            await asyncio.sleep(0)
        self.fail(f"session never reached {state}")

    def assertIdleAndReleased(self, session):
        self.assertIs(session.state, SessionState.IDLE)
        self.assertIsNone(session.connection)
        self.assertIsNone(session.stream)
        self.assertEqual(session.live_processes, [])


class TestPlayThrough(SessionTestCase):
    async def test_two_tracks_play_in_order_and_end_idle(self):
        session = self._session("A", "B")
        self.assertTrue(await session.start())
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "A")

        conn = self.connections[0]
        conn.finish()
        await self._settle(session)
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "B")

        conn.finish()
        await self._settle(session)
        self.assertIdleAndReleased(session)
        self.assertTrue(conn.destroyed)
        self.assertEqual(len(self.connections), 1)
        self.assertEqual(self.listener.started, ["A", "B"])
        self.assertEqual(self.listener.queue_ends, 1)
        self.assertEqual(
            list(session.history),
            [
                SessionState.IDLE,
                SessionState.CONNECTING,
                SessionState.ACQUIRING,
                SessionState.PLAYING,
                SessionState.ACQUIRING,
                SessionState.PLAYING,
                SessionState.IDLE,
            ],
        )

    async def test_finished_stream_is_released(self):
        session = self._session("A")
        await session.start()
        stream = self.acquirer.streams[0]
        self.connections[0].finish()
        await self._settle(session)
        self.assertTrue(stream.released)
        stream.source.cleanup.assert_called_once()

    async def test_start_is_noop_when_not_idle_or_empty(self):
        session = self._session()
        self.assertFalse(await session.start())
        self.queue.enqueue(_track("A"))
        await session.start()
        self.queue.enqueue(_track("B"))
        self.assertFalse(await session.start())
        self.assertEqual(self.queue.current.title, "A")

    async def test_volume_from_queue_is_used_for_acquisition(self):
        session = self._session("A")
        self.queue.volume = 0.2
        await session.start()
        self.assertEqual(self.acquirer.volumes, [0.2])


class TestSkip(SessionTestCase):
    async def test_skip_last_track_tears_down(self):
        session = self._session("A")
        await session.start()
        skipped = session.skip()
        self.assertEqual(skipped.title, "A")
        await self._settle(session)
        self.assertIdleAndReleased(session)
        self.assertTrue(self.connections[0].destroyed)

    async def test_skip_keeps_connection_for_next_track(self):
        session = self._session("A", "B")
        await session.start()
        conn = self.connections[0]
        session.skip()
        self.assertIs(session.state, SessionState.ACQUIRING)
        await self._settle(session)
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "B")
        self.assertIs(session.connection, conn)
        self.assertFalse(conn.destroyed)
        self.assertEqual(conn.stopped, 1)
        self.assertTrue(self.acquirer.streams[0].released)

    async def test_player_callback_after_skip_is_stale(self):
        session = self._session("A", "B", "C")
        await session.start()
        conn = self.connections[0]
        stale_after = conn.after
        session.skip()
        await self._settle(session)
        # discord.py fires after() for the stopped stream as well
        stale_after(None)
        await self._settle(session)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(len(self.queue), 1)

    async def test_skip_while_idle_returns_none(self):
        session = self._session()
        self.assertIsNone(session.skip())

    async def test_skip_during_acquisition_moves_on(self):
        self.acquirer.block = {"A"}
        session = self._session("A", "B")
        session.request_start()
        await self._wait_for_state(session, SessionState.ACQUIRING)
        self.assertEqual(session.skip().title, "A")
        await self._settle(session)
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(self.listener.started, ["B"])

    async def test_skip_while_paused(self):
        session = self._session("A", "B")
        await session.start()
        session.pause()
        session.skip()
        await self._settle(session)
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.playback_state, PlaybackState.PLAYING)


class TestStop(SessionTestCase):
    async def test_stop_clears_queue_and_disconnects(self):
        session = self._session("A", "B", "C")
        await session.start()
        self.assertTrue(await session.stop())
        self.assertIdleAndReleased(session)
        self.assertEqual(len(self.queue), 0)
        self.assertIsNone(self.queue.current)
        self.assertTrue(self.connections[0].destroyed)

    async def test_stop_when_idle_reports_nothing(self):
        session = self._session()
        self.assertFalse(await session.stop())

    async def test_stop_during_acquisition(self):
        self.acquirer.block = {"A"}
        session = self._session("A", "B")
        session.request_start()
        await self._wait_for_state(session, SessionState.ACQUIRING)
        self.assertTrue(await session.stop())
        await self._settle(session)
        self.assertIdleAndReleased(session)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.listener.started, [])
        self.assertTrue(self.connections[0].destroyed)

    async def test_late_player_callback_after_stop_is_ignored(self):
        session = self._session("A", "B")
        await session.start()
        conn = self.connections[0]
        await session.stop()
        conn.finish()
        await self._settle(session)
        self.assertIdleAndReleased(session)
        self.assertEqual(len(self.connections), 1)


class TestPauseResume(SessionTestCase):
    async def test_pause_requires_playing(self):
        session = self._session("A")
        self.assertFalse(session.pause())
        await session.start()
        self.assertTrue(session.pause())
        self.assertIs(session.state, SessionState.PAUSED)
        self.assertTrue(self.connections[0].paused)
        self.assertFalse(session.pause())

    async def test_resume_requires_paused(self):
        session = self._session("A")
        await session.start()
        self.assertFalse(session.resume())
        session.pause()
        self.assertTrue(session.resume())
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertFalse(self.connections[0].paused)
        self.assertEqual(self.queue.playback_state, PlaybackState.PLAYING)


class TestEvents(SessionTestCase):
    async def test_stale_event_is_dropped(self):
        session = self._session("A", "B")
        await session.start()
        await session.dispatch(PlayerIdle(), session.generation - 1)
        self.assertEqual(self.queue.current.title, "A")
        self.assertIs(session.state, SessionState.PLAYING)

    async def test_critical_stderr_advances(self):
        session = self._session("A", "B")
        await session.start()
        conn = self.connections[0]
        await session.dispatch(CriticalStderr("ffmpeg", "Error reading input"), session.generation)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(conn.stopped, 1)
        self.assertTrue(self.acquirer.streams[0].released)
        self.assertEqual(len(self.listener.errors), 1)
        self.assertEqual(self.listener.errors[0][0], "A")

    async def test_critical_stderr_from_acquirer_sink(self):
        session = self._session("A", "B")
        await session.start()
        sink = self.acquirer.sinks[0]
        sink(CriticalStderr("ffmpeg", "Connection reset by peer"))
        await self._settle(session)
        self.assertEqual(self.queue.current.title, "B")

    async def test_player_error_advances(self):
        session = self._session("A", "B")
        await session.start()
        self.connections[0].finish(RuntimeError("opus encoder died"))
        await self._settle(session)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(self.listener.errors[0][0], "A")

    async def test_process_exit_does_not_change_state(self):
        session = self._session("A", "B")
        await session.start()
        await session.dispatch(ProcessExited("yt-dlp", 0), session.generation)
        await session.dispatch(ProcessExited("ffmpeg", 1), session.generation)
        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "A")


class TestFailures(SessionTestCase):
    async def test_acquisition_failure_reports_and_advances(self):
        self.acquirer.fail = {"A"}
        session = self._session("A", "B")
        await session.start()
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(self.listener.errors, [("A", "Could not play the requested song.")])

    async def test_every_track_failing_ends_idle(self):
        self.acquirer.fail = {"A", "B"}
        session = self._session("A", "B")
        await session.start()
        self.assertIdleAndReleased(session)
        self.assertEqual(len(self.listener.errors), 2)
        self.assertTrue(self.connections[0].destroyed)

    async def test_connect_failure_clears_queue(self):
        async def broken_connect():
            raise VoiceConnectionError("timed out")

        self.queue.enqueue(_track("A"))
        self.queue.enqueue(_track("B"))
        session = PlaybackSession(
            self.queue, self.acquirer, connector=broken_connect, listener=self.listener
        )
        await session.start()
        self.assertIdleAndReleased(session)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.listener.errors, [("A", "Could not join the voice channel.")])
        self.assertEqual(self.acquirer.acquired, [])

    async def test_listener_failure_does_not_break_playback(self):
        class Broken(SessionListener):
            async def on_track_start(self, track):
                raise RuntimeError("channel deleted")

        self.listener = Broken()
        session = self._session("A")
        await session.start()
        self.assertIs(session.state, SessionState.PLAYING)


class SlowDisconnectConnection(FakeConnection):
    """A voice connection whose disconnect waits on ``gate``."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.destroying = asyncio.Event()

    async def destroy(self):
        self.destroying.set()
        await self.gate.wait()
        self.destroyed = True


class TestQueuedDuringTeardown(SessionTestCase):
    async def _slow_connect(self):
        conn = SlowDisconnectConnection()
        self.connections.append(conn)
        return conn

    def _slow_session(self, *titles):
        for title in titles:
            self.queue.enqueue(_track(title))
        return PlaybackSession(
            self.queue, self.acquirer, connector=self._slow_connect, listener=self.listener
        )

    async def test_track_queued_while_last_track_disconnects_is_played(self):
        session = self._slow_session("A")
        await session.start()
        first = self.connections[0]
        first.finish()
        await asyncio.wait_for(first.destroying.wait(), timeout=1)
        self.assertFalse(session.accepts_start)

        self.queue.enqueue(_track("B"))
        first.gate.set()
        await self._settle(session)

        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(self.listener.started, ["A", "B"])
        self.assertTrue(first.destroyed)
        self.assertEqual(len(self.connections), 2)

    async def test_track_queued_while_stop_disconnects_is_played(self):
        session = self._slow_session("A", "X")
        await session.start()
        first = self.connections[0]
        stopping = asyncio.ensure_future(session.stop())
        await asyncio.wait_for(first.destroying.wait(), timeout=1)

        self.queue.enqueue(_track("B"))
        first.gate.set()
        self.assertTrue(await stopping)
        await self._settle(session)

        self.assertIs(session.state, SessionState.PLAYING)
        self.assertEqual(self.queue.current.title, "B")
        self.assertEqual(self.acquirer.acquired, ["A", "B"])


if __name__ == "__main__":
    unittest.main()
