"""
Per-guild playback session — the state machine that owns a voice
connection, the audio player and the live acquisition pipeline.

States::

    IDLE ─start─▶ CONNECTING ─▶ ACQUIRING ─▶ PLAYING ⇄ PAUSED
      ▲                            ▲            │
      │                            └──skip/end──┤
      └────────── stop / queue exhausted ───────┘

Player callbacks and subprocess watchers never mutate state; they post
``utils.events`` objects which are handled one at a time under the
session lock.  Every event carries the generation of the playback that
produced it, so late events from a track that is already gone are
dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Deque,
    List,
    Optional,
    Protocol,
    Set,
)

from utils.errors import AcquisitionError, MusicError
from utils.events import (
    CriticalStderr,
    EventSink,
    PlayerError,
    PlayerIdle,
    ProcessExited,
    SessionEvent,
)
from utils.guild_queue import GuildQueue, PlaybackState
from utils.stream_acquirer import AcquiredStream, StreamAcquirer
from utils.track import Track

logger = logging.getLogger(__name__)

_ABORT_SKIP = "skip"
_ABORT_STOP = "stop"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACQUIRING = "acquiring"
    PLAYING = "playing"
    PAUSED = "paused"


class VoiceConnection(Protocol):
    """What the session needs from a voice transport."""

    def play(self, source: Any, *, after: Callable[[Optional[Exception]], Any]) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    async def destroy(self) -> None: ...


Connector = Callable[[], Awaitable[VoiceConnection]]


class SessionListener:
    """Receives user-facing notifications. Defaults do nothing."""

    async def on_track_start(self, track: Track) -> None:
        pass

    async def on_track_error(self, track: Track, message: str) -> None:
        pass

    async def on_queue_end(self) -> None:
        pass


class PlaybackSession:
    """Drive one guild's queue through the voice connection."""

    def __init__(
        self,
        queue: GuildQueue,
        acquirer: StreamAcquirer,
        *,
        connector: Optional[Connector] = None,
        listener: Optional[SessionListener] = None,
    ) -> None:
        self.queue = queue
        self.acquirer = acquirer
        self.connector = connector
        self.listener = listener or SessionListener()
        self.state = SessionState.IDLE
        self.connection: Optional[VoiceConnection] = None
        self.stream: Optional[AcquiredStream] = None
        self.history: Deque[SessionState] = deque([SessionState.IDLE], maxlen=64)

        self._generation = 0
        self._lock = asyncio.Lock()
        self._acquire_task: Optional[asyncio.Future] = None
        self._abort: Optional[str] = None
        self._start_pending = False
        self._tasks: Set[asyncio.Task] = set()

    # ── Introspection ─────────────────────────────────────────────────

    @property
    def guild_id(self) -> int:
        return self.queue.guild_id

    @property
    def is_idle(self) -> bool:
        return self.state is SessionState.IDLE

    @property
    def accepts_start(self) -> bool:
        """True when a new track should kick playback rather than just queue."""
        return self.state is SessionState.IDLE and not self._start_pending

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def live_processes(self) -> List[Any]:
        return self.stream.live_processes if self.stream else []

    def bind(
        self,
        connector: Optional[Connector],
        listener: Optional[SessionListener] = None,
    ) -> None:
        """Point an idle session at a (possibly new) voice channel and reply target."""
        self.connector = connector
        if listener is not None:
            self.listener = listener

    # ── Task plumbing ─────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until every queued event / start request has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def post(self, event: SessionEvent, generation: int) -> None:
        """Queue *event* for the transition function (event-loop thread only)."""
        self._spawn(self.dispatch(event, generation))

    def _event_sink(self, generation: int) -> EventSink:
        return lambda event: self.post(event, generation)

    def _after_callback(self, generation: int) -> Callable[[Optional[Exception]], None]:
        """Build the player's ``after`` hook; it fires on the player thread."""
        loop = asyncio.get_running_loop()

        def after(error: Optional[Exception]) -> None:
            event: SessionEvent = PlayerError(error) if error else PlayerIdle()
            loop.call_soon_threadsafe(self.post, event, generation)

        return after

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.debug("Guild %d: %s → %s", self.guild_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    # ── Listener helpers (never let a failed reply break playback) ────

    async def _notify(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as exc:
            logger.warning("Guild %d: listener failed: %s", self.guild_id, exc)

    # ── Commands ──────────────────────────────────────────────────────

    def request_start(self) -> asyncio.Task:
        """Schedule ``start()`` without waiting for it."""
        self._start_pending = True
        return self._spawn(self.start())

    async def start(self) -> bool:
        """Begin playing the queue if the session is idle."""
        try:
            async with self._lock:
                self._start_pending = False
                if self.state is not SessionState.IDLE or not self.queue.pending:
                    return False
                await self._advance()
                return True
        finally:
            self._start_pending = False

    def pause(self) -> bool:
        if self.state is not SessionState.PLAYING or self.connection is None:
            return False
        self.connection.pause()
        self._set_state(SessionState.PAUSED)
        self.queue.playback_state = PlaybackState.PAUSED
        return True

    def resume(self) -> bool:
        if self.state is not SessionState.PAUSED or self.connection is None:
            return False
        self.connection.resume()
        self._set_state(SessionState.PLAYING)
        self.queue.playback_state = PlaybackState.PLAYING
        return True

    def skip(self) -> Optional[Track]:
        """Abandon the current track; returns it, or ``None`` if nothing to skip.

        The connection stays up for the next track.
        """
        if self.state is SessionState.ACQUIRING and self._acquire_task is not None:
            skipped = self.queue.current
            self._abort = _ABORT_SKIP
            self._acquire_task.cancel()
            return skipped

        if self.state not in (SessionState.PLAYING, SessionState.PAUSED):
            return None

        skipped = self.queue.current
        self._generation += 1
        self._release_stream()
        if self.connection is not None:
            self.connection.stop()
        self._set_state(SessionState.ACQUIRING)
        self._spawn(self._advance_if_current(self._generation))
        return skipped

    async def stop(self) -> bool:
        """Clear the queue and release everything. Returns True if anything was active."""
        was_active = self.state is not SessionState.IDLE
        self._abort = _ABORT_STOP
        if self._acquire_task is not None:
            self._acquire_task.cancel()
        async with self._lock:
            self._abort = None
            self._generation += 1
            self.queue.clear()
            await self._teardown()
            if self.queue.pending:
                # Queued while the connection was being torn down
                await self._advance()
        return was_active

    # ── Transition function ───────────────────────────────────────────

    async def dispatch(self, event: SessionEvent, generation: int) -> None:
        async with self._lock:
            if generation != self._generation:
                logger.debug(
                    "Guild %d: dropping stale %s (gen %d, now %d)",
                    self.guild_id, type(event).__name__, generation, self._generation,
                )
                return
            await self._handle(event)

    async def _handle(self, event: SessionEvent) -> None:
        if isinstance(event, ProcessExited):
            if event.returncode not in (0, None) and self.state in (
                SessionState.PLAYING, SessionState.PAUSED
            ):
                logger.warning(
                    "Guild %d: %s exited with code %s mid-stream",
                    self.guild_id, event.name, event.returncode,
                )
            else:
                logger.debug("Guild %d: %s exited (%s)", self.guild_id, event.name, event.returncode)
            return

        if self.state not in (SessionState.PLAYING, SessionState.PAUSED):
            return
        track = self.queue.current

        if isinstance(event, CriticalStderr):
            logger.error("Guild %d: %s reported: %s", self.guild_id, event.name, event.line)
            # The player's own after() for this generation becomes stale
            self._generation += 1
            self._release_stream()
            if self.connection is not None:
                self.connection.stop()
            if track is not None:
                await self._notify(self.listener.on_track_error(track, "The stream broke during playback."))
        elif isinstance(event, PlayerError):
            logger.error("Guild %d: player error: %s", self.guild_id, event.error)
            self._release_stream()
            if track is not None:
                await self._notify(self.listener.on_track_error(track, "An error occurred while playing."))
        else:
            self._release_stream()

        await self._advance()

    async def _advance_if_current(self, generation: int) -> None:
        async with self._lock:
            if generation != self._generation:
                return
            await self._advance()

    async def _advance(self) -> None:
        """Play the next playable track, or settle at IDLE. Caller holds the lock."""
        while True:
            if self._abort == _ABORT_STOP:
                return
            self._abort = None

            track = self.queue.dequeue_next()
            if track is None:
                await self._teardown()
                if self.queue.pending:
                    continue
                await self._notify(self.listener.on_queue_end())
                return

            self.queue.current = track
            self.queue.playback_state = PlaybackState.PLAYING

            if self.connection is None:
                self._set_state(SessionState.CONNECTING)
                try:
                    if self.connector is None:
                        raise MusicError("no voice channel bound to this session")
                    self.connection = await self.connector()
                except Exception as exc:
                    logger.error("Guild %d: voice connect failed: %s", self.guild_id, exc)
                    message = getattr(exc, "user_message", "Could not join the voice channel.")
                    self.queue.clear()
                    await self._teardown()
                    await self._notify(self.listener.on_track_error(track, message))
                    return
                if self._abort == _ABORT_STOP:
                    return

            self._set_state(SessionState.ACQUIRING)
            self._generation += 1
            generation = self._generation
            stream = await self._acquire(track, generation)
            if stream is None:
                if self._abort == _ABORT_STOP:
                    return
                continue
            if self._abort is not None:
                # Skip/stop arrived after the acquirer had already finished
                stream.release()
                if self._abort == _ABORT_STOP:
                    return
                continue

            try:
                if self.connection is None:
                    raise MusicError("voice connection lost before playback")
                self.connection.play(stream.source, after=self._after_callback(generation))
            except Exception as exc:
                logger.error("Guild %d: could not start player: %s", self.guild_id, exc, exc_info=True)
                stream.release()
                await self._drop_connection()
                await self._notify(self.listener.on_track_error(track, "Could not start playback."))
                continue

            self.stream = stream
            self._set_state(SessionState.PLAYING)
            logger.info(
                "Guild %d: now playing '%s' via %s", self.guild_id, track.title, stream.strategy
            )
            await self._notify(self.listener.on_track_start(track))
            return

    async def _acquire(self, track: Track, generation: int) -> Optional[AcquiredStream]:
        """Run the acquirer as a cancellable task; ``None`` if it failed or was aborted."""
        task = asyncio.ensure_future(
            self.acquirer.acquire(
                track, volume=self.queue.volume, on_event=self._event_sink(generation)
            )
        )
        self._acquire_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._acquire_task = None

        if task.cancelled():
            logger.info("Guild %d: acquisition of '%s' abandoned (%s)", self.guild_id, track.title, self._abort)
            return None
        exc = task.exception()
        if exc is None:
            return task.result()
        if isinstance(exc, AcquisitionError):
            logger.error("Guild %d: %s", self.guild_id, exc)
            message = exc.user_message
        else:
            logger.error("Guild %d: unexpected acquisition error: %s", self.guild_id, exc, exc_info=exc)
            message = AcquisitionError.default_user_message
        await self._notify(self.listener.on_track_error(track, message))
        return None

    # ── Resource release ──────────────────────────────────────────────

    def _release_stream(self) -> None:
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.release()
            if stream.processes:
                self._spawn(stream.reap())

    async def _drop_connection(self) -> None:
        connection, self.connection = self.connection, None
        if connection is None:
            return
        try:
            connection.stop()
            await connection.destroy()
        except Exception as exc:
            logger.warning("Guild %d: error destroying voice connection: %s", self.guild_id, exc)

    async def _teardown(self) -> None:
        """Release stream and connection; leaves the session IDLE."""
        self._release_stream()
        self.queue.current = None
        self.queue.playback_state = PlaybackState.IDLE
        await self._drop_connection()
        self._set_state(SessionState.IDLE)
