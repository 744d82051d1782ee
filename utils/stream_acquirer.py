"""
Stream acquisition — turn a Track into something the voice client can play.

Strategies (tried in configured order, first success wins):

    direct    — yt-dlp library resolves a direct audio URL, ffmpeg reads it
    pipeline  — ``yt-dlp -o -`` piped into ``ffmpeg`` emitting raw PCM
    download  — ``yt-dlp`` downloads to a temp file (MP3, then WebM)

Every strategy produces 16-bit signed little-endian PCM at 48 kHz stereo,
which is what discord.py's voice client encodes to Opus.  Anything else
is audible garbage.

System requirement:
    ``yt-dlp`` and ``ffmpeg`` must be on PATH (or configured explicitly).
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import time
import uuid
from typing import (
    IO,
    TYPE_CHECKING,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
)

import aiohttp
import discord
import yt_dlp

from config.constants import (
    CRITICAL_STDERR_MARKERS,
    DOWNLOAD_HTTP_CHUNK,
    FFMPEG_BEFORE_OPTIONS,
    FFMPEG_OPTIONS,
    PCM_CHANNELS,
    PCM_FORMAT,
    PCM_SAMPLE_RATE,
    PIPELINE_STARTUP_WINDOW,
    PROCESS_REAP_TIMEOUT,
    STRATEGY_DIRECT,
    STRATEGY_DOWNLOAD,
    STRATEGY_PIPELINE,
    URL_PROBE_TIMEOUT,
)
from utils.errors import AcquisitionError, MusicError
from utils.events import (
    CriticalStderr,
    EventSink,
    ProcessExited,
    discard_event,
)
from utils.track import Track
from utils.ytdlp_provider import AUDIO_OPTIONS, extract_info, pick_audio_url

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

UrlLocator = Callable[[Track], Awaitable[str]]


def is_critical_line(line: str) -> bool:
    """Return True if an ffmpeg stderr line means the stream is unusable."""
    lowered = line.lower()
    return any(marker in lowered for marker in CRITICAL_STDERR_MARKERS)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


# =====================================================================
#  Acquired stream (the resources one playback owns)
# =====================================================================

class AcquiredStream:
    """A playable audio source plus every OS resource behind it.

    ``release()`` is idempotent and must be called on every exit path.
    """

    def __init__(
        self,
        source: discord.AudioSource,
        strategy: str,
        *,
        processes: Sequence[asyncio.subprocess.Process] = (),
        temp_path: Optional[str] = None,
        handles: Sequence[IO[bytes]] = (),
    ) -> None:
        self.source = source
        self.strategy = strategy
        self.processes: List[asyncio.subprocess.Process] = list(processes)
        self.temp_path = temp_path
        self._handles: List[IO[bytes]] = list(handles)
        self._tasks: List[asyncio.Task] = []
        self.released = False

    @property
    def live_processes(self) -> List[asyncio.subprocess.Process]:
        return [p for p in self.processes if p.returncode is None]

    def add_task(self, task: asyncio.Task) -> None:
        self._tasks.append(task)

    def kill_processes(self) -> None:
        for task in self._tasks:
            task.cancel()
        for proc in self.processes:
            _kill(proc)

    async def reap(self, timeout: float = PROCESS_REAP_TIMEOUT) -> None:
        """Wait (bounded) for killed subprocesses to exit."""
        if not self.processes:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(p.wait() for p in self.processes)), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%d %s subprocess(es) still alive after %ss",
                len(self.live_processes), self.strategy, timeout,
            )

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.kill_processes()
        try:
            self.source.cleanup()
        except Exception as exc:
            logger.debug("Audio source cleanup failed: %s", exc)
        for handle in self._handles:
            try:
                handle.close()
            except OSError:
                pass
        if self.temp_path:
            try:
                os.unlink(self.temp_path)
                logger.info("Deleted temp file %s", self.temp_path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete temp file %s: %s", self.temp_path, exc)


# =====================================================================
#  Strategies
# =====================================================================

class AcquisitionStrategy:
    """Uniform contract: return an ``AcquiredStream`` or raise ``AcquisitionError``."""

    name = "base"

    async def attempt(
        self,
        url: str,
        track: Track,
        *,
        volume: float,
        on_event: EventSink,
    ) -> AcquiredStream:
        raise NotImplementedError


class DirectExtraction(AcquisitionStrategy):
    """Ask yt-dlp for the best audio-only URL and let ffmpeg stream it."""

    name = STRATEGY_DIRECT

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        ffmpeg_path: str = "ffmpeg",
        probe_timeout: float = URL_PROBE_TIMEOUT,
    ) -> None:
        self._session = session
        self.ffmpeg_path = ffmpeg_path
        self.probe_timeout = probe_timeout

    async def _probe(self, media_url: str) -> None:
        """Fetch the first byte of *media_url* to catch expired/forbidden URLs."""
        if self._session is None or self._session.closed:
            return
        try:
            async with self._session.get(
                media_url,
                headers={"Range": "bytes=0-0"},
                timeout=aiohttp.ClientTimeout(total=self.probe_timeout),
            ) as resp:
                if resp.status >= 400:
                    raise AcquisitionError(f"media URL probe returned HTTP {resp.status}")
        except asyncio.TimeoutError as exc:
            raise AcquisitionError("media URL probe timed out") from exc
        except aiohttp.ClientError as exc:
            raise AcquisitionError(f"media URL probe failed: {exc}") from exc

    async def attempt(self, url, track, *, volume, on_event):
        try:
            info = await extract_info(url, AUDIO_OPTIONS)
        except yt_dlp.utils.DownloadError as exc:
            raise AcquisitionError(f"yt-dlp extraction failed: {exc}") from exc

        media_url = pick_audio_url(info)
        if not media_url:
            raise AcquisitionError("no audio-only format available")
        await self._probe(media_url)

        source = discord.FFmpegPCMAudio(
            media_url,
            executable=self.ffmpeg_path,
            before_options=FFMPEG_BEFORE_OPTIONS,
            options=FFMPEG_OPTIONS,
        )
        return AcquiredStream(
            discord.PCMVolumeTransformer(source, volume=volume), self.name
        )


class PipelineStreaming(AcquisitionStrategy):
    """``yt-dlp`` → ``ffmpeg`` → raw PCM pipe, supervised for a startup window."""

    name = STRATEGY_PIPELINE

    def __init__(
        self,
        *,
        ytdlp_path: str = "yt-dlp",
        ffmpeg_path: str = "ffmpeg",
        startup_window: float = PIPELINE_STARTUP_WINDOW,
    ) -> None:
        self.ytdlp_path = ytdlp_path
        self.ffmpeg_path = ffmpeg_path
        self.startup_window = startup_window

    def downloader_args(self, url: str) -> List[str]:
        return [
            self.ytdlp_path,
            "-f", "bestaudio/best",
            "--no-playlist",
            "--quiet",
            "--no-warnings",
            "--retries", "infinite",
            "--fragment-retries", "infinite",
            "--http-chunk-size", DOWNLOAD_HTTP_CHUNK,
            "--force-ipv4",
            "-o", "-",
            url,
        ]

    def transcoder_args(self) -> List[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-f", PCM_FORMAT,
            "-ar", str(PCM_SAMPLE_RATE),
            "-ac", str(PCM_CHANNELS),
            "pipe:1",
        ]

    async def _scan_startup(self, transcoder: asyncio.subprocess.Process) -> Optional[str]:
        """Read ffmpeg stderr until a critical line or EOF."""
        stderr = transcoder.stderr
        if stderr is None:
            return "ffmpeg stderr is not piped"
        while True:
            raw = await stderr.readline()
            if not raw:
                returncode = await transcoder.wait()
                if returncode != 0:
                    return f"ffmpeg exited with code {returncode}"
                return None
            line = raw.decode(errors="replace").strip()
            if line and is_critical_line(line):
                return f"ffmpeg: {line}"
            if line:
                logger.debug("ffmpeg (startup): %s", line)

    async def _watch_startup(
        self,
        downloader: asyncio.subprocess.Process,
        transcoder: asyncio.subprocess.Process,
    ) -> Optional[str]:
        """Return a failure reason, or ``None`` if the pipeline looks healthy."""
        try:
            reason = await asyncio.wait_for(
                self._scan_startup(transcoder), timeout=self.startup_window
            )
        except asyncio.TimeoutError:
            reason = None
        if reason:
            return reason
        if downloader.returncode not in (None, 0):
            return f"yt-dlp exited with code {downloader.returncode}"
        return None

    @staticmethod
    async def _pump_stderr(
        transcoder: asyncio.subprocess.Process, on_event: EventSink
    ) -> None:
        stderr = transcoder.stderr
        if stderr is None:
            return
        while True:
            raw = await stderr.readline()
            if not raw:
                return
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            if is_critical_line(line):
                on_event(CriticalStderr("ffmpeg", line))
            else:
                logger.debug("ffmpeg: %s", line)

    @staticmethod
    async def _report_exit(
        name: str, proc: asyncio.subprocess.Process, on_event: EventSink
    ) -> None:
        returncode = await proc.wait()
        on_event(ProcessExited(name, returncode))

    async def attempt(self, url, track, *, volume, on_event):
        media_read, media_write = os.pipe()
        pcm_read, pcm_write = os.pipe()
        processes: List[asyncio.subprocess.Process] = []
        try:
            downloader = await asyncio.create_subprocess_exec(
                *self.downloader_args(url),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=media_write,
                stderr=asyncio.subprocess.DEVNULL,
            )
            processes.append(downloader)
            transcoder = await asyncio.create_subprocess_exec(
                *self.transcoder_args(),
                stdin=media_read,
                stdout=pcm_write,
                stderr=asyncio.subprocess.PIPE,
            )
            processes.append(transcoder)
        except OSError as exc:
            for proc in processes:
                _kill(proc)
            _close_fd(pcm_read)
            raise AcquisitionError(f"could not spawn pipeline: {exc}") from exc
        finally:
            # The children hold their own copies now
            for fd in (media_read, media_write, pcm_write):
                _close_fd(fd)

        try:
            reason = await self._watch_startup(downloader, transcoder)
        except BaseException:
            for proc in processes:
                _kill(proc)
            _close_fd(pcm_read)
            raise
        if reason:
            for proc in processes:
                _kill(proc)
            _close_fd(pcm_read)
            raise AcquisitionError(f"pipeline startup failed: {reason}")

        pcm_stream = os.fdopen(pcm_read, "rb")
        source = discord.PCMVolumeTransformer(discord.PCMAudio(pcm_stream), volume=volume)
        stream = AcquiredStream(
            source, self.name, processes=processes, handles=[pcm_stream]
        )
        stream.add_task(asyncio.create_task(self._pump_stderr(transcoder, on_event)))
        stream.add_task(asyncio.create_task(self._report_exit("yt-dlp", downloader, on_event)))
        stream.add_task(asyncio.create_task(self._report_exit("ffmpeg", transcoder, on_event)))
        logger.debug(
            "Pipeline running for %s (yt-dlp pid=%s, ffmpeg pid=%s)",
            track.title, downloader.pid, transcoder.pid,
        )
        return stream


class DownloadThenPlay(AcquisitionStrategy):
    """Download the whole track first, then play the local file."""

    name = STRATEGY_DOWNLOAD

    def __init__(
        self,
        downloads_dir: str,
        *,
        ytdlp_path: str = "yt-dlp",
        ffmpeg_path: str = "ffmpeg",
        timeout: float = 300,
    ) -> None:
        self.downloads_dir = downloads_dir
        self.ytdlp_path = ytdlp_path
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    @staticmethod
    def _new_stem() -> str:
        return f"song_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def mp3_args(self, url: str, stem: str) -> List[str]:
        return [
            self.ytdlp_path,
            "--extract-audio",
            "--audio-format", "mp3",
            "--audio-quality", "0",
            "--no-playlist",
            "--no-warnings",
            "--quiet",
            "--ffmpeg-location", self.ffmpeg_path,
            "-o", os.path.join(self.downloads_dir, f"{stem}.%(ext)s"),
            url,
        ]

    def webm_args(self, url: str, stem: str) -> List[str]:
        return [
            self.ytdlp_path,
            "-f", "bestaudio[ext=webm]/bestaudio",
            "--no-playlist",
            "--no-warnings",
            "--quiet",
            "-o", os.path.join(self.downloads_dir, f"{stem}.webm"),
            url,
        ]

    async def _run_downloader(self, args: List[str]) -> Optional[int]:
        """Run yt-dlp to completion; ``None`` means it timed out and was killed."""
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            _kill(proc)
            logger.warning("yt-dlp download timed out after %ss", self.timeout)
            return None
        except asyncio.CancelledError:
            _kill(proc)
            raise
        if proc.returncode != 0:
            logger.warning(
                "yt-dlp download failed (rc=%s): %s",
                proc.returncode, (stderr or b"").decode(errors="replace")[:500],
            )
        return proc.returncode

    def _remove_leftovers(self, stem: str) -> None:
        for path in glob.glob(os.path.join(self.downloads_dir, f"{stem}*")):
            try:
                os.unlink(path)
            except OSError:
                pass

    @staticmethod
    def _usable(path: str) -> bool:
        return os.path.isfile(path) and os.path.getsize(path) > 0

    async def download(self, url: str) -> str:
        """Download *url* and return the local path of a non-empty audio file."""
        os.makedirs(self.downloads_dir, exist_ok=True)
        stem = self._new_stem()
        attempts = (
            ("mp3", self.mp3_args(url, stem)),
            ("webm", self.webm_args(url, stem)),
        )
        try:
            for ext, args in attempts:
                path = os.path.join(self.downloads_dir, f"{stem}.{ext}")
                try:
                    await self._run_downloader(args)
                except OSError as exc:
                    raise AcquisitionError(f"could not run yt-dlp: {exc}") from exc
                if self._usable(path):
                    size_mb = os.path.getsize(path) / 1024 / 1024
                    logger.info("Downloaded %s (%.2f MB, %s)", url, size_mb, ext)
                    return path
                logger.info("%s download produced no file for %s", ext.upper(), url)
        except BaseException:
            self._remove_leftovers(stem)
            raise
        self._remove_leftovers(stem)
        raise AcquisitionError("download produced no usable file")

    async def attempt(self, url, track, *, volume, on_event):
        path = await self.download(url)
        try:
            source = discord.FFmpegPCMAudio(
                path, executable=self.ffmpeg_path, options=FFMPEG_OPTIONS
            )
        except (discord.ClientException, OSError) as exc:
            self._remove_leftovers(os.path.splitext(os.path.basename(path))[0])
            raise AcquisitionError(f"could not open downloaded file: {exc}") from exc
        return AcquiredStream(
            discord.PCMVolumeTransformer(source, volume=volume),
            self.name,
            temp_path=path,
        )


# =====================================================================
#  Supervisor
# =====================================================================

class StreamAcquirer:
    """Try each strategy in order; the first stream produced wins."""

    def __init__(
        self,
        strategies: Sequence[AcquisitionStrategy],
        *,
        locator: Optional[UrlLocator] = None,
    ) -> None:
        if not strategies:
            raise ValueError("at least one acquisition strategy is required")
        self.strategies = list(strategies)
        self._locator = locator

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        session: Optional[aiohttp.ClientSession] = None,
        locator: Optional[UrlLocator] = None,
    ) -> "StreamAcquirer":
        builders = {
            STRATEGY_DIRECT: lambda: DirectExtraction(
                session, ffmpeg_path=settings.ffmpeg_path
            ),
            STRATEGY_PIPELINE: lambda: PipelineStreaming(
                ytdlp_path=settings.ytdlp_path, ffmpeg_path=settings.ffmpeg_path
            ),
            STRATEGY_DOWNLOAD: lambda: DownloadThenPlay(
                settings.downloads_dir,
                ytdlp_path=settings.ytdlp_path,
                ffmpeg_path=settings.ffmpeg_path,
                timeout=settings.download_timeout,
            ),
        }
        strategies = [builders[name]() for name in settings.acquisition_strategies]
        return cls(strategies, locator=locator)

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self.strategies]

    async def _playable_url(self, track: Track) -> str:
        if track.needs_youtube_lookup and self._locator is not None:
            try:
                return await self._locator(track)
            except MusicError as exc:
                raise AcquisitionError(
                    f"could not locate audio for {track.title}: {exc}"
                ) from exc
        return track.url

    async def acquire(
        self,
        track: Track,
        *,
        volume: float,
        on_event: Optional[EventSink] = None,
    ) -> AcquiredStream:
        url = await self._playable_url(track)
        sink = on_event or discard_event
        failures = []
        for strategy in self.strategies:
            try:
                stream = await strategy.attempt(url, track, volume=volume, on_event=sink)
            except AcquisitionError as exc:
                logger.warning("Strategy %s failed for %s: %s", strategy.name, track.title, exc)
                failures.append((strategy.name, str(exc)))
                continue
            except Exception as exc:
                logger.warning(
                    "Strategy %s crashed for %s: %s",
                    strategy.name, track.title, exc, exc_info=True,
                )
                failures.append((strategy.name, str(exc)))
                continue
            logger.info("Acquired '%s' via %s", track.title, strategy.name)
            return stream

        summary = "; ".join(f"{name}: {reason}" for name, reason in failures)
        raise AcquisitionError(
            f"all strategies failed for {track.title} ({summary})", failures=failures
        )
