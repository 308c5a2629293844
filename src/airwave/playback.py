"""
Auto DJ playback engine.

Plays the current playlist entry through a bounded-lifetime ffmpeg decoder
that emits f32le PCM at real-time pace. The engine is a small state machine:

    idle -> fetching -> playing -> (paused | idle)
    paused -> playing          (resume from the recorded offset)

Decoder exits are fed back through on_exit(); a natural end of track deletes
the cached file, advances the playlist and schedules a restart, while a kill
caused by pause() is ignored.
"""
import asyncio
import contextlib
import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from airwave.audio import AudioChunk, Source
from airwave.errors import FetchError
from airwave.fetch import TrackFetcher
from airwave.playlist import Playlist, Track

log = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 30.0


def _log_task_failure(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        log.error("[AUTO DJ] %s crashed", task.get_name(), exc_info=task.exception())


class PlaybackState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class PlaybackSession:
    track: Track
    path: Optional[Path] = None
    offset: float = 0.0
    # clock() - started_at == current offset while the decoder runs
    started_at: float = 0.0


class PlaybackEngine:
    def __init__(
        self,
        playlist: Playlist,
        fetcher: TrackFetcher,
        sink: Callable[[AudioChunk], bool],
        *,
        restart_allowed: Callable[[], bool] = lambda: True,
        ffmpeg_bin: str = "ffmpeg",
        sample_rate: int = 48000,
        channels: int = 2,
        chunk_bytes: int = 38400,
        restart_delay: float = 1.0,
        fetch_backoff: float = 5.0,
        error_backoff: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.playlist = playlist
        self.fetcher = fetcher
        self.sink = sink
        self.restart_allowed = restart_allowed
        self.ffmpeg_bin = ffmpeg_bin
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_bytes = chunk_bytes
        self.restart_delay = restart_delay
        self.fetch_backoff = fetch_backoff
        self.error_backoff = error_backoff
        self.clock = clock

        self._state = PlaybackState.IDLE
        self.session: Optional[PlaybackSession] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._pause_requested = False
        self._spawning = False

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state is PlaybackState.PLAYING

    def _process_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def decoder_command(self, path: Path, offset: float) -> List[str]:
        return [
            self.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
            # input seeking: ffmpeg starts decoding at the offset instead of fast-forwarding to it
            "-ss", f"{offset:.3f}",
            "-re",
            "-i", str(path),
            "-vn",
            "-f", "f32le",
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            "pipe:1",
        ]

    async def start(self):
        if self._state is PlaybackState.FETCHING or self._spawning:
            # the launch in flight will run the decoder; this start() overrides a pause made meanwhile
            self._pause_requested = False
            log.debug("[AUTO DJ] start() ignored, decoder launch already in progress")
            return
        if self._state is PlaybackState.PLAYING:
            log.debug("[AUTO DJ] start() ignored, already playing")
            return
        if self._process_alive():
            log.debug("[AUTO DJ] start() ignored, previous decoder pid=%s has not exited", self._proc.pid)
            return

        self._pause_requested = False
        # detach any pending restart (possibly the caller) so pause() cannot cancel a fetch midway
        self._cancel_restart()

        if self.session is None or self.session.path is None:
            track = self.session.track if self.session else self.playlist.current()
            if track is None:
                log.warning("[AUTO DJ] Nothing to play, playlist is empty")
                return
            session = PlaybackSession(track=track)
            self.session = session
            self._state = PlaybackState.FETCHING
            log.info("[AUTO DJ] Fetching: %s", track.title)
            try:
                path = await self.fetcher.fetch(track)
            except FetchError as e:
                if self.session is session:
                    log.error("[AUTO DJ] Fetch failed: %s (retrying in %.1fs)", e, self.fetch_backoff)
                    self._state = PlaybackState.IDLE
                    self._schedule_restart(self.fetch_backoff)
                return
            if self.session is not session:
                # stopped while downloading
                path.unlink(missing_ok=True)
                return
            session.path = path
            session.offset = 0.0
            if self._pause_requested:
                log.info("[AUTO DJ] Paused while fetching, holding %s", track.title)
                self._state = PlaybackState.PAUSED
                return

        await self._launch(self.session)

    async def _launch(self, session: PlaybackSession):
        cmd = self.decoder_command(session.path, session.offset)
        self._spawning = True
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.error("[AUTO DJ] Could not launch decoder: %s (retrying in %.1fs)", e, self.error_backoff)
            self._state = PlaybackState.IDLE
            self._schedule_restart(self.error_backoff)
            return
        finally:
            self._spawning = False

        self._proc = proc
        if self._pause_requested:
            # pause() ran while the decoder was spawning and had nothing to kill yet
            log.info("[AUTO DJ] Paused while launching, holding %s at %.1fs", session.track.title, session.offset)
            if self.session is session:
                self._state = PlaybackState.PAUSED
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            if self._proc is proc:
                self._proc = None
            return

        session.started_at = self.clock() - session.offset
        self._state = PlaybackState.PLAYING
        log.info("[AUTO DJ] Playing: %s from %.1fs (pid=%s)", session.track.title, session.offset, proc.pid)
        self._reader = asyncio.create_task(self._pump(proc), name="autodj-decoder-reader")
        self._reader.add_done_callback(_log_task_failure)

    async def _pump(self, proc):
        chunks = 0
        last_log = self.clock()
        frame = 4 * self.channels
        eof = False
        while not eof:
            try:
                data = await proc.stdout.readexactly(self.chunk_bytes)
            except asyncio.IncompleteReadError as e:
                # only whole frames reach the encoder, or every later sample would be misaligned
                data = e.partial[: len(e.partial) - len(e.partial) % frame]
                eof = True
            if not data or proc is not self._proc or self._state is not PlaybackState.PLAYING:
                # killed by pause(); whatever is still buffered goes nowhere
                continue
            chunks += 1
            self.sink(AudioChunk(data, Source.AUTODJ))
            now = self.clock()
            if now - last_log > PROGRESS_LOG_INTERVAL:
                log.info("[AUTO DJ] Playing... (%d chunks, offset %.0fs)", chunks, self.offset)
                last_log = now
        status = await proc.wait()
        self.on_exit(proc, status)

    def on_exit(self, proc, status: int):
        if proc is not self._proc:
            return
        self._proc = None
        if self._state is not PlaybackState.PLAYING:
            log.debug("[AUTO DJ] Decoder pid=%s exited with %s after pause", getattr(proc, "pid", None), status)
            return

        session = self.session
        if status == 0:
            log.info("[AUTO DJ] Track finished: %s", session.track.title)
            if session.path is not None:
                session.path.unlink(missing_ok=True)
            self.session = None
            self.playlist.advance()
            self._state = PlaybackState.IDLE
            self._schedule_restart(self.restart_delay)
        else:
            log.error(
                "[AUTO DJ] Decoder exited abnormally with code %s on %s, retrying from 0 in %.1fs",
                status, session.track.title, self.error_backoff,
            )
            session.offset = 0.0
            self._state = PlaybackState.IDLE
            self._schedule_restart(self.error_backoff)

    def _schedule_restart(self, delay: float):
        self._cancel_restart()
        self._restart_task = asyncio.create_task(self._restart_later(delay))

    def _cancel_restart(self):
        task, self._restart_task = self._restart_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _restart_later(self, delay: float):
        await asyncio.sleep(delay)
        if self._pause_requested:
            log.info("[AUTO DJ] Restart suppressed, pause requested")
            return
        if not self.restart_allowed():
            log.info("[AUTO DJ] Restart suppressed, live source is active")
            return
        await self.start()

    @property
    def offset(self) -> float:
        if self.session is None:
            return 0.0
        if self._state is PlaybackState.PLAYING:
            return self.clock() - self.session.started_at
        return self.session.offset

    async def pause(self):
        self._pause_requested = True
        self._cancel_restart()
        session = self.session
        if self._state is PlaybackState.PLAYING and session is not None:
            session.offset = self.clock() - session.started_at
            self._state = PlaybackState.PAUSED
            log.info("[AUTO DJ] Paused %s at %.1fs", session.track.title, session.offset)
        elif self._state is PlaybackState.IDLE and session is not None and session.path is not None:
            self._state = PlaybackState.PAUSED

        proc = self._proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        if self._proc is proc:
            self._proc = None

    async def stop(self):
        """Shutdown: kill the decoder and drop the session, cached file included."""
        log.info("[AUTO DJ] Stopping...")
        await self.pause()
        if self._reader and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._reader = None
        if self.session is not None and self.session.path is not None:
            self.session.path.unlink(missing_ok=True)
        self.session = None
        self._state = PlaybackState.IDLE
        log.info("[AUTO DJ] Stopped")

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "track": self.session.track.title if self.session else None,
            "offset": round(self.offset, 3),
            "pid": self._proc.pid if self._proc else None,
        }
