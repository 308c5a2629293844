# src/airwave/encoder.py
import asyncio
import contextlib
import enum
import logging
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from airwave.audio import AudioChunk
from airwave.errors import SegmentNotFound, StreamNotReady
from airwave.segments import MANIFEST_NAME, SEGMENT_PATTERN, SegmentWindow, segment_number

log = logging.getLogger(__name__)


def _log_task_failure(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        log.error("[HLS] %s crashed", task.get_name(), exc_info=task.exception())


class StreamState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class SegmentEncoder:
    """
    Owns the single long-lived ffmpeg process that turns f32le PCM on stdin
    into an HLS manifest plus numbered .ts segments in hls_dir.
    """

    def __init__(
        self,
        hls_dir: Path,
        gate: Callable[[AudioChunk], bool],
        *,
        ffmpeg_bin: str = "ffmpeg",
        sample_rate: int = 48000,
        channels: int = 2,
        bitrate: str = "128k",
        hls_time: int = 6,
        list_size: int = 10,
        delete_threshold: int = 3,
        max_pipe_buffer: int = 1024 * 1024,
        restart_backoff: float = 2.0,
    ):
        self.hls_dir = Path(hls_dir)
        self.gate = gate
        self.ffmpeg_bin = ffmpeg_bin
        self.sample_rate = sample_rate
        self.channels = channels
        self.bitrate = bitrate
        self.hls_time = hls_time
        self.max_pipe_buffer = max_pipe_buffer
        self.restart_backoff = restart_backoff
        self.window = SegmentWindow(self.hls_dir, list_size=list_size, delete_threshold=delete_threshold)

        self._state = StreamState.STOPPED
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._congested = False
        self._pipe_broken = False
        self.newest_segment: Optional[int] = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state is StreamState.RUNNING

    def command(self) -> List[str]:
        return [
            self.ffmpeg_bin, "-hide_banner", "-nostats",
            "-f", "f32le",
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            "-i", "pipe:0",
            "-c:a", "aac",
            "-b:a", self.bitrate,
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            "-f", "hls",
            "-hls_time", str(self.hls_time),
            "-hls_list_size", str(self.window.list_size),
            # ffmpeg only honours hls_delete_threshold together with delete_segments
            "-hls_flags", "delete_segments+temp_file+omit_endlist",
            "-hls_delete_threshold", str(self.window.delete_threshold),
            "-hls_segment_filename", str(self.hls_dir / SEGMENT_PATTERN),
            "-start_number", "0",
            "-hls_allow_cache", "1",
            str(self.hls_dir / MANIFEST_NAME),
        ]

    async def start(self):
        if self._state is not StreamState.STOPPED:
            log.debug("[HLS] start() ignored, encoder is %s", self._state.value)
            return
        log.info("[HLS] Starting HLS encoder...")
        self._state = StreamState.STARTING
        try:
            await self._spawn()
        except Exception:
            self._state = StreamState.STOPPED
            log.exception("[HLS] Failed to start")
            raise
        self._state = StreamState.RUNNING
        self._watch_task = asyncio.create_task(self._watch())
        log.info("[HLS] Encoder started, waiting for audio input to create first segment")

    async def _spawn(self):
        # Clean old segments; numbering restarts at zero for every process
        shutil.rmtree(self.hls_dir, ignore_errors=True)
        self.hls_dir.mkdir(parents=True, exist_ok=True)
        self.newest_segment = None
        self._congested = False
        self._pipe_broken = False

        self._proc = await asyncio.create_subprocess_exec(
            *self.command(),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stderr_task = asyncio.create_task(self._read_stderr(self._proc), name="ffmpeg-stderr")
        self._stderr_task.add_done_callback(_log_task_failure)
        log.debug("[HLS] ffmpeg pid=%s -> %s", self._proc.pid, self.hls_dir)

    async def _read_stderr(self, proc):
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError as e:
                # overlong line; the reader already discarded it
                log.warning("[HLS] Skipping unreadable ffmpeg output: %s", e)
                continue
            if not line:
                return
            msg = line.decode("utf-8", errors="ignore").strip()
            if "Opening" in msg and ".ts" in msg:
                self._on_segment_opened(msg)
            elif "error" in msg.lower():
                log.error("[HLS] ffmpeg: %s", msg[:200])

    def _on_segment_opened(self, msg: str):
        # Opening '/tmp/hls-stream/segment-00012.ts.tmp' for writing
        path = msg.split("'")[1] if msg.count("'") >= 2 else ""
        n = segment_number(path.removesuffix(".tmp"))
        if n is None:
            return
        self.newest_segment = n
        log.debug("[HLS] Creating segment %d", n)
        # the segment just opened is still being written; its predecessor is the newest complete one
        self.window.reclaim(newest=n)

    async def _watch(self):
        """Respawn ffmpeg after an unexpected exit; the Mode is left alone."""
        while self._state is StreamState.RUNNING:
            proc = self._proc
            code = await proc.wait()
            if self._state is not StreamState.RUNNING or proc is not self._proc:
                return
            log.error("[HLS] ffmpeg exited unexpectedly (code %s), restarting in %.1fs", code, self.restart_backoff)
            self._state = StreamState.STARTING
            await self._release()
            while self._state is StreamState.STARTING:
                await asyncio.sleep(self.restart_backoff)
                try:
                    await self._spawn()
                except OSError:
                    log.exception("[HLS] Respawn failed, retrying")
                    continue
                self._state = StreamState.RUNNING
                log.info("[HLS] Encoder restarted, segment numbering reset to 0")

    def push_chunk(self, chunk: AudioChunk) -> bool:
        """Write an accepted chunk to ffmpeg; anything else is dropped silently."""
        if self._state is not StreamState.RUNNING or self._proc is None:
            return False
        if not self.gate(chunk):
            return False

        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            return False
        if stdin.transport.get_write_buffer_size() > self.max_pipe_buffer:
            if not self._congested:
                log.warning("[HLS] Encoder input backed up, dropping audio until it drains")
                self._congested = True
            return False
        if self._congested:
            log.info("[HLS] Encoder input drained, audio flowing again")
            self._congested = False

        try:
            stdin.write(chunk.data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            if not self._pipe_broken:
                log.error("[HLS] Error writing to ffmpeg: %s", e)
                self._pipe_broken = True
            return False
        return True

    def get_manifest(self) -> str:
        try:
            return self.window.manifest_path.read_text(encoding="utf-8")
        except (FileNotFoundError, NotADirectoryError) as e:
            raise StreamNotReady("manifest not written yet") from e

    def get_segment(self, number) -> bytes:
        try:
            n = int(number)
        except (TypeError, ValueError) as e:
            raise SegmentNotFound(f"invalid segment number: {number!r}") from e
        if n < 0:
            raise SegmentNotFound(f"invalid segment number: {number!r}")
        try:
            return self.window.segment_path(n).read_bytes()
        except OSError as e:
            raise SegmentNotFound(f"segment {n} not available") from e

    async def _release(self):
        proc, self._proc = self._proc, None
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        self._stderr_task = None
        if proc is None:
            return
        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def stop(self):
        if self._state is StreamState.STOPPED:
            return
        log.info("[HLS] Stopping...")
        self._state = StreamState.STOPPED
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
        self._watch_task = None
        await self._release()
        log.info("[HLS] Stopped")

    def snapshot(self) -> dict:
        on_disk = self.window.numbers_on_disk()
        return {
            "state": self._state.value,
            "pid": self._proc.pid if self._proc else None,
            "newest_segment": on_disk[-1] if on_disk else None,
            "oldest_segment": on_disk[0] if on_disk else None,
        }
