# src/airwave/station.py
import logging
from typing import Optional

from airwave.arbitrator import SourceArbitrator
from airwave.audio import AudioChunk, Source, to_encoder_pcm
from airwave.config import Settings
from airwave.encoder import SegmentEncoder
from airwave.fetch import TrackFetcher
from airwave.playback import PlaybackEngine
from airwave.playlist import Playlist

log = logging.getLogger(__name__)


class Station:
    """Wires encoder, Auto DJ and arbitrator together and owns their start/stop order."""

    def __init__(self, settings: Settings, playlist: Optional[Playlist] = None, fetcher: Optional[TrackFetcher] = None):
        self.settings = settings
        self.arbitrator = SourceArbitrator(grace_interval=settings.grace_interval)
        self.encoder = SegmentEncoder(
            settings.hls_dir,
            gate=self.arbitrator.accepts,
            ffmpeg_bin=settings.ffmpeg_bin,
            sample_rate=settings.sample_rate,
            channels=settings.channels,
            bitrate=settings.audio_bitrate,
            hls_time=settings.hls_time,
            list_size=settings.hls_list_size,
            delete_threshold=settings.hls_delete_threshold,
            max_pipe_buffer=settings.max_pipe_buffer,
            restart_backoff=settings.encoder_backoff,
        )
        if playlist is None:
            playlist = Playlist.from_config(settings.autodj_playlist, settings.autodj_tracks)
        self.playback = PlaybackEngine(
            playlist,
            fetcher or TrackFetcher(settings.cache_dir, timeout=settings.fetch_timeout),
            sink=self.encoder.push_chunk,
            restart_allowed=self.arbitrator.autodj_active,
            ffmpeg_bin=settings.ffmpeg_bin,
            sample_rate=settings.sample_rate,
            channels=settings.channels,
            chunk_bytes=settings.chunk_bytes,
            restart_delay=settings.restart_delay,
            fetch_backoff=settings.fetch_backoff,
            error_backoff=settings.decoder_backoff,
        )
        self.arbitrator.bind(self.playback)

    @property
    def mode(self) -> Source:
        return self.arbitrator.mode

    async def start(self):
        await self.encoder.start()
        if self.arbitrator.autodj_active():
            await self.playback.start()

    async def stop(self):
        await self.playback.stop()
        await self.encoder.stop()

    async def go_live(self):
        log.info("[LIVE] Live show starting - pausing Auto DJ...")
        await self.arbitrator.enter_live()

    async def go_autodj(self):
        log.info("[LIVE] Live show ended - resuming Auto DJ...")
        await self.arbitrator.enter_autodj()

    def push_live(self, payload: bytes) -> bool:
        pcm = to_encoder_pcm(payload, self.settings.live_sample_format, self.settings.channels)
        if not pcm:
            return False
        return self.encoder.push_chunk(AudioChunk(pcm, Source.LIVE))

    def snapshot(self) -> dict:
        return {
            "mode": self.mode.value,
            "encoder": self.encoder.snapshot(),
            "autodj": self.playback.snapshot(),
        }
