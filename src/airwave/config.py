"""Station settings resolved from the environment (and a project-level .env)."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env from project root (not current directory)
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path)


class Settings(BaseModel):
    port: int = Field(default=int(os.getenv("PORT", "8081")))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    ffmpeg_bin: str = Field(default=os.getenv("FFMPEG_BIN", "ffmpeg"))

    hls_dir: Path = Field(default=Path(os.getenv("HLS_DIR", "/tmp/hls-stream")))
    cache_dir: Path = Field(default=Path(os.getenv("CACHE_DIR", "/tmp/airwave-cache")))

    # raw PCM shared by both producers and the encoder input
    sample_rate: int = Field(default=int(os.getenv("SAMPLE_RATE", "48000")))
    channels: int = Field(default=int(os.getenv("CHANNELS", "2")))
    audio_bitrate: str = Field(default=os.getenv("AUDIO_BITRATE", "128k"))
    live_sample_format: str = Field(default=os.getenv("LIVE_SAMPLE_FORMAT", "f32le"))

    # 6s x 10 segments keeps a minute of audio in the manifest; 3 more stay on disk
    hls_time: int = Field(default=int(os.getenv("HLS_TIME", "6")))
    hls_list_size: int = Field(default=int(os.getenv("HLS_LIST_SIZE", "10")))
    hls_delete_threshold: int = Field(default=int(os.getenv("HLS_DELETE_THRESHOLD", "3")))

    grace_interval: float = Field(default=float(os.getenv("GRACE_INTERVAL", "0.5")))
    restart_delay: float = Field(default=float(os.getenv("RESTART_DELAY", "1.0")))
    fetch_backoff: float = Field(default=float(os.getenv("FETCH_BACKOFF", "5")))
    decoder_backoff: float = Field(default=float(os.getenv("DECODER_BACKOFF", "5")))
    encoder_backoff: float = Field(default=float(os.getenv("ENCODER_BACKOFF", "2")))
    fetch_timeout: float = Field(default=float(os.getenv("FETCH_TIMEOUT", "120")))

    chunk_ms: int = Field(default=int(os.getenv("CHUNK_MS", "100")))
    max_pipe_buffer: int = Field(default=int(os.getenv("MAX_PIPE_BUFFER", str(1024 * 1024))))

    autodj_playlist: Optional[str] = Field(default=os.getenv("AUTODJ_PLAYLIST"))
    autodj_tracks: str = Field(default=os.getenv("AUTODJ_TRACKS", ""))

    @property
    def chunk_bytes(self) -> int:
        """Bytes per decoder read: chunk_ms of f32le audio, whole frames only."""
        frames = self.sample_rate * self.chunk_ms // 1000
        return frames * self.channels * 4


@lru_cache()
def get_settings() -> Settings:
    return Settings()
