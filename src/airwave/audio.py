# src/airwave/audio.py
import enum
from dataclasses import dataclass

import numpy as np


class Source(str, enum.Enum):
    """Which producer a chunk came from; doubles as the station Mode."""

    AUTODJ = "autodj"
    LIVE = "live"


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    source: Source

    def __len__(self) -> int:
        return len(self.data)


def to_encoder_pcm(payload: bytes, sample_format: str = "f32le", channels: int = 2) -> bytes:
    """
    Normalize a live payload to interleaved f32le, the encoder's input format.
    Trailing bytes that do not make up a whole frame are dropped so a short
    websocket frame can never shift the channel alignment of the pipe.
    """
    if sample_format == "f32le":
        frame = 4 * channels
        usable = len(payload) - (len(payload) % frame)
        return bytes(payload[:usable])

    if sample_format == "s16le":
        frame = 2 * channels
        usable = len(payload) - (len(payload) % frame)
        i16 = np.frombuffer(payload[:usable], dtype="<i2")
        return (i16.astype(np.float32) / 32768.0).astype("<f4").tobytes()

    raise ValueError(f"unsupported live sample format: {sample_format!r}")
