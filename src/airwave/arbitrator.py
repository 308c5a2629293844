# src/airwave/arbitrator.py
import asyncio
import logging
from typing import Optional

from airwave.audio import AudioChunk, Source
from airwave.playback import PlaybackEngine

log = logging.getLogger(__name__)


class SourceArbitrator:
    """
    Single owner of the station Mode.

    The Mode is flipped only by enter_live()/enter_autodj(), and those order
    the handoff so that at most one producer is emitting at a time: going
    live stops Auto DJ before the flip; leaving live flips before Auto DJ
    resumes. Each switch waits grace_interval so audio already in flight
    drains instead of being cut off mid-buffer.

    _target is the most recently requested source. A switch whose grace
    interval ends after a newer request was made does not complete.
    """

    def __init__(self, grace_interval: float = 0.5, playback: Optional[PlaybackEngine] = None):
        self.grace_interval = grace_interval
        self.playback = playback
        self._mode = Source.AUTODJ
        self._target = Source.AUTODJ

    def bind(self, playback: PlaybackEngine):
        self.playback = playback

    @property
    def mode(self) -> Source:
        return self._mode

    def autodj_active(self) -> bool:
        return self._mode is Source.AUTODJ and self._target is Source.AUTODJ

    def accepts(self, chunk: AudioChunk) -> bool:
        return chunk.source == self._mode

    async def enter_live(self):
        self._target = Source.LIVE
        if self.playback is not None:
            await self.playback.pause()
        await asyncio.sleep(self.grace_interval)
        if self._target is not Source.LIVE:
            return
        if self._mode is not Source.LIVE:
            self._mode = Source.LIVE
            log.info("[LIVE] Audio source: LIVE SHOW")

    async def enter_autodj(self):
        self._target = Source.AUTODJ
        if self._mode is not Source.AUTODJ:
            self._mode = Source.AUTODJ
            log.info("[LIVE] Audio source: AUTO DJ")
        await asyncio.sleep(self.grace_interval)
        if self._target is not Source.AUTODJ:
            return
        if self.playback is not None and not self.playback.is_playing:
            await self.playback.start()
