# src/airwave/fetch.py
import asyncio
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from airwave.errors import FetchError
from airwave.playlist import Track

log = logging.getLogger(__name__)


class TrackFetcher:
    """
    Resolves a Track to a private local copy under cache_dir.
    The copy belongs to the playback session and is deleted by it, so local
    sources are copied rather than referenced in place.
    """

    def __init__(self, cache_dir: Path, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self._transport = transport

    def _target(self, track: Track) -> Path:
        name = os.path.basename(unquote(urlparse(track.url).path)) or "track"
        return self.cache_dir / f"autodj-{int(time.time() * 1000)}-{name}"

    async def fetch(self, track: Track) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        target = self._target(track)
        scheme = urlparse(track.url).scheme

        try:
            if scheme in ("http", "https"):
                await self._download(track.url, target)
            else:
                src = Path(unquote(urlparse(track.url).path)) if scheme == "file" else Path(track.url)
                if not src.is_file():
                    raise FetchError(f"source file not found: {src}")
                await asyncio.to_thread(shutil.copyfile, src, target)
        except FetchError:
            target.unlink(missing_ok=True)
            raise
        except (httpx.HTTPError, OSError) as e:
            target.unlink(missing_ok=True)
            raise FetchError(f"failed to fetch {track.url}: {e}") from e

        log.info("[AUTO DJ] Cached %s (%.1f MB)", track.title, target.stat().st_size / 1024 / 1024)
        return target

    async def _download(self, url: str, target: Path):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise FetchError(f"GET {url} returned {resp.status_code}")
                with target.open("wb") as fh:
                    async for block in resp.aiter_bytes():
                        fh.write(block)
