# src/airwave/playlist.py
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote, urlparse

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Track:
    title: str
    url: str


def _title_from_url(url: str) -> str:
    name = os.path.basename(unquote(urlparse(url).path)) or url
    return os.path.splitext(name)[0] or name


class Playlist:
    """Endless rotation over a fixed list of tracks."""

    def __init__(self, tracks: List[Track]):
        self.tracks = list(tracks)
        self._index = 0

    def __len__(self) -> int:
        return len(self.tracks)

    def current(self) -> Optional[Track]:
        if not self.tracks:
            return None
        return self.tracks[self._index]

    def advance(self) -> Optional[Track]:
        if not self.tracks:
            return None
        self._index = (self._index + 1) % len(self.tracks)
        return self.tracks[self._index]

    @classmethod
    def from_json(cls, path: Path) -> "Playlist":
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        tracks = []
        for entry in entries:
            url = entry["url"]
            tracks.append(Track(title=entry.get("title") or _title_from_url(url), url=url))
        return cls(tracks)

    @classmethod
    def from_urls(cls, raw: str) -> "Playlist":
        urls = [u.strip() for u in raw.split(",") if u.strip()]
        return cls([Track(title=_title_from_url(u), url=u) for u in urls])

    @classmethod
    def from_config(cls, playlist_file: Optional[str], tracks: str) -> "Playlist":
        """AUTODJ_PLAYLIST (JSON file) wins over AUTODJ_TRACKS (comma separated)."""
        if playlist_file:
            playlist = cls.from_json(Path(playlist_file))
        else:
            playlist = cls.from_urls(tracks or "")
        if not playlist:
            log.warning("[AUTO DJ] Playlist is empty, background audio disabled")
        else:
            log.info("[AUTO DJ] Loaded %d track(s)", len(playlist))
        return playlist
