# src/airwave/segments.py
import contextlib
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Tuple

log = logging.getLogger(__name__)

MANIFEST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment-%05d.ts"
_SEGMENT_RE = re.compile(r"^segment-(\d+)\.ts$")


def segment_name(number: int) -> str:
    return SEGMENT_PATTERN % number


def segment_number(filename: str) -> Optional[int]:
    m = _SEGMENT_RE.match(os.path.basename(filename))
    return int(m.group(1)) if m else None


@dataclass
class ManifestInfo:
    media_sequence: int = 0
    target_duration: int = 0
    # (duration, filename) in playback order
    entries: List[Tuple[float, str]] = field(default_factory=list)

    @property
    def numbers(self) -> List[int]:
        out = []
        for _, name in self.entries:
            n = segment_number(name)
            if n is not None:
                out.append(n)
        return out


def parse_manifest(text: str) -> ManifestInfo:
    info = ManifestInfo()
    dur = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
            with contextlib.suppress(ValueError):
                info.media_sequence = int(line.split(":", 1)[1])
        elif line.startswith("#EXT-X-TARGETDURATION:"):
            with contextlib.suppress(ValueError):
                info.target_duration = int(line.split(":", 1)[1])
        elif line.startswith("#EXTINF:"):
            try:
                dur = float(line.split(":", 1)[1].split(",", 1)[0])
            except ValueError:
                dur = None
        elif line and not line.startswith("#"):
            if dur is not None:
                info.entries.append((dur, os.path.basename(line.split("?", 1)[0])))
            dur = None
    return info


class SegmentWindow:
    """
    View over the encoder's output directory.

    ffmpeg owns the files; this class reads them and, as a backstop for
    hls_delete_threshold, reclaims segments that fell further behind the
    newest one than list_size + delete_threshold.
    """

    def __init__(self, hls_dir: Path, list_size: int = 10, delete_threshold: int = 3):
        self.hls_dir = Path(hls_dir)
        self.list_size = list_size
        self.delete_threshold = delete_threshold

    @property
    def manifest_path(self) -> Path:
        return self.hls_dir / MANIFEST_NAME

    @property
    def retained(self) -> int:
        return self.list_size + self.delete_threshold

    def segment_path(self, number: int) -> Path:
        return self.hls_dir / segment_name(number)

    def numbers_on_disk(self) -> List[int]:
        if not self.hls_dir.is_dir():
            return []
        found = []
        for entry in os.listdir(self.hls_dir):
            n = segment_number(entry)
            if n is not None:
                found.append(n)
        return sorted(found)

    def manifest(self) -> Optional[ManifestInfo]:
        try:
            return parse_manifest(self.manifest_path.read_text(encoding="utf-8", errors="ignore"))
        except FileNotFoundError:
            return None

    def referenced(self) -> Set[int]:
        info = self.manifest()
        return set(info.numbers) if info else set()

    def reclaim(self, newest: Optional[int] = None) -> List[int]:
        """Delete stale segments, returning the numbers removed."""
        on_disk = self.numbers_on_disk()
        if not on_disk:
            return []
        if newest is None:
            newest = on_disk[-1]
        cutoff = newest - self.retained
        if cutoff <= 0:
            return []

        keep = self.referenced()
        removed = []
        for n in on_disk:
            if n >= cutoff:
                break
            if n in keep:
                continue
            with contextlib.suppress(FileNotFoundError):
                self.segment_path(n).unlink()
                removed.append(n)
        if removed:
            log.debug("[HLS] Reclaimed %d stale segment(s): %s..%s", len(removed), removed[0], removed[-1])
        return removed
