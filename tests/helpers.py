from __future__ import annotations

from pathlib import Path
from typing import Optional

from medialib.models import EnrichmentResult, VideoMetadata


def write_video(folder: Path, name: str, size: int = 2048) -> Path:
    p = folder / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(b"0" * size)
    return p


async def fake_probe(path: Path) -> VideoMetadata:
    return VideoMetadata(
        duration=120.0,
        file_size=Path(path).stat().st_size,
        format=Path(path).suffix[1:].lower(),
        resolution="1920x1080",
    )


async def fake_thumbnailer(video: Path, out: Path, timeout: Optional[float] = None, *,
                           duration: Optional[float] = None) -> Optional[Path]:
    Path(out).write_bytes(b"\xff\xd8thumb")
    return Path(out)


async def failing_thumbnailer(video: Path, out: Path, timeout: Optional[float] = None, *,
                              duration: Optional[float] = None) -> Optional[Path]:
    return None


async def fake_converter(src: Path, dst: Path, *, on_progress=None, duration=None) -> Path:
    if on_progress is not None:
        on_progress(0.5)
    Path(dst).write_bytes(Path(src).read_bytes())
    if on_progress is not None:
        on_progress(1.0)
    return Path(dst)


class FakeProvider:
    """In-memory metadata provider keyed by cleaned title."""

    def __init__(self, results: Optional[dict[str, EnrichmentResult]] = None, *, poster_ok: bool = True):
        self.results = results or {}
        self.poster_ok = poster_ok
        self.lookups: list[tuple[str, Optional[int]]] = []
        self.posters: list[str] = []

    async def lookup(self, title: str, year: Optional[int] = None) -> Optional[EnrichmentResult]:
        self.lookups.append((title, year))
        return self.results.get(title)

    async def download_poster(self, url: str, out) -> Optional[Path]:
        self.posters.append(url)
        if not self.poster_ok:
            return None
        Path(out).write_bytes(b"\xff\xd8poster")
        return Path(out)


class RaisingProvider:
    async def lookup(self, title: str, year: Optional[int] = None):
        raise RuntimeError("provider exploded")

    async def download_poster(self, url: str, out):
        raise RuntimeError("provider exploded")
