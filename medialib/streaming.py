"""
Range-aware byte serving for catalog entries, plus their thumbnails and
subtitle sidecars.
"""
from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from fastapi.responses import FileResponse, StreamingResponse

from . import config
from .errors import EntryNotFoundError, MalformedRangeError, RangeNotSatisfiableError, SourceMissingError
from .formats import SUBTITLE_EXTENSIONS
from .logs import _log
from .models import CatalogEntry

if TYPE_CHECKING:
    from db import CatalogStore

VIDEO_MIME_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
    ".3gp": "video/3gpp",
    ".ts": "video/mp2t",
    ".m2ts": "video/mp2t",
    ".vob": "video/mpeg",
}
DEFAULT_VIDEO_MIME = "video/mp4"

IMAGE_MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

SUBTITLE_MIME_TYPES: dict[str, str] = {
    ".srt": "application/x-subrip",
    ".vtt": "text/vtt",
}

STREAM_HEADERS = {
    "Accept-Ranges": "bytes",
    "Cache-Control": "no-cache",
    "Cross-Origin-Resource-Policy": "cross-origin",
}

_RANGE = re.compile(r"^bytes=(\d*)-(\d*)$")


def video_mime(path: Path) -> str:
    return VIDEO_MIME_TYPES.get(path.suffix.lower(), DEFAULT_VIDEO_MIME)


def parse_range(header: str, size: int) -> tuple[int, int]:
    """
    Inclusive (start, end) for a single `bytes=` range against a file of `size` bytes.

    Supports `start-end`, `start-` and suffix `-N`. An end past EOF is clamped.
    Raises RangeNotSatisfiableError when the range starts at or beyond EOF, and
    MalformedRangeError for anything that does not parse (multi-range included).
    """
    m = _RANGE.match(header.strip().replace(" ", ""))
    if not m:
        raise MalformedRangeError(header, size)
    start_s, end_s = m.groups()
    if not start_s and not end_s:
        raise MalformedRangeError(header, size)
    if not start_s:
        suffix = int(end_s)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiableError(header, size)
        return max(0, size - suffix), size - 1
    start = int(start_s)
    end = int(end_s) if end_s else size - 1
    if end_s and end < start:
        raise MalformedRangeError(header, size)
    if start >= size:
        raise RangeNotSatisfiableError(header, size)
    return start, min(end, size - 1)


def iter_file_range(path: Path, start: int, end: int, chunk_size: Optional[int] = None) -> Iterator[bytes]:
    chunk = chunk_size or config.stream_chunk_bytes()
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(chunk, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def resolve_entry(store: "CatalogStore", entry_id: int) -> CatalogEntry:
    entry = store.get_entry(entry_id)
    if entry is None:
        raise EntryNotFoundError(entry_id)
    return entry


def resolve_source(store: "CatalogStore", entry_id: int) -> tuple[CatalogEntry, Path]:
    """The entry and its file on disk; the row can outlive the file."""
    entry = resolve_entry(store, entry_id)
    path = Path(entry.source_path)
    if not path.is_file():
        raise SourceMissingError(entry.source_path)
    return entry, path


def open_stream(store: "CatalogStore", entry_id: int, range_header: Optional[str] = None,
                *, viewer: Optional[str] = None) -> StreamingResponse:
    """Build the 200 or 206 response for an entry's video bytes."""
    entry, path = resolve_source(store, entry_id)
    size = path.stat().st_size
    media_type = video_mime(path)
    if range_header:
        start, end = parse_range(range_header, size)
        headers = {
            **STREAM_HEADERS,
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Content-Length": str(end - start + 1),
            "Content-Type": media_type,
        }
        _log("stream", f"stream 206 id={entry_id} range={start}-{end}/{size} bytes={end - start + 1} ct={media_type} viewer={viewer or '-'}")
        return StreamingResponse(iter_file_range(path, start, end), status_code=206, headers=headers, media_type=media_type)
    headers = {
        **STREAM_HEADERS,
        "Content-Length": str(size),
        "Content-Type": media_type,
    }
    _log("stream", f"stream 200 id={entry_id} bytes={size} ct={media_type} viewer={viewer or '-'}")
    return StreamingResponse(iter_file_range(path, 0, size - 1), status_code=200, headers=headers, media_type=media_type)


def stream_info(store: "CatalogStore", entry_id: int) -> dict:
    entry, path = resolve_source(store, entry_id)
    return {
        "id": entry.id,
        "title": entry.title,
        "duration": entry.duration,
        "format": entry.format,
        "resolution": entry.resolution,
        "file_size": path.stat().st_size,
        "mime_type": video_mime(path),
    }


def thumbnail_response(store: "CatalogStore", entry_id: int) -> FileResponse:
    entry = resolve_entry(store, entry_id)
    if not entry.thumbnail or not Path(entry.thumbnail).is_file():
        raise SourceMissingError(entry.thumbnail or f"thumbnail for {entry_id}")
    p = Path(entry.thumbnail)
    return FileResponse(
        p,
        media_type=IMAGE_MIME_TYPES.get(p.suffix.lower(), "image/jpeg"),
        headers={"Cache-Control": "public, max-age=86400"},
    )


def list_subtitles(store: "CatalogStore", entry_id: int) -> list[dict[str, str]]:
    entry = resolve_entry(store, entry_id)
    video = Path(entry.source_path)
    out = []
    for ext in SUBTITLE_EXTENSIONS:
        candidate = video.with_suffix(ext)
        if candidate.is_file():
            fmt = ext[1:]
            out.append({
                "format": fmt,
                "file_name": candidate.name,
                "url": f"/api/stream/{entry_id}/subtitle/{fmt}",
            })
    return out


def subtitle_response(store: "CatalogStore", entry_id: int, fmt: str) -> FileResponse:
    entry = resolve_entry(store, entry_id)
    ext = "." + fmt.lower().lstrip(".")
    if ext not in SUBTITLE_EXTENSIONS:
        raise SourceMissingError(f"{Path(entry.source_path).stem}{ext}")
    p = Path(entry.source_path).with_suffix(ext)
    if not p.is_file():
        raise SourceMissingError(str(p))
    return FileResponse(
        p,
        media_type=SUBTITLE_MIME_TYPES.get(ext, "text/plain"),
        headers={"Access-Control-Allow-Origin": "*"},
    )


class WatchRecorder:
    """
    Records viewer progress off the request path.

    Each write runs in a worker thread as its own task; the response never
    waits on it and a failed write is only logged.
    """

    def __init__(self, store: "CatalogStore") -> None:
        self.store = store
        self._tasks: set[asyncio.Task] = set()

    def record(self, viewer_id: Optional[str], entry_id: int) -> Optional[asyncio.Task]:
        if not viewer_id:
            return None
        task = asyncio.create_task(asyncio.to_thread(self.store.record_watch, viewer_id, entry_id))
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log("stream", f"watch-history error err={type(exc).__name__}: {exc}", level=30)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
