"""Environment-driven settings for the ingestion pipeline and streaming server.

Every knob is read lazily so tests (and a running server) can change the
environment without re-importing modules. Malformed values fall back to the
default rather than raising.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    try:
        v = os.environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        v = os.environ.get(name)
        return float(v) if v is not None and str(v).strip() != "" else float(default)
    except Exception:
        return float(default)


def _env_on(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str, default: str) -> Path:
    raw = os.environ.get(name) or default
    return Path(raw).expanduser().resolve()


# -----------------------------
# Locations
# -----------------------------
def media_root() -> Path:
    """Upload destination and the default folder for scans."""
    return _env_path("MEDIA_ROOT", "movies")


def thumbnails_dir() -> Path:
    d = _env_path("THUMBNAILS_DIR", os.path.join("uploads", "thumbnails"))
    d.mkdir(parents=True, exist_ok=True)
    return d


def database_path() -> Path:
    return _env_path("CATALOG_DB", os.path.join("data", "catalog.db"))


# -----------------------------
# Scan tunables
# -----------------------------
def min_video_bytes() -> int:
    # Files must be strictly larger than this to be considered during a scan
    return max(0, _env_int("MIN_VIDEO_BYTES", 1024 * 1024))


def dedupe_by_title() -> bool:
    return _env_on("CATALOG_DEDUPE_BY_TITLE", True)


# -----------------------------
# Metadata provider
# -----------------------------
def omdb_api_key() -> Optional[str]:
    key = (os.environ.get("OMDB_API_KEY") or "").strip()
    return key or None


def omdb_url() -> str:
    return os.environ.get("OMDB_URL") or "http://www.omdbapi.com/"


def omdb_timeout() -> float:
    return max(0.5, _env_float("OMDB_TIMEOUT", 10.0))


def poster_timeout() -> float:
    return max(0.5, _env_float("POSTER_TIMEOUT", 30.0))


def enrich_delay() -> float:
    """Pause between provider calls in a batch, in seconds."""
    return max(0, _env_int("ENRICH_DELAY_MS", 200)) / 1000.0


# -----------------------------
# ffmpeg / ffprobe
# -----------------------------
def thumbnail_timeout() -> float:
    return max(1.0, _env_float("THUMBNAIL_TIMEOUT", 30.0))


def thumbnail_attempt_timeout() -> float:
    return max(1.0, _env_float("THUMBNAIL_ATTEMPT_TIMEOUT", 15.0))


def thumbnail_quality() -> int:
    # JPEG/MJPEG scale: 2(best)..31(worst)
    return max(2, min(31, _env_int("THUMBNAIL_QUALITY", 4)))


def ffprobe_timeout() -> float:
    return max(1.0, _env_float("FFPROBE_TIMEOUT", 30.0))


def ffmpeg_concurrency() -> int:
    return max(1, min(16, _env_int("FFMPEG_CONCURRENCY", 2)))


def ffmpeg_threads_flags() -> list[str]:
    """
    Build ffmpeg threading flags from env. When unset, return [].
    - FFMPEG_THREADS=auto -> ["-threads", "0"] (ffmpeg auto threads)
    - FFMPEG_THREADS=<int> -> ["-threads", str(int)]
    """
    v = os.environ.get("FFMPEG_THREADS")
    if not v:
        return []
    if str(v).strip().lower() == "auto":
        return ["-threads", "0"]
    try:
        n = int(str(v).strip())
        if n >= 0:
            return ["-threads", str(n)]
    except ValueError:
        pass
    return []


# -----------------------------
# Streaming
# -----------------------------
def viewer_header() -> str:
    return os.environ.get("VIEWER_HEADER") or "X-Viewer-Id"


def stream_chunk_bytes() -> int:
    return max(64 * 1024, _env_int("STREAM_CHUNK_BYTES", 1024 * 1024))
