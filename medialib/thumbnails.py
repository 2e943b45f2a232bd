"""
Frame-grab thumbnails.

Generation walks an ordered list of strategies and stops at the first one that
produces a non-empty JPEG. Failure is never fatal: callers get None and the
catalog entry simply has no thumbnail.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from pathlib import Path
from typing import NamedTuple, Optional, Union

from . import config
from .ffmpeg import ffmpeg_available, ffmpeg_bin, run_tool
from .logs import _log, _trim
from .probe import extract_metadata

PathLike = Union[str, Path]


class Strategy(NamedTuple):
    time_spec: str  # "10%" of the duration, or seconds like "5"
    filters: tuple[str, ...] = ()


STRATEGIES: tuple[Strategy, ...] = (
    Strategy("10%"),
    Strategy("5%"),
    Strategy("5"),
    Strategy("1", ("-vf", "scale=320:240")),
)

RETRY_DELAY = 0.1


def new_thumbnail_path(directory: PathLike) -> Path:
    """A collision-safe `<ms-timestamp>-<random>.jpg` path inside `directory`."""
    d = Path(directory)
    d.mkdir(parents=True, exist_ok=True)
    return d / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}.jpg"


def resolve_time(value: str, duration: float) -> Optional[float]:
    """Seconds for a strategy time spec; None when a percentage has no duration to apply to."""
    s = value.strip()
    if s.endswith("%"):
        if not duration or duration <= 0:
            return None
        return max(0.0, float(duration) * float(s[:-1]) / 100.0)
    return max(0.0, float(s))


def _cleanup(out: Path) -> None:
    try:
        if out.exists():
            out.unlink()
    except OSError:
        pass


async def _attempt(video: Path, out: Path, seconds: float, strategy: Strategy) -> bool:
    cmd = [
        ffmpeg_bin(), "-hide_banner", "-loglevel", "error", "-y",
        "-ss", f"{seconds:.3f}",
        "-i", str(video),
        "-frames:v", "1",
        *strategy.filters,
        "-q:v", str(config.thumbnail_quality()),
        *config.ffmpeg_threads_flags(),
        str(out),
    ]
    try:
        proc = await run_tool(cmd, timeout=config.thumbnail_attempt_timeout(), category="thumbnail")
    except Exception as e:  # noqa: BLE001
        _log("thumbnail", f"thumbnail attempt error path={video} at={strategy.time_spec} err={e}")
        return False
    if proc.returncode != 0:
        _log("thumbnail", f"thumbnail attempt fail path={video} at={strategy.time_spec} stderr={_trim(proc.stderr, 400)!r}")
        return False
    try:
        return out.exists() and out.stat().st_size > 0
    except OSError:
        return False


async def generate_thumbnail(video: PathLike, out: PathLike, *, duration: Optional[float] = None) -> Optional[Path]:
    """
    Produce a JPEG frame grab of `video` at `out`.

    Returns the output path on the first successful strategy, or None if every
    strategy fails (or ffmpeg is not installed).
    """
    video = Path(video)
    out = Path(out)
    if not ffmpeg_available():
        _log("thumbnail", f"thumbnail skip path={video} reason=ffmpeg-missing")
        return None
    out.parent.mkdir(parents=True, exist_ok=True)
    if duration is None:
        duration = (await extract_metadata(video)).duration
    _log("thumbnail", f"thumbnail start path={video} out={out} dur={duration:.3f}")
    tried = 0
    for strategy in STRATEGIES:
        seconds = resolve_time(strategy.time_spec, duration)
        if seconds is None:
            continue
        if tried:
            await asyncio.sleep(RETRY_DELAY)
        tried += 1
        if await _attempt(video, out, seconds, strategy):
            _log("thumbnail", f"thumbnail end path={video} at={strategy.time_spec} out={out}")
            return out
        _cleanup(out)
    _log("thumbnail", f"thumbnail give-up path={video} attempts={tried}")
    return None


async def generate_thumbnail_within(video: PathLike, out: PathLike, timeout: Optional[float] = None,
                                    *, duration: Optional[float] = None) -> Optional[Path]:
    """generate_thumbnail raced against an outer timeout; expiry means no thumbnail."""
    limit = timeout if timeout is not None else config.thumbnail_timeout()
    try:
        return await asyncio.wait_for(generate_thumbnail(video, out, duration=duration), limit)
    except asyncio.TimeoutError:
        _log("thumbnail", f"thumbnail timeout path={video} after={limit}s")
        _cleanup(Path(out))
        return None
