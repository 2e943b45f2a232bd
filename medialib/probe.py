"""Best-effort video metadata extraction."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional, Union

from . import config
from .ffmpeg import ffprobe_available, ffprobe_bin, run_tool
from .logs import _log
from .models import VideoMetadata


def extract_duration(ffprobe_json: Optional[dict]) -> Optional[float]:
    try:
        if not isinstance(ffprobe_json, dict):
            return None
        d = (ffprobe_json.get("format") or {}).get("duration")
        if d is None:
            return None
        return max(0.0, float(d))
    except (TypeError, ValueError):
        return None


def extract_resolution(ffprobe_json: Optional[dict]) -> Optional[str]:
    if not isinstance(ffprobe_json, dict):
        return None
    for st in ffprobe_json.get("streams") or []:
        if not isinstance(st, dict) or st.get("codec_type") != "video":
            continue
        try:
            width = int(st.get("width") or 0)
            height = int(st.get("height") or 0)
        except (TypeError, ValueError):
            return None
        if width and height:
            return f"{width}x{height}"
        return None
    return None


def _format_from_name(path: Path) -> str:
    return path.suffix[1:].lower() or "unknown"


async def probe_json(video: Path) -> Optional[dict[str, Any]]:
    """Raw ffprobe JSON for `video`, or None when ffprobe fails."""
    if not ffprobe_available():
        return None
    cmd = [
        ffprobe_bin(), "-v", "error",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(video),
    ]
    proc = await run_tool(cmd, timeout=config.ffprobe_timeout(), category="ffmpeg")
    if proc.returncode != 0:
        return None
    payload = json.loads(proc.stdout or "{}")
    if not isinstance(payload, dict) or not payload:
        return None
    return payload


async def extract_metadata(path: Union[str, Path]) -> VideoMetadata:
    """
    Return {duration, file_size, format} for a video file.

    Never raises: a missing file, an unreadable file or a failing probe all
    degrade to duration 0 (resolve client-side), the stat size when one is
    available, and format "unknown" when the file cannot be read at all.
    """
    video = Path(path)
    try:
        st = os.stat(video)
        meta = VideoMetadata(file_size=int(st.st_size), format=_format_from_name(video))
    except OSError as e:
        _log("ffmpeg", f"metadata stat-fail path={video} err={e}")
        return VideoMetadata()
    try:
        payload = await probe_json(video)
    except Exception as e:  # noqa: BLE001
        _log("ffmpeg", f"metadata probe-fail path={video} err={e}")
        payload = None
    if payload is not None:
        meta.duration = extract_duration(payload) or 0.0
        meta.resolution = extract_resolution(payload)
    _log("ffmpeg", f"metadata end path={video} dur={meta.duration:.3f} size={meta.file_size} fmt={meta.format} probed={int(payload is not None)}")
    return meta
