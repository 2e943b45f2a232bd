"""Category-gated application logging.

Categories (scan, stream, ffmpeg, enrich, thumbnail, transcode, store) are
opt-in / opt-out through the environment:
  LOG_ALL=0 disables everything unless a category is explicitly enabled.
  LOG_<CAT>=1/0 overrides LOG_ALL for that category.
"""
from __future__ import annotations

import logging
import os

logger = logging.getLogger("medialib")


def _log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def _log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category."""
    if not _log_enabled(cat):
        return
    logger.log(level, "[%s] %s", cat, msg)


def _trim(text: str, limit: int = 1200) -> str:
    text = (text or "").strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text
