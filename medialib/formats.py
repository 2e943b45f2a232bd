"""
Filename-level heuristics: supported extensions, browser compatibility,
display titles and subtitle sidecars.

Nothing here opens or probes a file's contents; decisions come from the
extension and filename tokens alone so a scan can classify thousands of files
cheaply.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Union

from .models import CompatibilityVerdict

VIDEO_EXTENSIONS: tuple[str, ...] = (
    ".mp4", ".avi", ".mkv", ".mov", ".wmv", ".flv",
    ".webm", ".m4v", ".m2ts", ".ts", ".vob",
)

# Containers with historically poor browser support
PROBLEMATIC_EXTENSIONS = frozenset({".mkv", ".avi", ".wmv", ".flv"})

# Filename tokens that hint at an HEVC/H.265 stream regardless of container
HEVC_TOKENS: tuple[str, ...] = ("hevc", "h.265", "h265", "x265")

SUBTITLE_EXTENSIONS: tuple[str, ...] = (".srt", ".vtt", ".ass", ".ssa")

RECOMMEND_OK = "Compatible - should work in most browsers"
RECOMMEND_CONVERT = "Likely needs conversion for optimal browser support"
RECOMMEND_SKIPPED = "Format check skipped"

PathLike = Union[str, Path]


def is_video_name(name: str) -> bool:
    return Path(name).suffix.lower() in VIDEO_EXTENSIONS


def classify(path: PathLike, *, skip_check: bool = False) -> CompatibilityVerdict:
    """Return a compatibility verdict for `path` from its name only."""
    p = Path(path)
    ext = p.suffix.lower()
    if skip_check:
        return CompatibilityVerdict(
            file_name=p.name,
            format=ext,
            is_compatible=True,
            needs_conversion=False,
            recommendation=RECOMMEND_SKIPPED,
        )
    lowered = p.name.lower()
    has_hevc = any(tok in lowered for tok in HEVC_TOKENS)
    needs_conversion = ext in PROBLEMATIC_EXTENSIONS or has_hevc
    return CompatibilityVerdict(
        file_name=p.name,
        format=ext,
        is_compatible=not needs_conversion,
        needs_conversion=needs_conversion,
        recommendation=RECOMMEND_CONVERT if needs_conversion else RECOMMEND_OK,
    )


_SEPARATORS = re.compile(r"[._-]")
_PARENS = re.compile(r"\(.*?\)")
_BRACKETS = re.compile(r"\[.*?\]")
_BARE_YEAR = re.compile(r"\b\d{4}\b")
_SPACES = re.compile(r"\s+")
_WORD_START = re.compile(r"\b\w")
_YEAR_GUESS = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")


def derive_title(file_name: str) -> str:
    """
    Build a display title from a filename: separators become spaces,
    parenthesized/bracketed tags and bare years are dropped, and each word is
    capitalized. Never returns an empty string.
    """
    stem = Path(file_name).stem
    title = _SEPARATORS.sub(" ", stem)
    title = _PARENS.sub("", title)
    title = _BRACKETS.sub("", title)
    title = _BARE_YEAR.sub("", title)
    title = _SPACES.sub(" ", title).strip()
    title = _WORD_START.sub(lambda m: m.group(0).upper(), title)
    if not title:
        title = stem.strip() or file_name
    return title


def guess_year(file_name: str) -> Optional[int]:
    """Best-effort release year from a filename such as `Heat (1995).mkv`."""
    m = _YEAR_GUESS.search(Path(file_name).stem)
    return int(m.group(1)) if m else None


def converted_name(file_name: str) -> str:
    return f"{Path(file_name).stem}.mp4"


def find_subtitle_sidecars(video: PathLike) -> list[Path]:
    """Subtitle files next to `video` sharing its basename (.srt/.vtt/.ass/.ssa)."""
    v = Path(video)
    found: list[Path] = []
    for ext in SUBTITLE_EXTENSIONS:
        candidate = v.with_suffix(ext)
        try:
            if candidate.is_file():
                found.append(candidate)
        except OSError:
            continue
    return found


def upload_title(file_name: str) -> str:
    """Title for an uploaded file: separators become spaces, nothing else is stripped."""
    stem = Path(file_name).stem
    title = _SPACES.sub(" ", _SEPARATORS.sub(" ", stem)).strip()
    return title or stem or file_name
