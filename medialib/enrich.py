"""
Movie metadata enrichment from OMDb.

Lookups never raise: a miss, a timeout or a provider error all come back as
None and the caller carries on without enrichment. Poster download is a
separate step so a broken image URL does not throw away the metadata.
"""
from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from http import HTTPStatus
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol, Union

import httpx
from PIL import Image

from . import config
from .logs import _log
from .models import EnrichmentResult

PathLike = Union[str, Path]

_GROUPS = re.compile(r"\[.*?\]|\(.*?\)|\{.*?\}")
_STRAY_BRACKETS = re.compile(r"[\[\](){}]")
_QUALITY = re.compile(
    r"\b(?:2160p|1080p|720p|480p|4k|uhd|blu-?ray|brrip|bdrip|dvdrip|web-?rip|web-?dl|hdtv|hdrip|"
    r"x264|x265|h[ .]?264|h[ .]?265|hevc|10bit|aac|ac3|dts|remux|proper|repack)\b",
    re.IGNORECASE,
)
_YEAR = re.compile(r"\b\d{4}\b")
_NOISE = re.compile(r"[._\-]")
_SPACES = re.compile(r"\s+")


def clean_title(raw: str) -> str:
    """Strip release tags, quality tokens, bare years and punctuation from a title."""
    s = _GROUPS.sub(" ", raw or "")
    s = _STRAY_BRACKETS.sub(" ", s)
    s = _QUALITY.sub(" ", s)
    s = _YEAR.sub(" ", s)
    s = _NOISE.sub(" ", s)
    return _SPACES.sub(" ", s).strip()


def _na(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.upper() == "N/A":
        return None
    return s


def _year(value: Any) -> Optional[int]:
    s = _na(value)
    if not s:
        return None
    m = re.match(r"\d{4}", s)
    return int(m.group(0)) if m else None


def _rating(value: Any) -> Optional[float]:
    s = _na(value)
    if not s:
        return None
    try:
        r = float(s)
    except ValueError:
        return None
    return r if 0.0 <= r <= 10.0 else None


def parse_omdb(data: dict[str, Any]) -> Optional[EnrichmentResult]:
    """Map an OMDb `t=` response onto an EnrichmentResult."""
    if str(data.get("Response")) != "True":
        return None
    title = _na(data.get("Title"))
    if not title:
        return None
    return EnrichmentResult(
        title=title,
        year=_year(data.get("Year")),
        genre=_na(data.get("Genre")),
        director=_na(data.get("Director")),
        cast=_na(data.get("Actors")),
        plot=_na(data.get("Plot")),
        poster_url=_na(data.get("Poster")),
        rating=_rating(data.get("imdbRating")),
        external_id=_na(data.get("imdbID")),
        runtime=_na(data.get("Runtime")),
        content_rating=_na(data.get("Rated")),
        country=_na(data.get("Country")),
        language=_na(data.get("Language")),
        awards=_na(data.get("Awards")),
    )


class MetadataProvider(Protocol):
    async def lookup(self, title: str, year: Optional[int] = None) -> Optional[EnrichmentResult]: ...

    async def download_poster(self, url: str, out: PathLike) -> Optional[Path]: ...


class OmdbClient:
    """OMDb movie lookups by title (and optional year)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        poster_timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or config.omdb_url()
        self.timeout = timeout if timeout is not None else config.omdb_timeout()
        self.poster_timeout = poster_timeout if poster_timeout is not None else config.poster_timeout()
        self._client = client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(follow_redirects=True) as client:
            yield client

    async def lookup(self, title: str, year: Optional[int] = None) -> Optional[EnrichmentResult]:
        cleaned = clean_title(title)
        if not cleaned:
            return None
        params = {
            "apikey": self.api_key,
            "t": cleaned,
            "type": "movie",
            "plot": "full",
        }
        if year:
            params["y"] = str(year)
        try:
            async with self._http() as client:
                resp = await client.get(self.base_url, params=params, timeout=self.timeout)
                if resp.status_code == HTTPStatus.TOO_MANY_REQUESTS:
                    _log("enrich", f"omdb rate-limited title={cleaned!r}", level=30)
                    return None
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            _log("enrich", f"omdb error title={cleaned!r} err={type(e).__name__}: {e}", level=30)
            return None
        if not isinstance(data, dict):
            return None
        result = parse_omdb(data)
        _log("enrich", f"omdb lookup title={cleaned!r} year={year or 'na'} hit={int(result is not None)}")
        return result

    async def download_poster(self, url: str, out: PathLike) -> Optional[Path]:
        """Fetch poster art to `out` as JPEG. Returns None on any failure."""
        out = Path(out)
        out.parent.mkdir(parents=True, exist_ok=True)
        part = out.with_name(f".{out.name}.part")
        try:
            async with self._http() as client:
                async with client.stream("GET", url, timeout=self.poster_timeout) as resp:
                    resp.raise_for_status()
                    with part.open("wb") as fh:
                        async for chunk in resp.aiter_bytes():
                            fh.write(chunk)
            await asyncio.to_thread(_normalize_image, part, out)
        except (httpx.HTTPError, OSError, ValueError) as e:
            _log("enrich", f"poster error url={url} err={type(e).__name__}: {e}", level=30)
            _remove(out)
            return None
        finally:
            _remove(part)
        _log("enrich", f"poster saved url={url} out={out}")
        return out


def _normalize_image(src: Path, out: Path) -> None:
    """Validate downloaded art and store it as RGB JPEG. Raises OSError for non-images."""
    with Image.open(src) as img:
        img.load()
        rgb = img.convert("RGB")
    rgb.save(out, format="JPEG", quality=90)


def _remove(p: Path) -> None:
    try:
        if p.exists():
            p.unlink()
    except OSError:
        pass


class MetadataEnricher:
    """Front for a metadata provider; disabled (always None) without one."""

    def __init__(self, provider: Optional[MetadataProvider] = None, *, delay: Optional[float] = None) -> None:
        self.provider = provider
        self.delay = delay if delay is not None else config.enrich_delay()

    @classmethod
    def from_env(cls) -> "MetadataEnricher":
        key = config.omdb_api_key()
        if not key:
            _log("enrich", "OMDB_API_KEY not set; enrichment disabled")
            return cls(None)
        return cls(OmdbClient(key))

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def enrich(self, title: str, year: Optional[int] = None) -> Optional[EnrichmentResult]:
        if self.provider is None:
            return None
        try:
            return await self.provider.lookup(title, year)
        except Exception as e:  # noqa: BLE001
            _log("enrich", f"lookup failed title={title!r} err={e}", level=30)
            return None

    async def fetch_poster(self, result: EnrichmentResult, out: PathLike) -> Optional[Path]:
        if self.provider is None or not result.poster_url:
            return None
        try:
            return await self.provider.download_poster(result.poster_url, out)
        except Exception as e:  # noqa: BLE001
            _log("enrich", f"poster failed url={result.poster_url} err={e}", level=30)
            return None

    async def throttle(self) -> None:
        """Cooperative pause between provider calls in a batch."""
        if self.provider is not None and self.delay > 0:
            await asyncio.sleep(self.delay)
