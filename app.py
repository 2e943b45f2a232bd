from __future__ import annotations
import asyncio
import os
import sys
import time
import uuid
import shutil
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from fastapi import FastAPI, APIRouter, HTTPException, Query, Request, UploadFile, File, Form
from fastapi.responses import JSONResponse
from starlette.responses import Response

from db import CatalogStore, open_store
from medialib import config
from medialib.enrich import MetadataEnricher
from medialib.errors import DuplicateEntryError, MalformedRangeError, MediaLibraryError
from medialib.ffmpeg import ffmpeg_available, ffprobe_available
from medialib.formats import is_video_name, upload_title
from medialib.logs import _log
from medialib.scanner import CatalogScanner
from medialib.streaming import (
    WatchRecorder,
    list_subtitles,
    open_stream,
    resolve_entry,
    stream_info,
    subtitle_response,
    thumbnail_response,
)

# Global server state: the store and its collaborators are built once in `lifespan`
STATE: Dict[str, Any] = {}
STATE["root"] = config.media_root()


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None, headers: Optional[Dict[str, str]] = None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code, headers=headers)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _require_ffmpeg_or_error(task_name: str) -> None:
    """
    Guard that raises a user-facing API error when ffmpeg is unavailable.
    task_name: short human label like 'conversion'.
    """
    if not ffmpeg_available():
        raise_api_error(
            f"ffmpeg is required for {task_name}. Please install ffmpeg and try again.",
            status_code=400,
            data={"ffmpeg": False},
        )


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    # Startup
    store = open_store(config.database_path())
    enricher = MetadataEnricher.from_env()
    STATE["root"] = config.media_root()
    STATE["store"] = store
    STATE["enricher"] = enricher
    STATE["scanner"] = CatalogScanner(store, enricher, config.thumbnails_dir())
    STATE["watch"] = WatchRecorder(store)
    STATE["started_at"] = time.time()
    _log("store", f"startup db={store.path} root={STATE['root']} omdb={int(enricher.enabled)} ffmpeg={int(ffmpeg_available())}")
    try:
        yield
    finally:
        # Shutdown: let in-flight watch-history writes land
        await STATE["watch"].drain()


app = FastAPI(title="Media Library", version="1.0", lifespan=lifespan)
api = APIRouter(prefix="/api")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        payload = exc.detail
        return JSONResponse(payload, status_code=exc.status_code)
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


@app.exception_handler(MediaLibraryError)
async def media_library_exception_handler(request: Request, exc: MediaLibraryError):
    headers = None
    data: Optional[Dict[str, Any]] = None
    if isinstance(exc, MalformedRangeError):
        headers = {"Content-Range": f"bytes */{exc.size}"}
        data = {"range": exc.header, "size": exc.size}
    elif getattr(exc, "path", None) is not None:
        data = {"path": getattr(exc, "path")}
    _log("stream" if request.url.path.startswith("/api/stream") else "scan",
         f"error status={exc.status_code} path={request.url.path} err={exc}", level=logging.WARNING)
    return api_error(str(exc), status_code=exc.status_code, data=data, headers=headers)


def _store() -> CatalogStore:
    store = STATE.get("store")
    if store is None:
        raise_api_error("Catalog not initialized", status_code=503)
    return store


def _scanner() -> CatalogScanner:
    scanner = STATE.get("scanner")
    if scanner is None:
        raise_api_error("Catalog not initialized", status_code=503)
    return scanner


def _enricher() -> MetadataEnricher:
    return STATE.get("enricher") or MetadataEnricher(None)


def _opt_str(v: Optional[str]) -> Optional[str]:
    s = (v or "").strip()
    return s or None


def _opt_int(v: Optional[str], field: str) -> Optional[int]:
    s = _opt_str(v)
    if s is None:
        return None
    try:
        return int(s)
    except ValueError:
        raise_api_error(f"{field} must be an integer", status_code=400)


def _opt_float(v: Optional[str], field: str) -> Optional[float]:
    s = _opt_str(v)
    if s is None:
        return None
    try:
        return float(s)
    except ValueError:
        raise_api_error(f"{field} must be a number", status_code=400)


# -----------------------------
# Request payloads
# -----------------------------
class ScanRequest(BaseModel):  # type: ignore
    folder_path: str
    skip_incompatible: bool = False
    skip_format_check: bool = False


class ConvertRequest(BaseModel):  # type: ignore
    folder_path: str
    files_to_convert: list[str] = Field(default_factory=list)
    delete_originals: bool = True


class RefreshRequest(BaseModel):  # type: ignore
    staleness_days: int = Field(30, ge=0)
    limit: int = Field(50, ge=1, le=500)


# -----------------------------
# Health
# -----------------------------
@api.get("/health")
def health():
    started = STATE.get("started_at")
    store = STATE.get("store")
    return {
        "ok": True,
        "time": time.time(),
        "uptime": max(0.0, time.time() - float(started)) if started else None,
        "root": str(STATE.get("root")),
        "ffmpeg": ffmpeg_available(),
        "ffprobe": ffprobe_available(),
        "omdb": _enricher().enabled,
        "movies": store.count_entries() if store is not None else None,
    }


# -----------------------------
# Ingestion
# -----------------------------
@api.post("/scan")
async def scan_folder(req: ScanRequest):
    result = await _scanner().scan(
        req.folder_path,
        skip_incompatible=req.skip_incompatible,
        skip_format_check=req.skip_format_check,
    )
    return api_success(result.model_dump(), message=result.message)


@api.post("/convert-and-add")
async def convert_and_add(req: ConvertRequest):
    if not req.files_to_convert:
        raise_api_error("No files specified for conversion", status_code=400)
    _require_ffmpeg_or_error("conversion")
    last_decile: Dict[str, int] = {}

    def _progress(name: str, frac: float) -> None:
        decile = int(frac * 10)
        if decile > last_decile.get(name, -1):
            last_decile[name] = decile
            _log("transcode", f"convert progress file={name} pct={int(frac * 100)}")

    result = await _scanner().convert_and_add(
        req.folder_path,
        req.files_to_convert,
        delete_originals=req.delete_originals,
        on_progress=_progress,
    )
    msg = f"Converted {len(result.converted)} file(s), {len(result.failed)} failed, {result.added_count} added to library"
    return api_success(result.model_dump(), message=msg)


@api.post("/refresh-metadata")
async def refresh_metadata(req: Optional[RefreshRequest] = None):
    if not _enricher().enabled:
        raise_api_error("OMDb API key not configured", status_code=400, data={"omdb": False})
    req = req or RefreshRequest()
    result = await _scanner().refresh_metadata(req.staleness_days, req.limit)
    msg = f"Refreshed metadata for {result.updated} of {result.total} movie(s)"
    return api_success(result.model_dump(), message=msg)


def _save_upload(src, dest: Path) -> None:
    with dest.open("wb") as fh:
        shutil.copyfileobj(src, fh, 1024 * 1024)


@api.post("/upload")
async def upload_movie(
    movie: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    genre: Optional[str] = Form(None),
    release_year: Optional[str] = Form(None),
    rating: Optional[str] = Form(None),
    director: Optional[str] = Form(None),
    cast: Optional[str] = Form(None),
):
    if movie is None or not (movie.filename or "").strip():
        raise_api_error("No movie file provided", status_code=400)
    raw_fn = str(movie.filename).replace("\\", "/").rsplit("/", 1)[-1]
    if not is_video_name(raw_fn):
        raise_api_error("Only video files are allowed", status_code=415)
    fields = {
        "description": _opt_str(description),
        "genre": _opt_str(genre),
        "release_year": _opt_int(release_year, "release_year"),
        "rating": _opt_float(rating, "rating"),
        "director": _opt_str(director),
        "cast": _opt_str(cast),
    }
    root = Path(STATE.get("root") or config.media_root())
    root.mkdir(parents=True, exist_ok=True)
    dest = root / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}{Path(raw_fn).suffix.lower()}"
    await asyncio.to_thread(_save_upload, movie.file, dest)
    _log("scan", f"upload received name={raw_fn} dest={dest} size={dest.stat().st_size}")
    try:
        entry = await _scanner().ingest_upload(
            dest,
            title=_opt_str(title) or upload_title(raw_fn),
            fields=fields,
        )
    except ValidationError as e:
        dest.unlink(missing_ok=True)
        raise_api_error("Invalid movie fields", status_code=400, data={"errors": e.errors(include_url=False)})
    except DuplicateEntryError:
        dest.unlink(missing_ok=True)
        raise
    return api_success(entry.model_dump(), message="Movie uploaded successfully", status_code=201)


# -----------------------------
# Catalog
# -----------------------------
@api.get("/movies")
def list_movies(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    search: Optional[str] = Query(None),
):
    store = _store()
    movies = store.list_entries(offset=offset, limit=limit, search=search)
    return api_success({
        "movies": [m.model_dump() for m in movies],
        "total": store.count_entries(),
        "offset": offset,
        "limit": limit,
    })


@api.get("/movies/{entry_id}")
def get_movie(entry_id: int):
    entry = resolve_entry(_store(), entry_id)
    return api_success(entry.model_dump())


@api.delete("/movies/{entry_id}")
def delete_movie(entry_id: int):
    removed = _store().delete_entry(entry_id)
    if removed is None:
        raise_api_error(f"Movie not found: {entry_id}", status_code=404)
    thumb_removed = _scanner().discard_thumbnail(removed.thumbnail)
    return api_success(
        {"id": entry_id, "thumbnail_removed": thumb_removed},
        message=f"Removed {removed.title!r} from the library",
    )


# -----------------------------
# Streaming
# -----------------------------
@api.get("/stream/{entry_id}")
async def stream_movie(entry_id: int, request: Request):
    viewer = _opt_str(request.headers.get(config.viewer_header()))
    response = open_stream(_store(), entry_id, request.headers.get("range"), viewer=viewer)
    recorder: Optional[WatchRecorder] = STATE.get("watch")
    if recorder is not None:
        recorder.record(viewer, entry_id)
    return response


@api.get("/stream/{entry_id}/info")
def stream_movie_info(entry_id: int):
    return api_success(stream_info(_store(), entry_id))


@api.get("/stream/{entry_id}/thumbnail")
def stream_thumbnail(entry_id: int) -> Response:
    return thumbnail_response(_store(), entry_id)


@api.get("/stream/{entry_id}/subtitles")
def stream_subtitles(entry_id: int):
    subs = list_subtitles(_store(), entry_id)
    return api_success({"subtitles": subs, "count": len(subs)})


@api.get("/stream/{entry_id}/subtitle/{fmt}")
def stream_subtitle(entry_id: int, fmt: str) -> Response:
    return subtitle_response(_store(), entry_id, fmt)


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except Exception:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    host = os.environ.get("HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("PORT", "9999") or 9999)
    except Exception:
        port = 9999
    uvicorn.run("app:app", host=host, port=port, reload=str(os.environ.get("RELOAD", "")).lower() in {"1", "true", "yes"})
