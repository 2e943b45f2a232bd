"""
Folder ingestion: turn a directory of videos into catalog rows, idempotently.

A scan is a linear pass with one decision point. When incompatible
containers are found and the caller has not said what to do about them, the
scan stops before touching the catalog and reports them so an operator can
choose between skipping, converting or adding them anyway.
"""
from __future__ import annotations

import datetime as _dt
import os
import stat as _stat
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, NamedTuple, Optional, Union

from . import config
from .enrich import MetadataEnricher
from .errors import (
    ConversionError,
    DuplicateEntryError,
    FolderNotDirectoryError,
    FolderNotFoundError,
    FolderNotReadableError,
    ScanPathError,
)
from .formats import VIDEO_EXTENSIONS, classify, converted_name, derive_title, guess_year, is_video_name
from .logs import _log
from .models import (
    CatalogEntry,
    ConvertedFile,
    ConvertResult,
    EnrichmentResult,
    FailedFile,
    FileOutcome,
    IncompatibleFile,
    NeedsConversion,
    RefreshResult,
    ScanResult,
    VideoMetadata,
)
from .probe import extract_metadata
from .thumbnails import generate_thumbnail_within, new_thumbnail_path
from .transcode import transcode

if TYPE_CHECKING:
    from db import CatalogStore

PathLike = Union[str, Path]
Probe = Callable[[Path], Awaitable[VideoMetadata]]
Thumbnailer = Callable[..., Awaitable[Optional[Path]]]
Converter = Callable[..., Awaitable[Path]]
ConvertProgress = Callable[[str, float], None]


class Candidate(NamedTuple):
    path: Path
    size: int


def _now() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat(timespec="seconds")


def validate_folder(folder_path: Optional[PathLike]) -> Path:
    """Resolve a scan directory, raising a distinct error for each way it can be unusable."""
    raw = str(folder_path or "").strip()
    if not raw:
        raise ScanPathError(raw, "Folder path is required")
    p = Path(raw).expanduser()
    try:
        st = p.stat()
    except FileNotFoundError:
        raise FolderNotFoundError(raw)
    except PermissionError as e:
        raise FolderNotReadableError(raw, e.strerror or "")
    except OSError as e:
        raise FolderNotReadableError(raw, e.strerror or str(e))
    if not _stat.S_ISDIR(st.st_mode):
        raise FolderNotDirectoryError(raw)
    if not os.access(p, os.R_OK | os.X_OK):
        raise FolderNotReadableError(raw, "permission denied")
    return p.resolve()


def list_candidates(folder: Path, min_bytes: int) -> list[Candidate]:
    """
    Video files directly inside `folder` (no recursion) larger than `min_bytes`,
    in name order. Entries whose stat fails are skipped.
    """
    try:
        entries = sorted(os.scandir(folder), key=lambda e: e.name)
    except PermissionError as e:
        raise FolderNotReadableError(str(folder), e.strerror or "")
    out: list[Candidate] = []
    for entry in entries:
        if not is_video_name(entry.name):
            continue
        try:
            st = entry.stat()
        except OSError as e:
            _log("scan", f"scan stat-skip path={entry.path} err={e}")
            continue
        if not _stat.S_ISREG(st.st_mode):
            continue
        if st.st_size > min_bytes:
            out.append(Candidate(Path(entry.path), int(st.st_size)))
    return out


def enrichment_fields(result: EnrichmentResult) -> dict[str, Any]:
    """Catalog columns filled from a provider answer."""
    return {
        "title": result.title,
        "description": result.plot,
        "genre": result.genre,
        "release_year": result.year,
        "rating": result.rating,
        "director": result.director,
        "cast": result.cast,
        "runtime": result.runtime,
        "content_rating": result.content_rating,
        "country": result.country,
        "language": result.language,
        "awards": result.awards,
        "poster_url": result.poster_url,
        "external_id": result.external_id,
        "external_rating": result.rating,
    }


class CatalogScanner:
    """Scan, bulk convert, metadata refresh and direct-upload ingestion against one store."""

    def __init__(
        self,
        store: "CatalogStore",
        enricher: Optional[MetadataEnricher] = None,
        thumbnails_dir: Optional[PathLike] = None,
        *,
        min_bytes: Optional[int] = None,
        dedupe_by_title: Optional[bool] = None,
        probe: Optional[Probe] = None,
        thumbnailer: Optional[Thumbnailer] = None,
        converter: Optional[Converter] = None,
    ) -> None:
        self.store = store
        self.enricher = enricher or MetadataEnricher(None)
        self.thumbnails_dir = Path(thumbnails_dir) if thumbnails_dir else config.thumbnails_dir()
        self.min_bytes = config.min_video_bytes() if min_bytes is None else int(min_bytes)
        self.dedupe_by_title = config.dedupe_by_title() if dedupe_by_title is None else bool(dedupe_by_title)
        self.probe = probe or extract_metadata
        self.thumbnailer = thumbnailer or generate_thumbnail_within
        self.converter = converter or transcode

    # -----------------------------
    # Scan
    # -----------------------------
    async def scan(self, folder_path: PathLike, *, skip_incompatible: bool = False,
                   skip_format_check: bool = False) -> Union[ScanResult, NeedsConversion]:
        folder = validate_folder(folder_path)
        async with self.store.scan_lock():
            candidates = list_candidates(folder, self.min_bytes)
            compatible: list[Candidate] = []
            incompatible: list[IncompatibleFile] = []
            for cand in candidates:
                verdict = classify(cand.path, skip_check=skip_format_check)
                if verdict.is_compatible:
                    compatible.append(cand)
                else:
                    incompatible.append(IncompatibleFile(
                        file_name=verdict.file_name,
                        format=verdict.format,
                        recommendation=verdict.recommendation,
                        file_size_mb=round(cand.size / (1024 * 1024)),
                    ))
            _log("scan", f"scan start folder={folder} candidates={len(candidates)} compatible={len(compatible)} incompatible={len(incompatible)}")

            if incompatible and not skip_incompatible:
                _log("scan", f"scan needs-conversion folder={folder} files={','.join(f.file_name for f in incompatible)}")
                return NeedsConversion(
                    message=(
                        f"Found {len(incompatible)} file(s) that may need conversion for browser "
                        "compatibility. Choose to skip them, convert them, or add them anyway."
                    ),
                    folder_path=str(folder),
                    total_files=len(candidates),
                    compatible_files=len(compatible),
                    incompatible_files=incompatible,
                )

            result = ScanResult(
                folder_path=str(folder),
                total_files=len(candidates),
                compatible_files=len(compatible),
                incompatible_files=len(incompatible),
                skipped_incompatible=len(incompatible),
                supported_extensions=list(VIDEO_EXTENSIONS),
            )
            for idx, cand in enumerate(compatible):
                outcome = await self._scan_one(cand.path)
                result.results.append(outcome)
                result.processed_files += 1
                if outcome.status == "added":
                    result.added_movies += 1
                elif outcome.status == "skipped":
                    result.skipped_movies += 1
                else:
                    result.failed_files += 1
                if outcome.status != "skipped" and idx + 1 < len(compatible):
                    await self.enricher.throttle()

        result.message = (
            f"Scan complete: {result.added_movies} added, {result.skipped_movies} already in library"
            + (f", {result.skipped_incompatible} incompatible skipped" if result.skipped_incompatible else "")
            + (f", {result.failed_files} failed" if result.failed_files else "")
        )
        _log("scan", f"scan end folder={folder} added={result.added_movies} skipped={result.skipped_movies} failed={result.failed_files}")
        return result

    async def _scan_one(self, path: Path) -> FileOutcome:
        title = derive_title(path.name)
        try:
            if self.store.find_existing(title, str(path), by_title=self.dedupe_by_title) is not None:
                _log("scan", f"scan skip path={path} title={title!r} reason=exists")
                return FileOutcome(file_name=path.name, title=title, status="skipped")
            entry = await self.ingest_file(path, title=title)
        except DuplicateEntryError:
            _log("scan", f"scan skip path={path} title={title!r} reason=unique-path")
            return FileOutcome(file_name=path.name, title=title, status="skipped")
        except Exception as e:  # noqa: BLE001
            _log("scan", f"scan fail path={path} err={type(e).__name__}: {e}", level=40)
            return FileOutcome(file_name=path.name, title=title, status="failed", error=str(e))
        return FileOutcome(file_name=path.name, title=entry.title, status="added")

    # -----------------------------
    # Single-file ingestion
    # -----------------------------
    async def ingest_file(self, path: PathLike, *, title: Optional[str] = None) -> CatalogEntry:
        """
        Probe, enrich, thumbnail and insert one new video.

        Enrichment and thumbnails are best effort; the row is inserted with
        whatever was obtained. Raises DuplicateEntryError if the path is
        already cataloged.
        """
        path = Path(path)
        title = title or derive_title(path.name)
        size = path.stat().st_size
        meta = await self.probe(path)
        fields: dict[str, Any] = {}
        thumbnail: Optional[Path] = None

        result = await self.enricher.enrich(title, guess_year(path.name))
        if result is not None:
            fields = enrichment_fields(result)
            fields["last_enriched"] = _now()
            if result.poster_url:
                thumbnail = await self.enricher.fetch_poster(result, new_thumbnail_path(self.thumbnails_dir))
            # Canonical title only comes with the poster art
            if thumbnail is None:
                fields.pop("title", None)
        if thumbnail is None:
            thumbnail = await self._frame_grab(path, meta.duration)

        fields.setdefault("title", title)
        entry = CatalogEntry(
            source_path=str(path),
            file_size=size,
            format=meta.format,
            resolution=meta.resolution,
            duration=meta.duration,
            thumbnail=str(thumbnail) if thumbnail else None,
            **fields,
        )
        saved = self._insert(entry)
        _log("scan", f"scan add id={saved.id} path={path} title={saved.title!r} enriched={int(result is not None)} thumb={int(thumbnail is not None)}")
        return saved

    async def _frame_grab(self, video: Path, duration: float) -> Optional[Path]:
        try:
            return await self.thumbnailer(video, new_thumbnail_path(self.thumbnails_dir), duration=duration)
        except Exception as e:  # noqa: BLE001
            _log("thumbnail", f"thumbnail error path={video} err={e}")
            return None

    async def ingest_upload(self, path: PathLike, *, title: Optional[str] = None,
                            fields: Optional[dict[str, Any]] = None) -> CatalogEntry:
        """Catalog an uploaded file with operator-supplied fields; no provider lookup."""
        path = Path(path)
        size = path.stat().st_size
        meta = await self.probe(path)
        entry = CatalogEntry(
            title=(title or "").strip() or derive_title(path.name),
            source_path=str(path),
            file_size=size,
            format=meta.format,
            resolution=meta.resolution,
            duration=meta.duration,
            **(fields or {}),
        )
        thumbnail = await self._frame_grab(path, meta.duration)
        if thumbnail is not None:
            entry = entry.model_copy(update={"thumbnail": str(thumbnail)})
        saved = self._insert(entry)
        _log("scan", f"upload add id={saved.id} path={path} title={saved.title!r}")
        return saved

    def _insert(self, entry: CatalogEntry) -> CatalogEntry:
        try:
            return self.store.insert_entry(entry)
        except Exception:
            # No row points at the generated image any more
            self.discard_thumbnail(entry.thumbnail)
            raise

    # -----------------------------
    # Bulk conversion
    # -----------------------------
    async def convert_and_add(self, folder_path: PathLike, files: list[str], *, delete_originals: bool = True,
                              on_progress: Optional[ConvertProgress] = None) -> ConvertResult:
        """
        Convert each named file in `folder_path` to `<stem>.mp4` and catalog it.

        An original is removed only once its converted file is on disk and the
        catalog step for it has finished.
        """
        folder = validate_folder(folder_path)
        result = ConvertResult()
        for idx, name in enumerate(files):
            file_name = Path(str(name)).name
            src = folder / file_name
            dst = folder / converted_name(file_name)
            if not file_name or not src.is_file():
                result.failed.append(FailedFile(file_name=file_name or str(name), error="File not found"))
                continue
            if dst.exists():
                result.failed.append(FailedFile(file_name=file_name, error="MP4 version already exists"))
                continue

            sink = None
            if on_progress is not None:
                def sink(frac: float, _name: str = file_name) -> None:
                    on_progress(_name, frac)
            try:
                await self.converter(src, dst, on_progress=sink)
            except ConversionError as e:
                _log("transcode", f"convert fail src={src} err={e}", level=40)
                result.failed.append(FailedFile(file_name=file_name, error=str(e)))
                continue
            except Exception as e:  # noqa: BLE001
                _log("transcode", f"convert error src={src} err={type(e).__name__}: {e}", level=40)
                result.failed.append(FailedFile(file_name=file_name, error=f"Conversion failed: {e}"))
                continue
            if not dst.is_file() or dst.stat().st_size == 0:
                result.failed.append(FailedFile(file_name=file_name, error="Converted file missing after conversion"))
                continue

            title = derive_title(dst.name)
            added = False
            cataloged = False
            async with self.store.scan_lock():
                try:
                    if self.store.find_existing(title, str(dst), by_title=self.dedupe_by_title) is None:
                        saved = await self.ingest_file(dst, title=title)
                        title = saved.title
                        added = True
                    cataloged = True
                except DuplicateEntryError:
                    cataloged = True
                except Exception as e:  # noqa: BLE001
                    _log("scan", f"convert catalog-fail path={dst} err={type(e).__name__}: {e}", level=40)

            deleted = False
            if delete_originals and cataloged:
                try:
                    src.unlink()
                    deleted = True
                except OSError as e:
                    _log("scan", f"convert delete-fail path={src} err={e}", level=30)
            if added:
                result.added_count += 1
            result.converted.append(ConvertedFile(
                original=file_name,
                converted=dst.name,
                title=title,
                added=added,
                original_deleted=deleted,
            ))
            if added and idx + 1 < len(files):
                await self.enricher.throttle()
        _log("scan", f"convert end folder={folder} converted={len(result.converted)} failed={len(result.failed)} added={result.added_count}")
        return result

    # -----------------------------
    # Metadata refresh
    # -----------------------------
    async def refresh_metadata(self, staleness_days: int = 30, limit: int = 50) -> RefreshResult:
        """Re-query the provider for entries never enriched or enriched before the staleness cutoff."""
        if not self.enricher.enabled:
            _log("enrich", "refresh skipped reason=provider-disabled")
            return RefreshResult()
        cutoff = (_dt.datetime.now(tz=_dt.timezone.utc) - _dt.timedelta(days=max(0, staleness_days))).isoformat(timespec="seconds")
        stale = self.store.list_stale(cutoff, limit)
        result = RefreshResult(total=len(stale))
        for idx, entry in enumerate(stale):
            if idx:
                await self.enricher.throttle()
            try:
                if await self._refresh_one(entry):
                    result.updated += 1
            except Exception as e:  # noqa: BLE001
                result.errors += 1
                _log("enrich", f"refresh fail id={entry.id} err={type(e).__name__}: {e}", level=40)
        _log("enrich", f"refresh end total={result.total} updated={result.updated} errors={result.errors}")
        return result

    async def _refresh_one(self, entry: CatalogEntry) -> bool:
        found = await self.enricher.enrich(entry.title, entry.release_year)
        if found is None:
            self.store.mark_enriched(entry.id)
            return False
        fields = enrichment_fields(found)
        if found.poster_url and found.poster_url != entry.poster_url:
            poster = await self.enricher.fetch_poster(found, new_thumbnail_path(self.thumbnails_dir))
            if poster is not None:
                fields["thumbnail"] = str(poster)
                self.discard_thumbnail(entry.thumbnail)
        return self.store.update_enrichment(entry.id, fields)

    def discard_thumbnail(self, thumbnail: Optional[str]) -> bool:
        """Delete a generated thumbnail; files outside the thumbnails folder are left alone."""
        if not thumbnail:
            return False
        p = Path(thumbnail)
        try:
            p.resolve().relative_to(self.thumbnails_dir.resolve())
        except ValueError:
            return False
        try:
            p.unlink()
            return True
        except OSError:
            return False
