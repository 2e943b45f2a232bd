"""SQLite catalog store for the media library backend."""
from __future__ import annotations

import asyncio
import datetime as _dt
import sqlite3
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from medialib.errors import DuplicateEntryError
from medialib.logs import _log
from medialib.models import CatalogEntry

_SCHEMA_PATH = Path(__file__).resolve().with_name("schema.sql")

# Columns written on insert; `id` and the timestamps are managed by the store
ENTRY_COLUMNS: tuple[str, ...] = tuple(
    name for name in CatalogEntry.model_fields if name not in ("id", "created_at", "updated_at")
)

ENRICHMENT_COLUMNS: tuple[str, ...] = (
    "title", "description", "genre", "release_year", "rating", "director", "cast",
    "runtime", "content_rating", "country", "language", "awards", "poster_url",
    "external_id", "external_rating", "thumbnail",
)


def _now() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat(timespec="seconds")


def _q(col: str) -> str:
    return f'"{col}"'


class CatalogStore:
    """
    Owner of the catalog database.

    Built once at process start and handed to the scanner and the streaming
    routes. Each write is a single statement committed in its own session, so
    concurrent scans and streams never hold a lock across a batch.
    """

    def __init__(self, path: Union[str, Path]):
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = resolved.resolve()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        self.path = resolved
        self._scan_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()

    def __repr__(self) -> str:
        return f"CatalogStore({str(self.path)!r})"

    # -----------------------------
    # Connections
    # -----------------------------
    def connect(self, *, read_only: bool = False) -> sqlite3.Connection:
        """Return a configured sqlite3 connection."""
        if read_only:
            uri = f"file:{self.path}?mode=ro&cache=shared"
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        else:
            conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA busy_timeout = 5000;")
        if not read_only:
            try:
                conn.execute("PRAGMA journal_mode = WAL;")
            except sqlite3.OperationalError:
                pass
        return conn

    @contextmanager
    def session(self, *, read_only: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager that commits automatically for write sessions."""
        conn = self.connect(read_only=read_only)
        try:
            yield conn
            if not read_only:
                conn.commit()
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Apply the bundled schema to the configured database."""
        sql = _SCHEMA_PATH.read_text()
        conn = self.connect()
        try:
            conn.executescript(sql)
            conn.commit()
        finally:
            conn.close()

    def schema_version(self) -> int:
        with self.session(read_only=True) as conn:
            row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
        if row is None:
            raise RuntimeError("schema_version row missing")
        return int(row["version"])

    def scan_lock(self) -> asyncio.Lock:
        """The mutex serializing scans against this store (one per event loop)."""
        loop = asyncio.get_running_loop()
        lock = self._scan_locks.get(loop)
        if lock is None:
            lock = asyncio.Lock()
            self._scan_locks[loop] = lock
        return lock

    # -----------------------------
    # Entries
    # -----------------------------
    def insert_entry(self, entry: CatalogEntry) -> CatalogEntry:
        """Insert a new row. Raises DuplicateEntryError when `source_path` is already cataloged."""
        now = _now()
        values: dict[str, Any] = {col: getattr(entry, col) for col in ENTRY_COLUMNS}
        values["created_at"] = now
        values["updated_at"] = now
        cols = list(values)
        sql = (
            f"INSERT INTO movies ({', '.join(_q(c) for c in cols)}) "
            f"VALUES ({', '.join(':' + c for c in cols)})"
        )
        try:
            with self.session() as conn:
                cur = conn.execute(sql, values)
                new_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            if "source_path" in str(e):
                raise DuplicateEntryError(f"Already cataloged: {entry.source_path}") from e
            raise
        _log("store", f"insert id={new_id} path={entry.source_path} title={entry.title!r}")
        return entry.model_copy(update={"id": new_id, "created_at": now, "updated_at": now})

    def get_entry(self, entry_id: int) -> Optional[CatalogEntry]:
        with self.session(read_only=True) as conn:
            row = conn.execute("SELECT * FROM movies WHERE id = ?", (int(entry_id),)).fetchone()
        return CatalogEntry.from_row(row) if row else None

    def find_by_title(self, title: str) -> Optional[CatalogEntry]:
        with self.session(read_only=True) as conn:
            row = conn.execute("SELECT * FROM movies WHERE title = ? ORDER BY id LIMIT 1", (title,)).fetchone()
        return CatalogEntry.from_row(row) if row else None

    def find_by_path(self, source_path: Union[str, Path]) -> Optional[CatalogEntry]:
        with self.session(read_only=True) as conn:
            row = conn.execute("SELECT * FROM movies WHERE source_path = ?", (str(source_path),)).fetchone()
        return CatalogEntry.from_row(row) if row else None

    def find_existing(self, title: str, source_path: Union[str, Path], *, by_title: bool = True) -> Optional[int]:
        """Id of a row matching the path (or, when `by_title`, the title), else None."""
        with self.session(read_only=True) as conn:
            if by_title:
                row = conn.execute(
                    "SELECT id FROM movies WHERE title = ? OR source_path = ? ORDER BY id LIMIT 1",
                    (title, str(source_path)),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT id FROM movies WHERE source_path = ?", (str(source_path),)
                ).fetchone()
        return int(row["id"]) if row else None

    def count_entries(self) -> int:
        with self.session(read_only=True) as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM movies").fetchone()
        return int(row["cnt"]) if row else 0

    def list_entries(self, *, offset: int = 0, limit: int = 50, search: Optional[str] = None) -> list[CatalogEntry]:
        sql = "SELECT * FROM movies"
        params: list[Any] = []
        if search:
            sql += " WHERE title LIKE ?"
            params.append(f"%{search}%")
        sql += " ORDER BY title COLLATE NOCASE, id LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self.session(read_only=True) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [CatalogEntry.from_row(r) for r in rows]

    def list_stale(self, before: str, limit: int = 50) -> list[CatalogEntry]:
        """Rows never enriched, or last enriched before the ISO timestamp `before`."""
        with self.session(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM movies WHERE last_enriched IS NULL OR last_enriched < ? "
                "ORDER BY id LIMIT ?",
                (before, max(1, int(limit))),
            ).fetchall()
        return [CatalogEntry.from_row(r) for r in rows]

    def update_enrichment(self, entry_id: int, fields: dict[str, Any]) -> bool:
        """Apply provider fields and stamp `last_enriched` in one statement."""
        updates = {k: v for k, v in fields.items() if k in ENRICHMENT_COLUMNS}
        now = _now()
        updates["last_enriched"] = now
        updates["updated_at"] = now
        assignments = ", ".join(f"{_q(k)} = :{k}" for k in updates)
        with self.session() as conn:
            cur = conn.execute(f"UPDATE movies SET {assignments} WHERE id = :_id", {**updates, "_id": int(entry_id)})
            changed = cur.rowcount > 0
        _log("store", f"enrich id={entry_id} fields={','.join(sorted(updates))} ok={int(changed)}")
        return changed

    def mark_enriched(self, entry_id: int) -> bool:
        now = _now()
        with self.session() as conn:
            cur = conn.execute(
                "UPDATE movies SET last_enriched = ?, updated_at = ? WHERE id = ?",
                (now, now, int(entry_id)),
            )
            return cur.rowcount > 0

    def delete_entry(self, entry_id: int) -> Optional[CatalogEntry]:
        """Remove a row (and its watch history); returns the removed entry."""
        with self.session() as conn:
            row = conn.execute("SELECT * FROM movies WHERE id = ?", (int(entry_id),)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM movies WHERE id = ?", (int(entry_id),))
        _log("store", f"delete id={entry_id}")
        return CatalogEntry.from_row(row)

    # -----------------------------
    # Watch history
    # -----------------------------
    def record_watch(self, viewer_id: str, entry_id: int, *, watch_time: Optional[float] = None,
                     completed: bool = False) -> None:
        """Upsert the viewer's progress marker; an omitted `watch_time` keeps the stored one."""
        with self.session() as conn:
            conn.execute(
                "INSERT INTO watch_history (viewer_id, entry_id, watch_time, completed, last_watched) "
                "VALUES (?, ?, COALESCE(?, 0), ?, ?) "
                "ON CONFLICT (viewer_id, entry_id) DO UPDATE SET "
                "watch_time = COALESCE(?, watch_history.watch_time), "
                "completed = MAX(watch_history.completed, excluded.completed), "
                "last_watched = excluded.last_watched",
                (str(viewer_id), int(entry_id), watch_time, int(bool(completed)), _now(), watch_time),
            )

    def get_watch(self, viewer_id: str, entry_id: int) -> Optional[dict[str, Any]]:
        with self.session(read_only=True) as conn:
            row = conn.execute(
                "SELECT viewer_id, entry_id, watch_time, completed, last_watched FROM watch_history "
                "WHERE viewer_id = ? AND entry_id = ?",
                (str(viewer_id), int(entry_id)),
            ).fetchone()
        return dict(row) if row else None


def open_store(path: Union[str, Path]) -> CatalogStore:
    """Build a store at `path` with the schema applied."""
    store = CatalogStore(path)
    store.ensure_schema()
    return store


__all__ = [
    "CatalogStore",
    "ENRICHMENT_COLUMNS",
    "ENTRY_COLUMNS",
    "open_store",
]
