#!/usr/bin/env python3
"""Dump or restore the media library catalog to/from JSON."""
from __future__ import annotations

import argparse
import datetime as _dt
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db import CatalogStore, open_store  # noqa: E402
from medialib import config  # noqa: E402

TABLE_EXPORTS = [
    ("movies", "movies", "id"),
    ("watch_history", "watch_history", "id"),
]

SEQUENCED_TABLES = ("movies", "watch_history")


def _fetch_rows(conn, table: str, order_by: str | None) -> list[dict[str, Any]]:
    query = f"SELECT * FROM \"{table}\""
    if order_by:
        query += f" ORDER BY {order_by}"
    rows = conn.execute(query).fetchall()
    return [dict(row) for row in rows]


def _table_counts(conn) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for _, table, _ in TABLE_EXPORTS:
        row = conn.execute(f"SELECT COUNT(*) AS cnt FROM \"{table}\"").fetchone()
        counts[table] = int(row["cnt"] if row and "cnt" in row.keys() else 0)
    return counts


def _wipe_tables(conn) -> None:
    conn.execute("DELETE FROM \"watch_history\"")
    conn.execute("DELETE FROM \"movies\"")
    placeholders = ",".join("?" for _ in SEQUENCED_TABLES)
    conn.execute(
        f"DELETE FROM sqlite_sequence WHERE name IN ({placeholders})",
        SEQUENCED_TABLES,
    )


def _insert_rows(conn, table: str, rows: Sequence[dict[str, Any]]) -> int:
    if not rows:
        return 0
    columns: List[str] = sorted({col for row in rows for col in row.keys()})
    if not columns:
        return 0
    col_sql = ", ".join(f'"{c}"' for c in columns)
    placeholders = ", ".join(f":{c}" for c in columns)
    sql = f"INSERT INTO \"{table}\" ({col_sql}) VALUES ({placeholders})"
    prepped = [{col: row.get(col) for col in columns} for row in rows]
    conn.executemany(sql, prepped)
    return len(rows)


def build_backup_payload(store: CatalogStore) -> dict[str, Any]:
    """Return an in-memory JSON-serializable backup payload."""
    tables: Dict[str, list[dict[str, Any]]] = {}
    with store.session(read_only=True) as conn:
        schema_row = conn.execute(
            "SELECT version, applied_at FROM schema_version WHERE id = 1"
        ).fetchone()
        if schema_row is None:
            raise RuntimeError("schema_version row missing")
        for section, table, order_by in TABLE_EXPORTS:
            tables[section] = _fetch_rows(conn, table, order_by)
    meta = {
        "generated_at": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
        "schema_version": int(schema_row["version"]),
        "schema_applied_at": int(schema_row["applied_at"]),
        "db_path": str(store.path),
        "media_root": str(config.media_root()),
        "counts": {section: len(rows) for section, rows in tables.items()},
    }
    payload: dict[str, Any] = {"meta": meta}
    payload.update(tables)
    return payload


def restore_from_payload(store: CatalogStore, payload: dict[str, Any], *, replace: bool = False) -> dict[str, Any]:
    """Load a previously exported payload into the catalog."""
    meta = payload.get("meta") if isinstance(payload, dict) else None
    if not isinstance(meta, dict):
        raise RuntimeError("Backup payload missing meta section")
    backup_version = meta.get("schema_version")
    if backup_version is None:
        raise RuntimeError("Backup payload missing schema_version")
    inserted: Dict[str, int] = {}
    with store.session() as conn:
        schema_row = conn.execute(
            "SELECT version, applied_at FROM schema_version WHERE id = 1"
        ).fetchone()
        if schema_row is None:
            raise RuntimeError("schema_version row missing")
        current_version = int(schema_row["version"])
        if int(backup_version) != current_version:
            raise RuntimeError(
                f"Schema version mismatch: backup={backup_version} current={current_version}"
            )
        counts = _table_counts(conn)
        has_existing = any(counts.values())
        if has_existing and not replace:
            raise RuntimeError(
                "Catalog already has data; rerun with --replace to overwrite existing rows."
            )
        if has_existing and replace:
            _wipe_tables(conn)
        for section, table, _ in TABLE_EXPORTS:
            rows = payload.get(section, [])
            if not isinstance(rows, list):
                raise RuntimeError(f"Backup section '{section}' must be a list")
            inserted[section] = _insert_rows(conn, table, rows)
    return {"inserted": inserted, "replaced": bool(has_existing and replace)}


def _write_json(output: str, payload: dict[str, Any], *, compact: bool) -> None:
    if output in ("-", ""):
        json.dump(payload, sys.stdout, indent=None if compact else 2, ensure_ascii=False)
        sys.stdout.write("\n")
        return
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=None if compact else 2, ensure_ascii=False)
        fh.write("\n")


def _read_json(input_path: str) -> dict[str, Any]:
    if input_path in ("-", ""):
        return json.load(sys.stdin)
    return json.loads(Path(input_path).read_text(encoding="utf-8"))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media library catalog backup CLI")
    parser.add_argument("--db", default=None, help="Catalog database (default: CATALOG_DB or data/catalog.db)")
    sub = parser.add_subparsers(dest="command", required=True)

    dump_p = sub.add_parser("dump", help="Export the catalog to JSON")
    dump_p.add_argument("-o", "--output", default="-", help="Destination file (default: stdout)")
    dump_p.add_argument("--compact", action="store_true", help="Emit compact JSON without indentation")

    load_p = sub.add_parser("load", help="Import catalog contents from JSON")
    load_p.add_argument("-i", "--input", default="-", help="Input file (default: stdin)")
    load_p.add_argument("--replace", action="store_true", help="Clear existing rows before importing")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        store = open_store(args.db or config.database_path())
        if args.command == "dump":
            payload = build_backup_payload(store)
            _write_json(args.output, payload, compact=bool(args.compact))
            print(f"Exported backup ({payload['meta'].get('counts', {})})", file=sys.stderr)
        elif args.command == "load":
            payload = _read_json(args.input)
            result = restore_from_payload(store, payload, replace=bool(args.replace))
            print(
                f"Imported backup (replaced={result['replaced']} inserted={result['inserted']})",
                file=sys.stderr,
            )
        else:
            parser.error("Unknown command")
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
