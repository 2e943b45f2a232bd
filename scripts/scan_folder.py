#!/usr/bin/env python3
"""
CLI to scan a folder into the catalog (or convert and add files) without
running the server.

Usage:
  python scripts/scan_folder.py scan /path/to/movies \
    [--skip-incompatible] [--skip-format-check]
  python scripts/scan_folder.py convert /path/to/movies file1.mkv file2.avi \
    [--keep-originals]
  python scripts/scan_folder.py refresh [--days 30] [--limit 50]

Notes:
- Uses CATALOG_DB, THUMBNAILS_DIR and OMDB_API_KEY like the server does.
- Exits 2 when the folder cannot be used, 1 when any file failed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db import open_store  # noqa: E402
from medialib import config  # noqa: E402
from medialib.enrich import MetadataEnricher  # noqa: E402
from medialib.errors import ScanPathError  # noqa: E402
from medialib.models import NeedsConversion  # noqa: E402
from medialib.scanner import CatalogScanner  # noqa: E402


def build_scanner(db_path: str | None = None) -> CatalogScanner:
    store = open_store(db_path or config.database_path())
    return CatalogScanner(store, MetadataEnricher.from_env(), config.thumbnails_dir())


async def run_scan(scanner: CatalogScanner, args: argparse.Namespace) -> int:
    result = await scanner.scan(
        args.folder,
        skip_incompatible=args.skip_incompatible,
        skip_format_check=args.skip_format_check,
    )
    print(json.dumps(result.model_dump(), indent=2))
    if isinstance(result, NeedsConversion):
        print(f"[cli] {result.message}", file=sys.stderr)
        return 3
    print(f"[cli] {result.message}", file=sys.stderr)
    return 1 if result.failed_files else 0


async def run_convert(scanner: CatalogScanner, args: argparse.Namespace) -> int:
    def progress(name: str, frac: float) -> None:
        print(f"\r[cli] {name}: {frac * 100:5.1f}%", end="", file=sys.stderr, flush=True)

    result = await scanner.convert_and_add(
        args.folder,
        list(args.files),
        delete_originals=not args.keep_originals,
        on_progress=progress,
    )
    print("", file=sys.stderr)
    print(json.dumps(result.model_dump(), indent=2))
    for f in result.failed:
        print(f"[cli] ERROR: {f.file_name}: {f.error}", file=sys.stderr)
    return 1 if result.failed else 0


async def run_refresh(scanner: CatalogScanner, args: argparse.Namespace) -> int:
    if not scanner.enricher.enabled:
        print("[cli] OMDB_API_KEY is not set; nothing to refresh", file=sys.stderr)
        return 2
    result = await scanner.refresh_metadata(args.days, args.limit)
    print(json.dumps(result.model_dump(), indent=2))
    return 1 if result.errors else 0


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Scan folders into the media library without running the server")
    ap.add_argument("--db", default=None, help="Catalog database (default: CATALOG_DB or data/catalog.db)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log pipeline progress to stderr")
    sub = ap.add_subparsers(dest="command", required=True)

    scan_p = sub.add_parser("scan", help="Add new videos from a folder")
    scan_p.add_argument("folder", help="Folder to scan (not recursive)")
    scan_p.add_argument("--skip-incompatible", action="store_true", help="Add only browser-compatible files")
    scan_p.add_argument("--skip-format-check", action="store_true", help="Add every video regardless of format")

    conv_p = sub.add_parser("convert", help="Convert files to MP4 and add them")
    conv_p.add_argument("folder", help="Folder holding the files")
    conv_p.add_argument("files", nargs="+", help="File names inside the folder")
    conv_p.add_argument("--keep-originals", action="store_true", help="Do not delete source files after conversion")

    ref_p = sub.add_parser("refresh", help="Refresh stale OMDb metadata")
    ref_p.add_argument("--days", type=int, default=30, help="Staleness threshold in days")
    ref_p.add_argument("--limit", type=int, default=50, help="Maximum entries to refresh")
    return ap


def main(argv: list[str]) -> int:
    args = _build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    scanner = build_scanner(args.db)
    runners = {"scan": run_scan, "convert": run_convert, "refresh": run_refresh}
    try:
        return asyncio.run(runners[args.command](scanner, args))
    except ScanPathError as e:
        print(f"[cli] {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
