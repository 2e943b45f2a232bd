from __future__ import annotations

import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from db import open_store
from medialib.enrich import MetadataEnricher
from medialib.scanner import CatalogScanner

from helpers import fake_converter, fake_probe, fake_thumbnailer


@pytest.fixture
def library_env(tmp_path, monkeypatch):
    """Point every configurable location at a per-test tmp tree."""
    movies = tmp_path / "movies"
    movies.mkdir()
    thumbs = tmp_path / "thumbs"
    monkeypatch.setenv("MEDIA_ROOT", str(movies))
    monkeypatch.setenv("THUMBNAILS_DIR", str(thumbs))
    monkeypatch.setenv("CATALOG_DB", str(tmp_path / "data" / "catalog.db"))
    monkeypatch.setenv("MIN_VIDEO_BYTES", "1000")
    monkeypatch.setenv("ENRICH_DELAY_MS", "0")
    monkeypatch.delenv("OMDB_API_KEY", raising=False)
    monkeypatch.delenv("CATALOG_DEDUPE_BY_TITLE", raising=False)
    return tmp_path


@pytest.fixture
def store(library_env):
    return open_store(library_env / "data" / "catalog.db")


@pytest.fixture
def scanner(store, library_env):
    return CatalogScanner(
        store,
        MetadataEnricher(None, delay=0),
        library_env / "thumbs",
        min_bytes=1000,
        probe=fake_probe,
        thumbnailer=fake_thumbnailer,
        converter=fake_converter,
    )


@pytest.fixture
def app_module(library_env):
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    if "app" in sys.modules:
        module = importlib.reload(sys.modules["app"])
    else:
        module = importlib.import_module("app")
    yield module
    module.STATE.clear()


@pytest.fixture
def client(app_module, library_env):
    with TestClient(app_module.app) as test_client:
        # Swap in fakes for the external tools; the store stays the real one
        store = app_module.STATE["store"]
        app_module.STATE["scanner"] = CatalogScanner(
            store,
            app_module.STATE["enricher"],
            library_env / "thumbs",
            probe=fake_probe,
            thumbnailer=fake_thumbnailer,
            converter=fake_converter,
        )
        yield test_client
