import asyncio

import pytest

from medialib.errors import DuplicateEntryError
from medialib.models import CatalogEntry


def _entry(path="/m/heat.mp4", title="Heat", **kw):
    return CatalogEntry(title=title, source_path=path, file_size=1234, format="mp4", **kw)


def test_schema_is_idempotent(store):
    store.ensure_schema()
    store.ensure_schema()
    assert store.schema_version() == 1
    assert store.count_entries() == 0


def test_insert_and_lookup(store):
    saved = store.insert_entry(_entry(cast="Al Pacino, Robert De Niro", rating=8.3))
    assert saved.id is not None
    assert saved.created_at and saved.updated_at
    got = store.get_entry(saved.id)
    assert got.title == "Heat"
    assert got.cast == "Al Pacino, Robert De Niro"
    assert got.rating == 8.3
    assert store.find_by_title("Heat").id == saved.id
    assert store.find_by_path("/m/heat.mp4").id == saved.id
    assert store.get_entry(9999) is None


def test_source_path_is_unique(store):
    store.insert_entry(_entry())
    with pytest.raises(DuplicateEntryError):
        store.insert_entry(_entry(title="Heat Again"))
    assert store.count_entries() == 1


def test_find_existing_title_or_path(store):
    store.insert_entry(_entry())
    assert store.find_existing("Heat", "/other/path.mp4") is not None
    assert store.find_existing("Other", "/m/heat.mp4") is not None
    assert store.find_existing("Other", "/other/path.mp4") is None
    # Path-only policy ignores title collisions
    assert store.find_existing("Heat", "/other/path.mp4", by_title=False) is None
    assert store.find_existing("Heat", "/m/heat.mp4", by_title=False) is not None


def test_list_and_search(store):
    for i, title in enumerate(["Zodiac", "alien", "Heat"]):
        store.insert_entry(_entry(path=f"/m/{i}.mp4", title=title))
    titles = [e.title for e in store.list_entries()]
    assert titles == ["alien", "Heat", "Zodiac"]
    assert [e.title for e in store.list_entries(limit=1, offset=1)] == ["Heat"]
    assert [e.title for e in store.list_entries(search="odi")] == ["Zodiac"]


def test_stale_listing_and_enrichment_updates(store):
    fresh = store.insert_entry(_entry(path="/m/a.mp4", title="A", last_enriched="2999-01-01T00:00:00+00:00"))
    old = store.insert_entry(_entry(path="/m/b.mp4", title="B", last_enriched="2000-01-01T00:00:00+00:00"))
    never = store.insert_entry(_entry(path="/m/c.mp4", title="C"))
    stale = store.list_stale("2020-01-01T00:00:00+00:00", limit=10)
    assert [e.id for e in stale] == [old.id, never.id]
    assert [e.id for e in store.list_stale("2020-01-01T00:00:00+00:00", limit=1)] == [old.id]

    assert store.update_enrichment(never.id, {"title": "C (Canonical)", "genre": "Drama", "file_size": 1})
    got = store.get_entry(never.id)
    assert got.title == "C (Canonical)"
    assert got.genre == "Drama"
    assert got.file_size == 1234
    assert got.last_enriched is not None

    assert store.mark_enriched(old.id)
    assert store.get_entry(old.id).last_enriched > "2000-01-01T00:00:00+00:00"
    assert store.get_entry(fresh.id).last_enriched.startswith("2999")


def test_delete_entry(store):
    saved = store.insert_entry(_entry())
    removed = store.delete_entry(saved.id)
    assert removed.title == "Heat"
    assert store.get_entry(saved.id) is None
    assert store.delete_entry(saved.id) is None


def test_record_watch_keeps_progress(store):
    saved = store.insert_entry(_entry())
    store.record_watch("viewer-1", saved.id, watch_time=42.0)
    first = store.get_watch("viewer-1", saved.id)
    assert first["watch_time"] == 42.0
    store.record_watch("viewer-1", saved.id)
    again = store.get_watch("viewer-1", saved.id)
    assert again["watch_time"] == 42.0
    assert again["last_watched"] >= first["last_watched"]
    assert store.get_watch("viewer-2", saved.id) is None


def test_scan_lock_is_per_event_loop(store):
    async def grab():
        lock = store.scan_lock()
        assert lock is store.scan_lock()
        async with lock:
            return id(lock)

    assert asyncio.run(grab())
    assert asyncio.run(grab())
