import time

import pytest

from medialib.errors import MalformedRangeError, RangeNotSatisfiableError
from medialib.models import CatalogEntry
from medialib.streaming import iter_file_range, parse_range, video_mime


@pytest.mark.parametrize("header,expected", [
    ("bytes=0-99", (0, 99)),
    ("bytes=100-", (100, 999)),
    ("bytes=900-5000", (900, 999)),
    ("bytes=-100", (900, 999)),
    ("bytes=-5000", (0, 999)),
    ("bytes=999-999", (999, 999)),
])
def test_parse_range(header, expected):
    assert parse_range(header, 1000) == expected


@pytest.mark.parametrize("header", ["bytes=abc", "items=0-1", "bytes=5-1", "bytes=-", "bytes=0-1,5-9", "0-99"])
def test_malformed_ranges(header):
    with pytest.raises(MalformedRangeError):
        parse_range(header, 1000)


@pytest.mark.parametrize("header", ["bytes=1000-", "bytes=2000-3000", "bytes=-0"])
def test_unsatisfiable_ranges(header):
    with pytest.raises(RangeNotSatisfiableError):
        parse_range(header, 1000)


def test_video_mime_defaults_to_mp4(tmp_path):
    assert video_mime(tmp_path / "a.MKV") == "video/x-matroska"
    assert video_mime(tmp_path / "a.webm") == "video/webm"
    assert video_mime(tmp_path / "a.weird") == "video/mp4"


def test_iter_file_range_is_chunked(tmp_path):
    p = tmp_path / "f.bin"
    p.write_bytes(bytes(range(256)) * 4)
    chunks = list(iter_file_range(p, 10, 709, chunk_size=256))
    assert [len(c) for c in chunks] == [256, 256, 188]
    assert b"".join(chunks) == (bytes(range(256)) * 4)[10:710]


@pytest.fixture
def movie(app_module, client, library_env):
    path = library_env / "movies" / "film.mp4"
    payload = bytes(i % 251 for i in range(1000))
    path.write_bytes(payload)
    entry = app_module.STATE["store"].insert_entry(
        CatalogEntry(title="Film", source_path=str(path), file_size=1, format="mp4")
    )
    return entry, path, payload


def test_range_request_returns_partial_content(client, movie):
    entry, _, payload = movie
    r = client.get(f"/api/stream/{entry.id}", headers={"Range": "bytes=0-99"})
    assert r.status_code == 206
    assert r.headers["content-range"] == "bytes 0-99/1000"
    assert r.headers["content-length"] == "100"
    assert r.headers["accept-ranges"] == "bytes"
    assert r.headers["cross-origin-resource-policy"] == "cross-origin"
    assert r.content == payload[:100]


def test_full_request_uses_disk_size(client, movie):
    entry, _, payload = movie
    r = client.get(f"/api/stream/{entry.id}")
    assert r.status_code == 200
    assert r.headers["accept-ranges"] == "bytes"
    assert r.headers["content-length"] == "1000"
    assert r.headers["content-type"] == "video/mp4"
    assert r.headers["cache-control"] == "no-cache"
    assert len(r.content) == 1000
    assert r.content == payload


def test_open_ended_range(client, movie):
    entry, _, payload = movie
    r = client.get(f"/api/stream/{entry.id}", headers={"Range": "bytes=990-"})
    assert r.status_code == 206
    assert r.headers["content-range"] == "bytes 990-999/1000"
    assert r.content == payload[990:]


def test_malformed_range_is_416_not_full_body(client, movie):
    entry, _, _ = movie
    r = client.get(f"/api/stream/{entry.id}", headers={"Range": "bytes=oops"})
    assert r.status_code == 416
    assert r.headers["content-range"] == "bytes */1000"
    assert r.json()["status"] == "error"


def test_range_past_eof_is_416(client, movie):
    entry, _, _ = movie
    r = client.get(f"/api/stream/{entry.id}", headers={"Range": "bytes=5000-"})
    assert r.status_code == 416
    assert r.headers["content-range"] == "bytes */1000"


def test_missing_entry_and_missing_source_are_distinct(client, movie):
    entry, path, _ = movie
    r = client.get("/api/stream/424242")
    assert r.status_code == 404
    assert r.json()["message"].startswith("Movie not found")
    path.unlink()
    r = client.get(f"/api/stream/{entry.id}")
    assert r.status_code == 404
    assert r.json()["message"].startswith("Video file not found")


def test_viewer_progress_is_recorded(app_module, client, movie):
    entry, _, _ = movie
    r = client.get(f"/api/stream/{entry.id}", headers={"Range": "bytes=0-9", "X-Viewer-Id": "u-7"})
    assert r.status_code == 206
    store = app_module.STATE["store"]
    for _ in range(50):
        if store.get_watch("u-7", entry.id):
            break
        time.sleep(0.02)
    assert store.get_watch("u-7", entry.id) is not None


def test_watch_failure_never_reaches_client(app_module, client, movie, monkeypatch):
    entry, _, _ = movie

    def broken(*args, **kwargs):
        raise RuntimeError("db locked")

    monkeypatch.setattr(app_module.STATE["store"], "record_watch", broken)
    r = client.get(f"/api/stream/{entry.id}", headers={"X-Viewer-Id": "u-7"})
    assert r.status_code == 200
    assert len(r.content) == 1000


def test_anonymous_stream_records_nothing(app_module, client, movie):
    entry, _, _ = movie
    client.get(f"/api/stream/{entry.id}")
    assert app_module.STATE["watch"]._tasks == set()


def test_info_thumbnail_and_subtitles(app_module, client, movie, library_env):
    entry, path, _ = movie
    info = client.get(f"/api/stream/{entry.id}/info").json()["data"]
    assert info["file_size"] == 1000
    assert info["mime_type"] == "video/mp4"

    assert client.get(f"/api/stream/{entry.id}/thumbnail").status_code == 404
    thumb = library_env / "thumbs" / "t.png"
    thumb.parent.mkdir(parents=True, exist_ok=True)
    thumb.write_bytes(b"\x89PNG")
    app_module.STATE["store"].update_enrichment(entry.id, {"thumbnail": str(thumb)})
    r = client.get(f"/api/stream/{entry.id}/thumbnail")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert "max-age=86400" in r.headers["cache-control"]

    path.with_suffix(".srt").write_text("1\n00:00:01,000 --> 00:00:02,000\nHi\n")
    path.with_suffix(".vtt").write_text("WEBVTT\n")
    subs = client.get(f"/api/stream/{entry.id}/subtitles").json()["data"]
    assert [s["format"] for s in subs["subtitles"]] == ["srt", "vtt"]
    r = client.get(f"/api/stream/{entry.id}/subtitle/srt")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-subrip")
    r = client.get(f"/api/stream/{entry.id}/subtitle/vtt")
    assert r.headers["content-type"].startswith("text/vtt")
    assert client.get(f"/api/stream/{entry.id}/subtitle/ass").status_code == 404
