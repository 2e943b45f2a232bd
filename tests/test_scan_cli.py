import json

import pytest

from helpers import write_video
from medialib import probe, thumbnails
from scripts import scan_folder


@pytest.fixture(autouse=True)
def no_external_tools(monkeypatch, library_env):
    monkeypatch.setattr(probe, "ffprobe_available", lambda: False)
    monkeypatch.setattr(thumbnails, "ffmpeg_available", lambda: False)


def test_cli_scan(tmp_path, capsys):
    folder = tmp_path / "in"
    write_video(folder, "alien.mp4")
    db_path = tmp_path / "cli.db"
    assert scan_folder.main(["--db", str(db_path), "scan", str(folder)]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["added_movies"] == 1
    assert scan_folder.main(["--db", str(db_path), "scan", str(folder)]) == 0
    assert json.loads(capsys.readouterr().out)["skipped_movies"] == 1


def test_cli_reports_needs_conversion(tmp_path, capsys):
    folder = tmp_path / "in"
    write_video(folder, "alien.mkv")
    assert scan_folder.main(["--db", str(tmp_path / "cli.db"), "scan", str(folder)]) == 3
    assert json.loads(capsys.readouterr().out)["needs_conversion"] is True


def test_cli_bad_folder(tmp_path, capsys):
    assert scan_folder.main(["--db", str(tmp_path / "cli.db"), "scan", str(tmp_path / "missing")]) == 2
    assert "Folder not found" in capsys.readouterr().err


def test_cli_refresh_without_key(tmp_path):
    assert scan_folder.main(["--db", str(tmp_path / "cli.db"), "refresh"]) == 2
