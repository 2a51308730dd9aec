"""Tests for LibrarySyncController and the CLI built on it."""

import shutil
import threading
from unittest.mock import patch

import pytest

from conftest import FakeReader, write_audio
from mlsync import cli
from mlsync.config import SyncSettings
from mlsync.controller import FolderTrackCountCache, LibrarySyncController
from mlsync.errors import FolderUnreadable
from mlsync.models import TrackMetadata


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(db_path=str(tmp_path / "state" / "library.db"), workers=2, metadata_workers=2)


@pytest.fixture
def controller(settings):
    ctl = LibrarySyncController(settings, reader=FakeReader())
    yield ctl
    ctl.db.close()


def test_add_folder_scans_it(controller, music_root):
    write_audio(music_root / "a.mp3")
    write_audio(music_root / "b.mp3")

    folder, summary = controller.add_folder(music_root)

    assert folder.path == str(music_root)
    assert folder.content_hash is not None
    assert summary.per_folder[folder.id].scan.added == 2
    assert controller.track_count(folder.id) == 2


def test_add_folder_twice_keeps_one_row(controller, music_root):
    first, _ = controller.add_folder(music_root)
    second, summary = controller.add_folder(music_root)
    assert first.id == second.id
    assert len(controller.folders()) == 1
    assert summary.is_noop


def test_add_missing_folder_fails(controller, tmp_path):
    with pytest.raises(FolderUnreadable):
        controller.add_folder(tmp_path / "nope")
    assert controller.folders() == []


def test_track_count_cache_is_invalidated_by_sync(controller, music_root):
    write_audio(music_root / "a.mp3")
    folder, _ = controller.add_folder(music_root)
    assert controller.track_count(folder.id) == 1
    assert len(controller.track_counts) == 1

    write_audio(music_root / "b.mp3")
    controller.sync()

    assert controller.track_count(folder.id) == 2


def test_sync_subset_ignores_unknown_ids(controller, tmp_path):
    one = tmp_path / "one"
    two = tmp_path / "two"
    write_audio(one / "a.mp3")
    write_audio(two / "b.mp3")
    f1, _ = controller.add_folder(one)
    f2, _ = controller.add_folder(two)
    write_audio(one / "c.mp3")
    write_audio(two / "d.mp3")

    summary = controller.sync([f1.id, 12345])

    assert summary.checked_folder_ids == [f1.id]
    assert list(summary.per_folder) == [f1.id]
    assert controller.track_count(f2.id) == 1


def test_listeners_get_every_summary(controller, music_root):
    seen = []

    def broken(summary):
        raise RuntimeError("listener bug")

    controller.add_listener(broken)
    controller.add_listener(seen.append)

    controller.add_folder(music_root)
    controller.sync()

    assert len(seen) == 2
    assert seen[1].is_noop


def test_remove_folder_clears_orphaned_duplicates(settings, tmp_path):
    meta = TrackMetadata(title="So What", album="Kind of Blue", year="1959", duration=562.0, format="MP3", bitrate=320)
    ctl = LibrarySyncController(settings, reader=FakeReader(by_name={"so_what.mp3": meta}))
    a = tmp_path / "a"
    b = tmp_path / "b"
    write_audio(a / "so_what.mp3")
    write_audio(b / "so_what.mp3", size=32)
    fa, _ = ctl.add_folder(a)
    fb, _ = ctl.add_folder(b)
    assert ctl.find_duplicates().groups_found == 1

    result = ctl.remove_folder(fb.id)

    assert result.groups_found == 0
    (left,) = ctl.db.list_all_tracks()
    assert left.folder_id == fa.id
    assert left.is_duplicate is False
    assert left.duplicate_group_id is None
    assert ctl.track_count(fb.id) == 0


def test_remove_unknown_folder_is_a_noop(controller):
    assert controller.remove_folder(999) is None


def test_cleanup_missing_folders(controller, tmp_path):
    keep = tmp_path / "keep"
    drop = tmp_path / "drop"
    write_audio(keep / "a.mp3")
    write_audio(drop / "b.mp3")
    controller.add_folder(keep)
    dropped, _ = controller.add_folder(drop)
    shutil.rmtree(drop)

    removed = controller.cleanup_missing_folders()

    assert [f.id for f in removed] == [dropped.id]
    assert [f.name for f in controller.folders()] == ["keep"]
    assert len(controller.db.list_all_tracks()) == 1


def test_find_duplicates_runs_without_a_scan(controller, music_root):
    controller.add_folder(music_root)
    with patch.object(controller.duplicate_detector, "run", wraps=controller.duplicate_detector.run) as run:
        controller.find_duplicates()
    run.assert_called_once()


def test_watch_only_on_launch_runs_once(tmp_path):
    settings = SyncSettings(db_path=str(tmp_path / "lib.db"), auto_scan_interval="only_on_launch")
    ctl = LibrarySyncController(settings, reader=FakeReader())
    assert ctl.watch(threading.Event()) == 1


def test_watch_stops_when_event_set(controller):
    stop = threading.Event()
    controller.add_listener(lambda s: stop.set())
    assert controller.watch(stop, interval_s=0.01) == 1


def test_track_count_cache_invalidate_single(db, music_root):
    folder, _, _ = db.upsert_folder(str(music_root), "music")
    cache = FolderTrackCountCache(db)
    assert cache.get(folder.id) == 0
    cache.invalidate(folder.id)
    assert len(cache) == 0


def test_cli_add_folders_sync(tmp_path, music_root, capsys):
    base = ["--config", str(tmp_path / "config.toml"), "--db", str(tmp_path / "lib.db"), "--log-level", "ERROR"]

    assert cli.main(base + ["add", str(music_root)]) == cli.EXIT_OK
    assert cli.main(base + ["folders"]) == cli.EXIT_OK
    assert str(music_root) in capsys.readouterr().out

    assert cli.main(base + ["sync", "--json"]) == cli.EXIT_OK
    assert '"dirty": []' in capsys.readouterr().out


def test_cli_sync_reports_failures(tmp_path, music_root):
    base = ["--config", str(tmp_path / "config.toml"), "--db", str(tmp_path / "lib.db"), "--log-level", "ERROR"]
    assert cli.main(base + ["add", str(music_root)]) == cli.EXIT_OK
    music_root.rmdir()
    assert cli.main(base + ["sync"]) == cli.EXIT_WITH_ERRORS


def test_cli_write_config(tmp_path):
    target = tmp_path / "config.toml"
    assert cli.main(["--config", str(target), "--workers", "3", "--write-config"]) == cli.EXIT_OK
    assert SyncSettings.load(config_path=target).workers == 3


def test_cli_without_command_is_usage_error(tmp_path):
    assert cli.main(["--config", str(tmp_path / "config.toml")]) == cli.EXIT_USAGE
