"""Tests for folder change detection (timestamp + content hash)."""

import os
from pathlib import Path

import pytest

from conftest import write_audio
from mlsync.access import FileAccess
from mlsync.change_detector import FolderChangeDetector, compute_content_hash
from mlsync.errors import FolderUnreadable, HashComputationFailed
from mlsync.formats import normalize_extensions
from mlsync.models import Folder


SUFFIXES = normalize_extensions(["mp3", "flac"])


class BrokenListing(FileAccess):
    def iter_audio_files(self, root, suffixes):
        raise FolderUnreadable(f"Cannot list {root}")


def _synced_folder(detector: FolderChangeDetector, root: Path) -> Folder:
    """A folder whose stored signature matches the tree right now."""
    return Folder(
        id=1,
        path=str(root),
        name=root.name,
        last_mtime_ns=root.stat().st_mtime_ns,
        content_hash=detector.content_hash(root),
    )


def test_hash_covers_audio_files_only(music_root):
    write_audio(music_root / "a.mp3")
    before = compute_content_hash(FileAccess(), music_root, SUFFIXES)

    (music_root / "cover.jpg").write_bytes(b"jpg")
    write_audio(music_root / ".hidden.mp3")
    write_audio(music_root / ".cache" / "b.mp3")
    assert compute_content_hash(FileAccess(), music_root, SUFFIXES) == before

    write_audio(music_root / "c.flac")
    assert compute_content_hash(FileAccess(), music_root, SUFFIXES) != before


def test_hash_is_independent_of_creation_order(tmp_path):
    one, two = tmp_path / "one", tmp_path / "two"
    for root, names in ((one, ["a.mp3", "b.mp3"]), (two, ["b.mp3", "a.mp3"])):
        for name in names:
            write_audio(root / name, mtime=1_600_000_000)
    # Relative paths are hashed, so different roots with equal trees agree
    assert compute_content_hash(FileAccess(), one, SUFFIXES) == compute_content_hash(FileAccess(), two, SUFFIXES)


def test_hash_failure_raises():
    with pytest.raises(HashComputationFailed):
        compute_content_hash(BrokenListing(), Path("/music"), SUFFIXES)


def test_dangling_symlink_is_left_out_of_hash(music_root):
    write_audio(music_root / "a.mp3")
    before = compute_content_hash(FileAccess(), music_root, SUFFIXES)
    try:
        os.symlink(music_root / "gone.mp3", music_root / "b.mp3")
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported here")

    assert compute_content_hash(FileAccess(), music_root, SUFFIXES) == before


def test_unchanged_folder_is_skipped(music_root):
    write_audio(music_root / "a.mp3")
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)

    check = detector.check(folder)
    assert not check.needs_rescan
    assert check.reason == "unchanged"


def test_timestamp_change_beyond_tolerance(music_root):
    write_audio(music_root / "a.mp3")
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)
    folder.last_mtime_ns -= 5_000_000_000

    check = detector.check(folder)
    assert check.needs_rescan
    assert check.reason == "timestamp"


def test_timestamp_within_tolerance_is_unchanged(music_root):
    write_audio(music_root / "a.mp3")
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)
    folder.last_mtime_ns -= 500_000_000

    assert detector.check(folder).reason == "unchanged"


def test_missing_timestamp_means_rescan(music_root):
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)
    folder.last_mtime_ns = None
    assert detector.check(folder).reason == "timestamp"


def test_nested_change_detected_by_hash(music_root):
    album = music_root / "Artist" / "Album"
    write_audio(album / "01.mp3")
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)
    root_mtime = music_root.stat().st_mtime_ns

    write_audio(album / "02.mp3")
    # Root mtime does not move when a nested directory changes
    assert music_root.stat().st_mtime_ns == root_mtime

    check = detector.check(folder)
    assert check.needs_rescan
    assert check.reason == "hash_mismatch"
    assert check.current_hash == detector.content_hash(music_root)


def test_no_stored_hash_means_rescan(music_root):
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)
    folder.content_hash = None
    assert detector.check(folder).reason == "no_hash"


def test_hash_failure_fails_safe_to_rescan(music_root):
    good = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(good, music_root)

    check = FolderChangeDetector(BrokenListing(), extensions=["mp3"]).check(folder)
    assert check.needs_rescan
    assert check.reason == "hash_failed"


def test_vanished_folder_is_dirty(tmp_path):
    folder = Folder(id=7, path=str(tmp_path / "gone"), name="gone", last_mtime_ns=1, content_hash="x")
    assert FolderChangeDetector().check(folder).needs_rescan


def test_dirty_folders_filters(tmp_path):
    clean_root = tmp_path / "clean"
    dirty_root = tmp_path / "dirty"
    write_audio(clean_root / "a.mp3")
    write_audio(dirty_root / "b.mp3")
    detector = FolderChangeDetector(extensions=["mp3"])
    clean = _synced_folder(detector, clean_root)
    dirty = Folder(id=2, path=str(dirty_root), name="dirty")

    assert [f.id for f in detector.dirty_folders([clean, dirty])] == [2]


@pytest.mark.skipif(os.name != "posix", reason="mtime granularity differs")
def test_touching_existing_file_changes_hash(music_root):
    track = write_audio(music_root / "Album" / "a.mp3", mtime=1_600_000_000)
    detector = FolderChangeDetector(extensions=["mp3"])
    folder = _synced_folder(detector, music_root)

    os.utime(track, (1_700_000_000, 1_700_000_000))
    assert detector.check(folder).reason == "hash_mismatch"
