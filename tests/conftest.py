"""Shared fixtures: a real sqlite catalog in tmp_path and a tag-free reader."""

import os
from pathlib import Path
from typing import Dict, Optional, Set

import pytest
from loguru import logger

from mlsync.db import LibraryDB
from mlsync.errors import MetadataExtractionFailed
from mlsync.formats import format_from_suffix
from mlsync.metadata import MetadataReader
from mlsync.models import TrackMetadata


class FakeReader(MetadataReader):
    """Returns canned metadata by filename instead of parsing audio."""

    def __init__(self, by_name: Optional[Dict[str, TrackMetadata]] = None, fail: Optional[Set[str]] = None):
        self.by_name = dict(by_name or {})
        self.fail = set(fail or ())
        self.calls = 0

    def read(self, path: Path) -> TrackMetadata:
        self.calls += 1
        if path.name in self.fail:
            raise MetadataExtractionFailed(f"corrupt: {path.name}", details={"path": str(path)})
        if path.name in self.by_name:
            return self.by_name[path.name]
        return TrackMetadata(
            title=path.stem,
            album="Album",
            year="2020",
            duration=200.0,
            format=format_from_suffix(path),
            bitrate=320,
        )


def write_audio(path: Path, size: int = 16, mtime: Optional[float] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture(autouse=True)
def quiet_logger():
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def db(tmp_path):
    d = LibraryDB(tmp_path / "state" / "library.db")
    d.ensure_schema()
    yield d
    d.close()


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def music_root(tmp_path):
    root = tmp_path / "music"
    root.mkdir()
    return root.resolve()
