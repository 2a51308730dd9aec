"""Decide whether a watched folder needs rescanning.

Cheap check first (the root's mtime), then a content hash over the tree for
changes buried in subdirectories that do not bump the root's mtime. Anything
unknown resolves toward "rescan".
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, Literal, Optional

from loguru import logger

from .access import FileAccess
from .errors import HashComputationFailed, SyncError
from .formats import DEFAULT_EXTENSIONS, normalize_extensions
from .models import Folder


Reason = Literal["timestamp", "no_hash", "hash_mismatch", "hash_failed", "unchanged"]


@dataclass(frozen=True)
class ChangeCheck:
    needs_rescan: bool
    reason: Reason
    current_hash: Optional[str] = None


def compute_content_hash(access: FileAccess, root: Path, suffixes: FrozenSet[str]) -> str:
    """SHA-256 over the sorted (relative path, size, mtime_ns) listing of audio files.

    Entries that cannot be stat'ed (dangling symlinks, files removed mid-walk)
    are left out, as the scanner leaves them out of the catalog. Only a
    failure to list the tree raises HashComputationFailed.
    """
    try:
        lines = []
        for p in access.iter_audio_files(root, suffixes):
            try:
                st = access.stat(p)
            except OSError as e:
                logger.debug(f"Hash skips {p}: {e}")
                continue
            rel = p.relative_to(root).as_posix()
            lines.append(f"{rel}\t{st.st_size}\t{st.st_mtime_ns}\n")
    except (OSError, SyncError) as e:
        raise HashComputationFailed(f"Cannot hash {root}: {e}", details={"path": str(root)}) from e
    digest = hashlib.sha256()
    for line in sorted(lines):
        digest.update(line.encode("utf-8", "surrogateescape"))
    return digest.hexdigest()


class FolderChangeDetector:
    def __init__(
        self,
        access: Optional[FileAccess] = None,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        mtime_tolerance_s: float = 1.0,
    ) -> None:
        self.access = access or FileAccess()
        self.suffixes = normalize_extensions(extensions)
        self._tolerance_ns = int(mtime_tolerance_s * 1_000_000_000)

    def content_hash(self, root: Path) -> str:
        return compute_content_hash(self.access, root, self.suffixes)

    def timestamp_changed(self, folder: Folder) -> bool:
        if folder.last_mtime_ns is None:
            return True
        try:
            current = self.access.folder_mtime_ns(folder.root)
        except (OSError, SyncError) as e:
            logger.warning(f"Failed to get modification date for {folder.name}: {e}")
            return True
        diff = current - folder.last_mtime_ns
        if abs(diff) > self._tolerance_ns:
            logger.info(f"Folder timestamp changed: {folder.name} (diff: {diff / 1e9:.3f}s)")
            return True
        return False

    def check(self, folder: Folder) -> ChangeCheck:
        """Never raises."""
        try:
            if self.timestamp_changed(folder):
                logger.info(f"Folder {folder.name}: Timestamp changed, marking for refresh")
                return ChangeCheck(True, "timestamp")

            try:
                current = self.content_hash(folder.root)
            except HashComputationFailed as e:
                logger.warning(f"Folder {folder.name}: Hash calculation failed, marking for refresh ({e})")
                return ChangeCheck(True, "hash_failed")

            if folder.content_hash is None:
                logger.info(f"Folder {folder.name}: No hash stored, marking for refresh")
                return ChangeCheck(True, "no_hash", current)
            if current != folder.content_hash:
                logger.info(f"Folder {folder.name}: Content changed (hash mismatch), marking for refresh")
                return ChangeCheck(True, "hash_mismatch", current)
            logger.info(f"Folder {folder.name}: No changes detected, skipping")
            return ChangeCheck(False, "unchanged", current)
        except Exception as e:
            logger.opt(exception=e).warning(f"Folder {folder.name}: change check failed, marking for refresh")
            return ChangeCheck(True, "hash_failed")

    def dirty_folders(self, folders: Iterable[Folder]) -> list[Folder]:
        folders = list(folders)
        dirty = [f for f in folders if self.check(f).needs_rescan]
        logger.info(f"Refresh check complete: {len(dirty)}/{len(folders)} folders need refresh")
        return dirty
