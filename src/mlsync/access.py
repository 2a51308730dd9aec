"""File access provider: existence checks, tree walking and access grants.

The library core only needs to know whether a folder's access grant is valid
right now, and to ask for a refresh when it is not. `FileAccess` implements
that for plain local paths: a folder is accessible when the process can read
and traverse it. Sandboxed hosts can subclass and override the grant methods.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, FrozenSet, Iterator, Optional

from loguru import logger

from .errors import FolderUnreadable
from .formats import is_hidden
from .models import Folder


class FileAccess:
    def __init__(self, refresh_callback: Optional[Callable[[Folder], Optional[bytes]]] = None) -> None:
        # refresh_callback(folder) -> new token bytes, or None when refresh is impossible
        self._refresh_callback = refresh_callback

    def folder_exists(self, path: Path) -> bool:
        return path.is_dir()

    def folder_mtime_ns(self, path: Path) -> int:
        try:
            return path.stat().st_mtime_ns
        except OSError as e:
            raise FolderUnreadable(f"Cannot stat folder {path}: {e}", details={"path": str(path)}) from e

    def stat(self, path: Path) -> os.stat_result:
        return path.stat()

    def iter_audio_files(self, root: Path, suffixes: FrozenSet[str]) -> Iterator[Path]:
        """Yield supported audio files under root, skipping hidden files and directories.

        Any listing error raises FolderUnreadable; a partial listing would make
        the scanner delete tracks that still exist.
        """
        def _onerror(err: OSError) -> None:
            raise FolderUnreadable(
                f"Cannot list {err.filename or root}: {err.strerror or err}",
                details={"path": str(root)},
            ) from err

        for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
            dirnames[:] = sorted(d for d in dirnames if not is_hidden(d))
            for name in sorted(filenames):
                if is_hidden(name):
                    continue
                p = Path(dirpath) / name
                if p.suffix.lower() in suffixes:
                    yield p

    def is_access_valid(self, folder: Folder) -> bool:
        root = folder.root
        if not root.exists():
            # Nothing to grant; the scanner reports a missing folder as FolderUnreadable
            return True
        return os.access(root, os.R_OK | os.X_OK)

    def refresh_access(self, folder: Folder) -> bool:
        """Try to obtain a fresh grant. Returns True when the folder is accessible afterwards."""
        if self._refresh_callback is not None:
            try:
                token = self._refresh_callback(folder)
            except Exception as e:
                logger.error(f"Failed to refresh access for {folder.name}: {e}")
                return False
            if token is None:
                logger.warning(f"Access refresh declined for {folder.name}")
                return False
            folder.access_token = token
            logger.info(f"Successfully refreshed access for {folder.name}")
        return self.is_access_valid(folder)
