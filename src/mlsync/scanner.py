"""Rescan one watched folder into the catalog."""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from .access import FileAccess
from .change_detector import compute_content_hash
from .db import LibraryDB
from .errors import AccessDenied, FolderUnreadable, HashComputationFailed, MetadataExtractionFailed, ScanCancelled
from .formats import DEFAULT_EXTENSIONS, normalize_extensions
from .metadata import MetadataReader
from .models import Folder, ScanResult, Track, TrackMetadata


def _batch_size_for(total: int, configured: Optional[int]) -> int:
    if configured:
        return max(1, configured)
    return 100 if total > 1000 else 50


def _chunked(items: List[Tuple[Path, int, int]], size: int) -> Iterable[List[Tuple[Path, int, int]]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class LibraryScanner:
    def __init__(
        self,
        db: LibraryDB,
        access: Optional[FileAccess] = None,
        reader: Optional[MetadataReader] = None,
        *,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        metadata_workers: int = 4,
        batch_size: Optional[int] = None,
    ) -> None:
        self.db = db
        self.access = access or FileAccess()
        self.reader = reader or MetadataReader()
        self.suffixes = normalize_extensions(extensions)
        self.metadata_workers = max(1, metadata_workers)
        self.batch_size = batch_size

    def _check_access(self, folder: Folder) -> None:
        if self.access.is_access_valid(folder):
            return
        logger.info(f"Access for {folder.name} is not valid, refreshing")
        if not self.access.refresh_access(folder):
            raise AccessDenied(f"Access to folder '{folder.name}' was denied", details={"path": folder.path})
        if folder.access_token is not None:
            self.db.update_folder_access_token(folder.id, folder.access_token)

    def _read_metadata(self, path: Path) -> Tuple[TrackMetadata, bool]:
        try:
            return self.reader.read(path), True
        except MetadataExtractionFailed as e:
            logger.warning(f"Metadata extraction failed, indexing with defaults: {e}")
            return TrackMetadata.placeholder(path), False

    def _process_batch(
        self,
        folder: Folder,
        batch: List[Tuple[Path, int, int]],
        existing: Dict[str, Track],
        result: ScanResult,
        now_ts: int,
    ) -> None:
        tracks: List[Track] = []
        with ThreadPoolExecutor(max_workers=min(self.metadata_workers, len(batch))) as executor:
            future_to_file = {executor.submit(self._read_metadata, p): (p, size, mtime_ns) for p, size, mtime_ns in batch}
            for future in as_completed(future_to_file):
                p, size, mtime_ns = future_to_file[future]
                meta, ok = future.result()
                if not ok:
                    result.files_failed += 1
                    result.failed_files.append(str(p))
                prev = existing.get(str(p))
                tracks.append(Track.from_metadata(
                    folder.id,
                    p,
                    meta,
                    file_size=size,
                    file_mtime_ns=mtime_ns,
                    track_id=prev.id if prev else None,
                ))
                if prev is None:
                    result.added += 1
                else:
                    result.updated += 1
        # Deterministic write order
        tracks.sort(key=lambda t: t.path)
        self.db.upsert_tracks(tracks, now_ts)

    def scan_folder(self, folder: Folder, stop_event: Optional[threading.Event] = None) -> ScanResult:
        """Walk the folder, upsert its tracks and record its new signature.

        Raises AccessDenied, FolderUnreadable, PersistenceFailure or
        ScanCancelled; in each case the folder's stored signature is left as
        it was so the next sync retries it.
        """
        def checkpoint() -> None:
            if stop_event is not None and stop_event.is_set():
                raise ScanCancelled(f"Scan of '{folder.name}' cancelled", details={"path": folder.path})

        self._check_access(folder)
        root = folder.root
        if not self.access.folder_exists(root):
            raise FolderUnreadable(f"Folder '{folder.name}' does not exist", details={"path": folder.path})

        now_ts = int(time.time())
        result = ScanResult(folder_id=folder.id)

        # Signature first: anything changing during the walk re-flags the folder next time
        result.mtime_ns = self.access.folder_mtime_ns(root)
        try:
            result.content_hash = compute_content_hash(self.access, root, self.suffixes)
        except HashComputationFailed as e:
            logger.warning(f"Failed to calculate hash for folder {folder.name}: {e}")

        checkpoint()
        existing = {t.path: t for t in self.db.tracks_for_folder(folder.id)}
        logger.info(f"Starting refresh for folder {folder.name} with {len(existing)} tracks")

        found: List[Tuple[Path, int, int]] = []
        seen_paths = set()
        for p in self.access.iter_audio_files(root, self.suffixes):
            canonical = p.resolve()
            key = str(canonical)
            if key in seen_paths:
                continue
            try:
                st = self.access.stat(canonical)
            except OSError as e:
                # Vanished between listing and stat; it is no longer present
                logger.debug(f"Skipping {p}: {e}")
                continue
            seen_paths.add(key)
            prev = existing.get(key)
            if prev is not None and prev.file_mtime_ns == st.st_mtime_ns and prev.file_size == st.st_size:
                result.unchanged += 1
                continue
            found.append((canonical, st.st_size, st.st_mtime_ns))

        total = len(found)
        size = _batch_size_for(total + result.unchanged, self.batch_size)
        for batch in _chunked(found, size):
            checkpoint()
            self._process_batch(folder, batch, existing, result, now_ts)
            logger.debug(f"Processing: {result.added + result.updated}/{total} files in {folder.name}")

        checkpoint()
        missing = [path for path in existing if path not in seen_paths]
        if missing:
            result.removed = self.db.delete_tracks(folder.id, missing)
            for path in missing:
                logger.info(f"Removed track that no longer exists: {Path(path).name}")

        checkpoint()
        self.db.update_folder_signature(folder.id, result.mtime_ns, result.content_hash, now_ts)
        folder.last_mtime_ns = result.mtime_ns
        folder.content_hash = result.content_hash
        folder.last_scan_ts = now_ts

        logger.info(
            f"Completed scanning folder {folder.name}: {result.added} added, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.files_failed} failed, {result.removed} removed"
        )
        return result
