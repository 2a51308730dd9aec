"""Top-level entry point for library synchronization.

`LibrarySyncController` wires the collaborators together from settings,
owns the folder-track-count cache, and reports one summary per sync.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from .access import FileAccess
from .change_detector import FolderChangeDetector
from .config import SyncSettings
from .db import LibraryDB
from .duplicates import DuplicateDetector
from .errors import FolderUnreadable
from .logging import bind_run, log_event
from .metadata import MetadataReader
from .models import DuplicateResult, Folder, SyncSessionSummary
from .orchestrator import ProgressCallback, SyncOrchestrator
from .scanner import LibraryScanner


SummaryListener = Callable[[SyncSessionSummary], None]


class FolderTrackCountCache:
    """Per-folder track counts, invalidated explicitly by the controller."""

    def __init__(self, db: LibraryDB) -> None:
        self._db = db
        self._lock = threading.Lock()
        self._counts: Dict[int, int] = {}

    def get(self, folder_id: int) -> int:
        with self._lock:
            cached = self._counts.get(folder_id)
        if cached is not None:
            return cached
        count = self._db.count_tracks_for_folder(folder_id)
        with self._lock:
            self._counts[folder_id] = count
        return count

    def invalidate(self, folder_id: Optional[int] = None) -> None:
        with self._lock:
            if folder_id is None:
                self._counts.clear()
            else:
                self._counts.pop(folder_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)


class LibrarySyncController:
    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        db: Optional[LibraryDB] = None,
        access: Optional[FileAccess] = None,
        reader: Optional[MetadataReader] = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.db = db or LibraryDB(self.settings.resolved_db_path)
        self.db.ensure_schema()
        self.access = access or FileAccess()
        self.reader = reader or MetadataReader()

        self.detector = FolderChangeDetector(
            self.access,
            self.settings.supported_extensions,
            mtime_tolerance_s=self.settings.mtime_tolerance_s,
        )
        self.scanner = LibraryScanner(
            self.db,
            self.access,
            self.reader,
            extensions=self.settings.supported_extensions,
            metadata_workers=self.settings.metadata_workers,
            batch_size=self.settings.batch_size,
        )
        self.duplicate_detector = DuplicateDetector(self.db)
        self.track_counts = FolderTrackCountCache(self.db)
        self._listeners: List[SummaryListener] = []
        # One sync session at a time
        self._sync_lock = threading.Lock()

    def add_listener(self, listener: SummaryListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SummaryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _broadcast(self, summary: SyncSessionSummary) -> None:
        for listener in list(self._listeners):
            try:
                listener(summary)
            except Exception as e:
                logger.warning(f"Sync listener failed: {e}")

    def folders(self) -> List[Folder]:
        return self.db.list_folders()

    def track_count(self, folder_id: int) -> int:
        return self.track_counts.get(folder_id)

    def _select_folders(self, folder_ids: Optional[Iterable[int]]) -> List[Folder]:
        all_folders = self.db.list_folders()
        if folder_ids is None:
            return all_folders
        wanted = set(folder_ids)
        selected = [f for f in all_folders if f.id in wanted]
        unknown = wanted - {f.id for f in selected}
        if unknown:
            logger.warning(f"Ignoring unknown folder ids: {sorted(unknown)}")
        return selected

    def sync(
        self,
        folder_ids: Optional[Iterable[int]] = None,
        *,
        stop_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SyncSessionSummary:
        """Run one sync session over all watched folders, or the given subset."""
        with self._sync_lock:
            self.track_counts.invalidate()
            folders = self._select_folders(folder_ids)
            run_id = bind_run()
            logger.info(f"Refreshing library: {len(folders)} folder(s)")

            orchestrator = SyncOrchestrator(
                self.db,
                self.detector,
                self.scanner,
                self.duplicate_detector,
                workers=self.settings.effective_workers,
                run_duplicate_pass=self.settings.duplicate_detection,
                progress_callback=progress_callback,
            )
            summary = orchestrator.run(folders, stop_event=stop_event, run_id=run_id)
            # Counts may have changed while scanning
            self.track_counts.invalidate()

        log_event(
            "sync_complete",
            msg=summary.user_message(),
            level="WARNING" if summary.has_errors else "INFO",
            run_id=summary.run_id,
            dirty=len(summary.dirty_folder_ids),
            succeeded=len(summary.succeeded),
            failed=len(summary.failed),
            duplicates_found=summary.duplicates_found,
            tracks_marked_duplicate=summary.tracks_marked_duplicate,
            duplicate_error=summary.duplicate_error,
            cancelled=summary.cancelled or None,
        )
        self._broadcast(summary)
        return summary

    def add_folder(
        self,
        path: str | Path,
        *,
        access_token: Optional[bytes] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> tuple[Folder, SyncSessionSummary]:
        """Start watching a folder and scan it right away."""
        root = Path(path).expanduser().resolve()
        if not self.access.folder_exists(root):
            raise FolderUnreadable(f"Not a directory: {root}", details={"path": str(root)})
        # No signature yet: the first sync always scans it
        folder, _, _ = self.db.upsert_folder(str(root), root.name or str(root), access_token=access_token)
        summary = self.sync([folder.id], stop_event=stop_event)
        return self.db.get_folder(folder.id) or folder, summary

    def remove_folder(self, folder_id: int) -> Optional[DuplicateResult]:
        """Stop watching a folder and drop its tracks.

        The duplicate pass runs afterwards so groups that lost members are
        re-ranked or cleared.
        """
        folder = self.db.get_folder(folder_id)
        if folder is None:
            logger.warning(f"No folder with id {folder_id}")
            return None
        with self._sync_lock:
            removed = self.db.remove_folder(folder_id)
            self.track_counts.invalidate()
            logger.info(f"Removed folder '{folder.name}' and {removed} tracks")
            if not self.settings.duplicate_detection:
                return None
            return self.duplicate_detector.run()

    def cleanup_missing_folders(self) -> List[Folder]:
        """Remove watched folders whose directory no longer exists."""
        missing = [f for f in self.db.list_folders() if not self.access.folder_exists(f.root)]
        if missing:
            logger.info(f"Cleaning up {len(missing)} missing folders")
        for folder in missing:
            self.remove_folder(folder.id)
        return missing

    def find_duplicates(self) -> DuplicateResult:
        """Explicit duplicate pass, independent of any scan."""
        with self._sync_lock:
            return self.duplicate_detector.run()

    def watch(
        self,
        stop_event: threading.Event,
        *,
        interval_s: Optional[float] = None,
    ) -> int:
        """Sync now, then periodically until stop_event is set.

        Uses `auto_scan_interval` unless interval_s is given; with
        "only_on_launch" a single sync runs. Returns the number of sessions run.
        """
        interval = interval_s if interval_s is not None else self.settings.auto_scan_seconds
        sessions = 0
        while not stop_event.is_set():
            self.sync(stop_event=stop_event)
            sessions += 1
            if interval is None:
                break
            if stop_event.wait(interval):
                break
        return sessions
