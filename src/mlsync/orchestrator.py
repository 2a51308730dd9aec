"""Orchestration for one library sync session."""

from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, Iterable, Optional

from loguru import logger

from .change_detector import FolderChangeDetector
from .db import LibraryDB
from .duplicates import DuplicateDetector
from .errors import PersistenceFailure, ScanCancelled, SyncError
from .logging import truncate
from .models import Folder, FolderOutcome, ScanResult, SyncSessionSummary
from .scanner import LibraryScanner
from .scheduler import WorkerPool


# Progress phases
PHASE_SCAN_STARTED = "scan_started"
PHASE_SCAN_FINISHED = "scan_finished"

ProgressCallback = Callable[[str, Folder, int, int], None]


class SessionAccumulator:
    """Collects per-folder outcomes from concurrent scan tasks.

    The only state scan tasks share; every access goes through the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: Dict[int, FolderOutcome] = {}

    def record_success(self, folder: Folder, scan: ScanResult) -> FolderOutcome:
        outcome = FolderOutcome(folder.id, folder.name, "success", scan=scan)
        with self._lock:
            self._outcomes[folder.id] = outcome
        return outcome

    def record_failure(self, folder: Folder, code: str, message: str) -> FolderOutcome:
        outcome = FolderOutcome(folder.id, folder.name, "failure", code=code, message=message)
        with self._lock:
            self._outcomes[folder.id] = outcome
        return outcome

    def record_cancelled(self, folder: Folder) -> FolderOutcome:
        outcome = FolderOutcome(folder.id, folder.name, "cancelled", code=ScanCancelled.code, message="cancelled")
        with self._lock:
            self._outcomes[folder.id] = outcome
        return outcome

    def snapshot(self) -> Dict[int, FolderOutcome]:
        with self._lock:
            return dict(self._outcomes)


class SyncOrchestrator:
    def __init__(
        self,
        db: LibraryDB,
        detector: FolderChangeDetector,
        scanner: LibraryScanner,
        duplicate_detector: DuplicateDetector,
        *,
        workers: int = 4,
        run_duplicate_pass: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.db = db
        self.detector = detector
        self.scanner = scanner
        self.duplicate_detector = duplicate_detector
        self.workers = max(1, workers)
        self.run_duplicate_pass = run_duplicate_pass
        self.progress_callback = progress_callback

    def _progress(self, phase: str, folder: Folder, completed: int, total: int) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(phase, folder, completed, total)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _scan_task(
        self,
        folder: Folder,
        acc: SessionAccumulator,
        total: int,
        stop_event: Optional[threading.Event],
    ) -> FolderOutcome:
        """Scan one folder; never raises, the outcome lands in the accumulator."""
        self._progress(PHASE_SCAN_STARTED, folder, 0, total)
        try:
            scan = self.scanner.scan_folder(folder, stop_event=stop_event)
        except ScanCancelled:
            logger.info(f"Scan of {folder.name} cancelled; signature left stale")
            return acc.record_cancelled(folder)
        except SyncError as e:
            logger.error(f"Failed to refresh folder {folder.name}: {e}")
            return acc.record_failure(folder, e.code, e.message)
        except Exception as e:
            logger.opt(exception=e).error(f"Unexpected error refreshing folder {folder.name}")
            return acc.record_failure(folder, "unexpected", truncate(str(e) or type(e).__name__, max_len=500))
        logger.info(f"Successfully refreshed folder {folder.name}")
        return acc.record_success(folder, scan)

    def run(
        self,
        folders: Iterable[Folder],
        *,
        stop_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> SyncSessionSummary:
        folders = list(folders)
        summary = SyncSessionSummary(run_id=run_id or str(uuid.uuid4()), started_ts=int(time.time()))
        summary.checked_folder_ids = [f.id for f in folders]

        # Step 1: dirty subset
        dirty = self.detector.dirty_folders(folders)
        summary.dirty_folder_ids = [f.id for f in dirty]

        # Step 2: nothing to do
        if not dirty:
            logger.info("No folders need refreshing")
            summary.finished_ts = int(time.time())
            return summary

        logger.info(f"Will refresh {len(dirty)} of {len(folders)} folders")

        # Steps 3-4: concurrent scans, joined by draining the pool iterator
        acc = SessionAccumulator()
        total = len(dirty)
        completed = 0
        # Folders whose scan ran (and may have committed tracks), whatever its outcome
        ran = set()
        max_pending = min(total, self.workers * 4)
        with WorkerPool(min(self.workers, total)) as pool:
            for folder, outcome in pool.imap_unordered_bounded(
                lambda f: self._scan_task(f, acc, total, stop_event),
                dirty,
                max_pending,
                stop_event=stop_event,
            ):
                completed += 1
                ran.add(folder.id)
                self._progress(PHASE_SCAN_FINISHED, folder, completed, total)

        outcomes = acc.snapshot()
        # Folders never submitted because of cancellation
        for folder in dirty:
            if folder.id not in outcomes:
                outcomes[folder.id] = FolderOutcome(
                    folder.id, folder.name, "cancelled", code=ScanCancelled.code, message="not started"
                )
        summary.per_folder = outcomes
        summary.cancelled = any(o.status == "cancelled" for o in outcomes.values())

        # Step 5: one duplicate pass over the whole catalog. A cancelled session still
        # reconciles what its scans committed, so no primary points at a deleted track.
        if not ran:
            logger.warning("Sync cancelled before any scan ran; skipping duplicate detection")
        elif self.run_duplicate_pass:
            if summary.cancelled:
                logger.warning("Sync cancelled; reconciling duplicates over committed tracks")
            else:
                logger.info("Detecting and marking duplicate tracks")
            try:
                summary.duplicates = self.duplicate_detector.run()
            except PersistenceFailure as e:
                logger.error(f"Duplicate detection failed, previous flags kept: {e}")
                summary.duplicate_error = e.message

        summary.finished_ts = int(time.time())
        if summary.has_errors:
            logger.warning("Library refresh completed with some errors")
        else:
            logger.info("Library refresh completed successfully")
        return summary
