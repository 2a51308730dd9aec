"""
Exception classes for mlsync.

Exception Hierarchy:
    SyncError (base)
        AccessDenied - folder access grant invalid or expired
        FolderUnreadable - folder missing or its contents cannot be listed
        MetadataExtractionFailed - one file's tags could not be read (non-fatal)
        HashComputationFailed - content hash could not be computed
        PersistenceFailure - database read/write error
        ScanCancelled - scan stopped at a cancellation checkpoint
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """
    Base exception for all mlsync errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (folder path, file, ...).
        code: Short stable name used in session summaries.
    """

    code = "sync_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class AccessDenied(SyncError):
    """Raised when a folder's access grant is invalid and could not be refreshed."""

    code = "access_denied"


class FolderUnreadable(SyncError):
    """Raised when a folder does not exist or listing its contents fails."""

    code = "folder_unreadable"


class MetadataExtractionFailed(SyncError):
    """
    Raised by a metadata reader for a single file.

    Never fatal for a scan: the scanner indexes the file with placeholder
    metadata and moves on.
    """

    code = "metadata_extraction_failed"


class HashComputationFailed(SyncError):
    """Raised when a folder's content hash cannot be computed (treated as "needs rescan")."""

    code = "hash_computation_failed"


class PersistenceFailure(SyncError):
    """
    Raised when the library database rejects a read or write.

    Fatal for the folder being scanned, or for the whole duplicate pass
    (which is rolled back).
    """

    code = "persistence_failure"


class ScanCancelled(SyncError):
    """Raised inside a scan when the session's stop event is set."""

    code = "cancelled"
