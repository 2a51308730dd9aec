"""Catalog records and per-session result types."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from .formats import format_from_suffix


UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"
UNKNOWN_GENRE = "Unknown Genre"


@dataclass
class Folder:
    """A watched root directory."""

    id: int
    path: str
    name: str
    track_count: int = 0
    last_mtime_ns: Optional[int] = None
    content_hash: Optional[str] = None
    access_token: Optional[bytes] = None
    date_added: int = 0
    last_scan_ts: Optional[int] = None

    @property
    def root(self) -> Path:
        return Path(self.path)


@dataclass
class TrackMetadata:
    title: str
    artist: str = UNKNOWN_ARTIST
    album: str = UNKNOWN_ALBUM
    genre: str = UNKNOWN_GENRE
    year: str = ""
    duration: float = 0.0
    format: str = ""
    bitrate: int = 0

    @classmethod
    def placeholder(cls, path: Path) -> "TrackMetadata":
        """Defaults used when a file's tags cannot be read."""
        return cls(title=path.stem, format=format_from_suffix(path))


@dataclass
class Track:
    """One indexed audio file."""

    id: Optional[int]
    folder_id: int
    path: str
    filename: str
    title: str
    artist: str = UNKNOWN_ARTIST
    album: str = UNKNOWN_ALBUM
    genre: str = UNKNOWN_GENRE
    year: str = ""
    duration: float = 0.0
    format: str = ""
    bitrate: int = 0
    file_size: int = 0
    file_mtime_ns: int = 0
    # Written only by the duplicate pass
    is_duplicate: bool = False
    primary_track_id: Optional[int] = None
    duplicate_group_id: Optional[str] = None

    @classmethod
    def from_metadata(
        cls,
        folder_id: int,
        path: Path,
        meta: TrackMetadata,
        *,
        file_size: int,
        file_mtime_ns: int,
        track_id: Optional[int] = None,
    ) -> "Track":
        return cls(
            id=track_id,
            folder_id=folder_id,
            path=str(path),
            filename=path.name,
            title=meta.title,
            artist=meta.artist,
            album=meta.album,
            genre=meta.genre,
            year=meta.year,
            duration=meta.duration,
            format=meta.format,
            bitrate=meta.bitrate,
            file_size=file_size,
            file_mtime_ns=file_mtime_ns,
        )


@dataclass(frozen=True)
class DuplicateFlags:
    is_duplicate: bool = False
    primary_track_id: Optional[int] = None
    duplicate_group_id: Optional[str] = None


CLEARED = DuplicateFlags()


@dataclass
class DuplicateResult:
    groups_found: int = 0
    tracks_marked_duplicate: int = 0
    tracks_updated: int = 0
    groups: Dict[str, List[int]] = field(default_factory=dict)  # group id -> track ids, primary first


@dataclass
class ScanResult:
    folder_id: int
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    files_failed: int = 0
    failed_files: List[str] = field(default_factory=list)
    mtime_ns: Optional[int] = None
    content_hash: Optional[str] = None

    @property
    def indexed(self) -> int:
        return self.added + self.updated + self.unchanged


OutcomeStatus = Literal["success", "failure", "cancelled"]


@dataclass
class FolderOutcome:
    """Result of one folder in a session, keyed by `status`."""

    folder_id: int
    folder_name: str
    status: OutcomeStatus
    scan: Optional[ScanResult] = None
    code: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"folder": self.folder_name, "status": self.status}
        if self.scan is not None:
            d.update(
                added=self.scan.added,
                updated=self.scan.updated,
                unchanged=self.scan.unchanged,
                removed=self.scan.removed,
                files_failed=self.scan.files_failed,
            )
        if self.code:
            d["code"] = self.code
            d["message"] = self.message
        return d


@dataclass
class SyncSessionSummary:
    run_id: str
    started_ts: int
    finished_ts: int = 0
    checked_folder_ids: List[int] = field(default_factory=list)
    dirty_folder_ids: List[int] = field(default_factory=list)
    per_folder: Dict[int, FolderOutcome] = field(default_factory=dict)
    duplicates: Optional[DuplicateResult] = None
    duplicate_error: Optional[str] = None
    cancelled: bool = False

    @property
    def duplicates_found(self) -> int:
        return self.duplicates.groups_found if self.duplicates else 0

    @property
    def tracks_marked_duplicate(self) -> int:
        return self.duplicates.tracks_marked_duplicate if self.duplicates else 0

    @property
    def succeeded(self) -> List[FolderOutcome]:
        return [o for o in self.per_folder.values() if o.status == "success"]

    @property
    def failed(self) -> List[FolderOutcome]:
        return [o for o in self.per_folder.values() if o.status == "failure"]

    @property
    def is_noop(self) -> bool:
        return not self.dirty_folder_ids

    @property
    def has_errors(self) -> bool:
        return bool(self.failed) or self.duplicate_error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_ts": self.started_ts,
            "finished_ts": self.finished_ts,
            "checked": len(self.checked_folder_ids),
            "dirty": list(self.dirty_folder_ids),
            "per_folder": {str(fid): o.to_dict() for fid, o in sorted(self.per_folder.items())},
            "duplicates_found": self.duplicates_found,
            "tracks_marked_duplicate": self.tracks_marked_duplicate,
            "duplicate_pass_ran": self.duplicates is not None,
            "duplicate_error": self.duplicate_error,
            "cancelled": self.cancelled,
        }

    def user_message(self) -> str:
        """One aggregated report for the whole session."""
        if self.is_noop:
            return "No folders needed refreshing"
        parts: List[str] = []
        ok = [o.folder_name for o in self.succeeded]
        if len(ok) == 1:
            parts.append(f"Folder '{ok[0]}' was refreshed for changes")
        elif 1 < len(ok) <= 3:
            parts.append(f"Folders {', '.join(ok)} were refreshed for changes")
        elif ok:
            parts.append(f"{len(ok)} folders were refreshed for changes")
        bad = [o.folder_name for o in self.failed]
        if len(bad) == 1:
            parts.append(f"Failed to refresh folder '{bad[0]}'")
        elif bad:
            parts.append(f"Failed to refresh {len(bad)} folders")
        if self.cancelled:
            parts.append("Sync was cancelled")
        if self.duplicate_error:
            parts.append("Duplicate detection failed")
        elif self.duplicates is not None and self.duplicates_found:
            parts.append(f"{self.duplicates_found} duplicate group(s) found")
        return "; ".join(parts)
