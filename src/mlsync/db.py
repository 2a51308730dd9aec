import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from loguru import logger

from .errors import PersistenceFailure
from .models import DuplicateFlags, Folder, Track


SCHEMA_VERSION = 2

_TRACK_COLUMNS = (
    "id, folder_id, path, filename, title, artist, album, genre, year, duration, "
    "format, bitrate, file_size, file_mtime_ns, is_duplicate, primary_track_id, duplicate_group_id"
)


def _folder_from_row(row: sqlite3.Row) -> Folder:
    return Folder(
        id=row["id"],
        path=row["path"],
        name=row["name"],
        track_count=row["track_count"],
        last_mtime_ns=row["last_mtime_ns"],
        content_hash=row["content_hash"],
        access_token=row["access_token"],
        date_added=row["date_added"] or 0,
        last_scan_ts=row["last_scan_ts"],
    )


def _track_from_row(row: sqlite3.Row) -> Track:
    return Track(
        id=row["id"],
        folder_id=row["folder_id"],
        path=row["path"],
        filename=row["filename"],
        title=row["title"] or "",
        artist=row["artist"] or "",
        album=row["album"] or "",
        genre=row["genre"] or "",
        year=row["year"] or "",
        duration=row["duration"] or 0.0,
        format=row["format"] or "",
        bitrate=row["bitrate"] or 0,
        file_size=row["file_size"] or 0,
        file_mtime_ns=row["file_mtime_ns"] or 0,
        is_duplicate=bool(row["is_duplicate"]),
        primary_track_id=row["primary_track_id"],
        duplicate_group_id=row["duplicate_group_id"],
    )


class LibraryDB:
    """Folder and track catalog backed by SQLite.

    Connections are per thread. Every write goes through `transaction()`,
    which holds a process-wide lock so concurrent scans never interleave
    their writes.
    """

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = threading.local()
        self._write_lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if not hasattr(self._conn, "connection"):
            # isolation_level=None: transactions are opened explicitly by begin()
            self._conn.connection = sqlite3.connect(
                self.path, check_same_thread=False, timeout=30.0, isolation_level=None
            )
            self._conn.connection.row_factory = sqlite3.Row
            self._conn.connection.execute("PRAGMA foreign_keys = ON;")
            self._conn.connection.execute("PRAGMA journal_mode = WAL;")
            self._conn.connection.execute("PRAGMA synchronous = NORMAL;")
        return self._conn.connection

    def close(self) -> None:
        conn = getattr(self._conn, "connection", None)
        if conn is not None:
            conn.close()
            del self._conn.connection

    def ensure_schema(self):
        """Create tables and indexes, migrate older catalogs, stamp the schema version."""
        try:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    path TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    track_count INTEGER NOT NULL DEFAULT 0,
                    last_mtime_ns INTEGER,
                    content_hash TEXT,
                    access_token BLOB,
                    date_added INTEGER,
                    last_scan_ts INTEGER
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS tracks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    folder_id INTEGER NOT NULL REFERENCES folders(id) ON DELETE CASCADE,
                    path TEXT NOT NULL UNIQUE,
                    filename TEXT NOT NULL,
                    title TEXT,
                    artist TEXT,
                    album TEXT,
                    genre TEXT,
                    year TEXT,
                    duration REAL,
                    format TEXT,
                    bitrate INTEGER,
                    file_size INTEGER,
                    file_mtime_ns INTEGER,
                    is_duplicate INTEGER NOT NULL DEFAULT 0 CHECK (is_duplicate IN (0,1)),
                    primary_track_id INTEGER,
                    duplicate_group_id TEXT,
                    first_seen_ts INTEGER,
                    last_seen_ts INTEGER
                )
            """)

            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_folder ON tracks(folder_id);")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_dup_group ON tracks(duplicate_group_id);")

            # Schema migrations for existing databases
            cursor = self.conn.cursor()
            cursor.execute("PRAGMA table_info(folders)")
            columns = [col[1] for col in cursor.fetchall()]
            if "last_scan_ts" not in columns:
                self.conn.execute("ALTER TABLE folders ADD COLUMN last_scan_ts INTEGER;")
                logger.info("DB migration: Added last_scan_ts column to folders table")
            self.conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', ?)", (str(SCHEMA_VERSION),)
            )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to initialise schema: {e}", details={"db": str(self.path)}) from e

    def begin(self):
        self.conn.execute("BEGIN IMMEDIATE;")

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; sqlite errors surface as PersistenceFailure."""
        with self._write_lock:
            try:
                self.begin()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Failed to open transaction: {e}") from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self.rollback()
                raise PersistenceFailure(f"Database write failed: {e}") from e
            except BaseException:
                self.rollback()
                raise
            else:
                try:
                    self.commit()
                except sqlite3.Error as e:
                    self.rollback()
                    raise PersistenceFailure(f"Commit failed: {e}") from e

    def _query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Database read failed: {e}") from e

    # Folders

    def upsert_folder(
        self,
        path: str,
        name: str,
        *,
        access_token: Optional[bytes] = None,
        mtime_ns: Optional[int] = None,
        content_hash: Optional[str] = None,
    ) -> Tuple[Folder, Optional[str], Optional[int]]:
        """Insert a folder or refresh its access token.

        Returns (folder, previous_hash, previous_mtime_ns); the previous values
        are None for a new folder. An existing folder keeps its signature.
        """
        now_ts = int(time.time())
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM folders WHERE path = ?", (path,)).fetchone()
            if row is not None:
                if access_token is not None:
                    conn.execute("UPDATE folders SET access_token = ? WHERE id = ?", (access_token, row["id"]))
                prev_hash, prev_mtime = row["content_hash"], row["last_mtime_ns"]
                folder_id = row["id"]
                logger.info(f"Folder already exists: {name} with ID: {folder_id}")
            else:
                cur = conn.execute(
                    """INSERT INTO folders (path, name, track_count, last_mtime_ns, content_hash, access_token, date_added)
                       VALUES (?, ?, 0, ?, ?, ?, ?)""",
                    (path, name, mtime_ns, content_hash, access_token, now_ts),
                )
                prev_hash, prev_mtime = None, None
                folder_id = cur.lastrowid
                logger.info(f"Added new folder: {name} with ID: {folder_id}")
            folder = _folder_from_row(conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone())
        return folder, prev_hash, prev_mtime

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        rows = self._query("SELECT * FROM folders WHERE id = ?", (folder_id,))
        return _folder_from_row(rows[0]) if rows else None

    def get_folder_by_path(self, path: str) -> Optional[Folder]:
        rows = self._query("SELECT * FROM folders WHERE path = ?", (path,))
        return _folder_from_row(rows[0]) if rows else None

    def list_folders(self) -> List[Folder]:
        return [_folder_from_row(r) for r in self._query("SELECT * FROM folders ORDER BY name, id")]

    def remove_folder(self, folder_id: int) -> int:
        """Delete a folder; its tracks go with it. Returns the number of tracks removed."""
        with self.transaction() as conn:
            count = conn.execute("SELECT COUNT(*) FROM tracks WHERE folder_id = ?", (folder_id,)).fetchone()[0]
            conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        return count

    def update_folder_signature(
        self, folder_id: int, mtime_ns: Optional[int], content_hash: Optional[str], scan_ts: int
    ) -> None:
        """Record the signature of a successful scan."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE folders SET last_mtime_ns = ?, content_hash = ?, last_scan_ts = ? WHERE id = ?",
                (mtime_ns, content_hash, scan_ts, folder_id),
            )

    def update_folder_access_token(self, folder_id: int, access_token: Optional[bytes]) -> None:
        with self.transaction() as conn:
            conn.execute("UPDATE folders SET access_token = ? WHERE id = ?", (access_token, folder_id))

    def count_tracks_for_folder(self, folder_id: int) -> int:
        return self._query("SELECT COUNT(*) FROM tracks WHERE folder_id = ?", (folder_id,))[0][0]

    @staticmethod
    def _refresh_track_count(conn: sqlite3.Connection, folder_id: int) -> None:
        conn.execute(
            "UPDATE folders SET track_count = (SELECT COUNT(*) FROM tracks WHERE folder_id = ?) WHERE id = ?",
            (folder_id, folder_id),
        )

    # Tracks

    def tracks_for_folder(self, folder_id: int) -> List[Track]:
        rows = self._query(f"SELECT {_TRACK_COLUMNS} FROM tracks WHERE folder_id = ?", (folder_id,))
        return [_track_from_row(r) for r in rows]

    def list_all_tracks(self) -> List[Track]:
        rows = self._query(f"SELECT {_TRACK_COLUMNS} FROM tracks ORDER BY id")
        return [_track_from_row(r) for r in rows]

    def get_track_by_path(self, path: str) -> Optional[Track]:
        rows = self._query(f"SELECT {_TRACK_COLUMNS} FROM tracks WHERE path = ?", (path,))
        return _track_from_row(rows[0]) if rows else None

    def upsert_tracks(self, tracks: Iterable[Track], seen_ts: int) -> None:
        """Upsert a batch of tracks keyed by path.

        Duplicate-tracking columns are left alone on update; only the
        duplicate pass writes them.
        """
        batch = list(tracks)
        if not batch:
            return
        with self.transaction() as conn:
            # A path moving between overlapping folders changes the old owner's count too
            touched = {t.folder_id for t in batch}
            for t in batch:
                row = conn.execute("SELECT folder_id FROM tracks WHERE path = ?", (t.path,)).fetchone()
                if row is not None:
                    touched.add(row["folder_id"])
            conn.executemany(
                """INSERT INTO tracks (folder_id, path, filename, title, artist, album, genre, year, duration,
                                       format, bitrate, file_size, file_mtime_ns, first_seen_ts, last_seen_ts)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(path) DO UPDATE SET
                       folder_id = excluded.folder_id,
                       filename = excluded.filename,
                       title = excluded.title,
                       artist = excluded.artist,
                       album = excluded.album,
                       genre = excluded.genre,
                       year = excluded.year,
                       duration = excluded.duration,
                       format = excluded.format,
                       bitrate = excluded.bitrate,
                       file_size = excluded.file_size,
                       file_mtime_ns = excluded.file_mtime_ns,
                       last_seen_ts = excluded.last_seen_ts;""",
                [
                    (
                        t.folder_id,
                        t.path,
                        t.filename,
                        t.title,
                        t.artist,
                        t.album,
                        t.genre,
                        t.year,
                        t.duration,
                        t.format,
                        t.bitrate,
                        t.file_size,
                        t.file_mtime_ns,
                        seen_ts,
                        seen_ts,
                    )
                    for t in batch
                ],
            )
            for folder_id in touched:
                self._refresh_track_count(conn, folder_id)

    def delete_tracks(self, folder_id: int, paths: Iterable[str]) -> int:
        """Delete tracks of a folder by path. Returns the number deleted."""
        doomed = list(paths)
        if not doomed:
            return 0
        with self.transaction() as conn:
            deleted = 0
            for p in doomed:
                cur = conn.execute("DELETE FROM tracks WHERE folder_id = ? AND path = ?", (folder_id, p))
                deleted += cur.rowcount
            self._refresh_track_count(conn, folder_id)
        return deleted

    def apply_duplicate_flags(self, flags: Dict[int, DuplicateFlags]) -> None:
        """Write duplicate flags for many tracks atomically (all or nothing)."""
        if not flags:
            return
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE tracks SET is_duplicate = ?, primary_track_id = ?, duplicate_group_id = ? WHERE id = ?",
                [
                    (1 if f.is_duplicate else 0, f.primary_track_id, f.duplicate_group_id, track_id)
                    for track_id, f in sorted(flags.items())
                ],
            )
