"""SQLite-backed baseline store."""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .exceptions import StoreError, StoreCorruptionError
from .models import FileRecord

logger = logging.getLogger(__name__)


def _wrap(error: sqlite3.Error, action: str) -> StoreError:
    """Translate an sqlite3 error into the store's exception taxonomy."""
    if isinstance(error, sqlite3.DatabaseError) and not isinstance(error, sqlite3.OperationalError):
        if "malformed" in str(error) or "not a database" in str(error):
            return StoreCorruptionError(f"Baseline database is corrupted ({action}): {error}")
    return StoreError(f"Baseline store failed to {action}: {error}")


class BaselineStore:
    """
    Persistent mapping path -> (hash, size, mtime).

    Features:
    - One table, primary key ``path``
    - Thread-local connections in WAL mode, so readers (scan, metrics)
      run concurrently with the writer
    - At most one writer at a time
    - Every single-path mutation is one statement or one transaction
    """

    def __init__(self, db_path: Path):
        """
        Initialize the baseline store.

        Args:
            db_path: Path to the SQLite database file

        Raises:
            StoreError: If the database cannot be opened or initialized
        """
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if self._closed:
            raise StoreError("Store is closed")

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    check_same_thread=False,
                    isolation_level=None,  # Autocommit mode
                    timeout=30.0,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except sqlite3.Error as e:
                raise _wrap(e, "open database") from e
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._write_lock:
            try:
                self._get_connection().execute("""
                    CREATE TABLE IF NOT EXISTS files (
                        path TEXT PRIMARY KEY,
                        hash TEXT NOT NULL,
                        size INTEGER NOT NULL CHECK (size >= 0),
                        mtime INTEGER NOT NULL
                    )
                """)
            except sqlite3.Error as e:
                raise _wrap(e, "initialize schema") from e

    def get(self, path) -> Optional[FileRecord]:
        """
        Point lookup by path.

        Returns:
            The record, or None if the path is not tracked
        """
        try:
            row = self._get_connection().execute(
                "SELECT path, hash, size, mtime FROM files WHERE path = ?",
                (str(path),)
            ).fetchone()
        except sqlite3.Error as e:
            raise _wrap(e, f"read {path}") from e
        return FileRecord(*row) if row else None

    def get_hash(self, path) -> Optional[str]:
        record = self.get(path)
        return record.hash if record else None

    def upsert(self, record: FileRecord) -> None:
        """Insert or replace the record for ``record.path``."""
        with self._write_lock:
            try:
                self._get_connection().execute(
                    "INSERT OR REPLACE INTO files (path, hash, size, mtime) VALUES (?, ?, ?, ?)",
                    (record.path, record.hash, record.size, record.mtime)
                )
            except sqlite3.Error as e:
                raise _wrap(e, f"write {record.path}") from e

    def delete(self, path) -> bool:
        """
        Remove the record for a path.

        Returns:
            True if a record was removed
        """
        with self._write_lock:
            try:
                cursor = self._get_connection().execute(
                    "DELETE FROM files WHERE path = ?",
                    (str(path),)
                )
            except sqlite3.Error as e:
                raise _wrap(e, f"delete {path}") from e
            return cursor.rowcount > 0

    def rename(self, from_path, record: FileRecord) -> bool:
        """
        Atomically drop ``from_path`` and write ``record`` at its new path.

        Returns:
            True if ``record.path`` already had a record that was replaced
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    replaced = conn.execute(
                        "SELECT 1 FROM files WHERE path = ?", (record.path,)
                    ).fetchone() is not None
                    conn.execute("DELETE FROM files WHERE path = ?", (str(from_path),))
                    conn.execute(
                        "INSERT OR REPLACE INTO files (path, hash, size, mtime) VALUES (?, ?, ?, ?)",
                        (record.path, record.hash, record.size, record.mtime)
                    )
                    conn.execute("COMMIT")
                    return replaced
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise _wrap(e, f"rename {from_path} -> {record.path}") from e

    def replace_all(self, records: Iterable[FileRecord]) -> int:
        """
        Atomically replace the whole table.

        Used to build a fresh baseline; readers see either the old or the
        new table, never a mix.

        Returns:
            Number of records written
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute("DELETE FROM files")
                    count = 0
                    for record in records:
                        conn.execute(
                            "INSERT OR REPLACE INTO files (path, hash, size, mtime) VALUES (?, ?, ?, ?)",
                            (record.path, record.hash, record.size, record.mtime)
                        )
                        count += 1
                    conn.execute("COMMIT")
                    return count
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise _wrap(e, "replace baseline") from e

    def scan(self, prefix: Optional[Path] = None) -> Iterator[FileRecord]:
        """
        Lazily iterate over records, ordered by path.

        Each call starts a fresh pass. With ``prefix`` only records inside
        that directory are returned.
        """
        conn = self._get_connection()
        try:
            if prefix is None:
                cursor = conn.execute("SELECT path, hash, size, mtime FROM files ORDER BY path")
            else:
                scope = str(prefix).rstrip("/") + "/"
                cursor = conn.execute(
                    "SELECT path, hash, size, mtime FROM files "
                    "WHERE substr(path, 1, ?) = ? ORDER BY path",
                    (len(scope), scope)
                )
            for row in cursor:
                yield FileRecord(*row)
        except sqlite3.Error as e:
            raise _wrap(e, "scan baseline") from e

    def count(self) -> int:
        """Number of tracked files."""
        try:
            return self._get_connection().execute("SELECT COUNT(*) FROM files").fetchone()[0]
        except sqlite3.Error as e:
            raise _wrap(e, "count records") from e

    def close(self) -> None:
        """Close the store and release all connections."""
        if self._closed:
            return

        self._closed = True

        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing baseline connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
