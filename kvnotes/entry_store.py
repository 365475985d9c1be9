"""
Entry store using SQLite.

The entry store is the source of truth for one namespace:
- Keys and values
- Tags (JSON array)
- Created / updated / expiry timestamps

Every write runs in its own IMMEDIATE transaction, so readers never see
a partially written row and a bulk replace is all-or-nothing. The
in-memory cache is filled from here and never the other way round.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from .errors import NotFoundError, SchemaError, StorageError, StorageOpenError
from .types import Entry, format_timestamp, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
DEFAULT_BUSY_TIMEOUT_MS = 3000
DEFAULT_SWEEP_GRACE = timedelta(hours=1)

_SELECT_ALL = """
    SELECT key, value, tags, created_at, updated_at, expires_at
    FROM kv
    ORDER BY key ASC
"""

_UPSERT = """
    INSERT INTO kv (key, value, tags, created_at, updated_at, expires_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(key)
    DO UPDATE SET value = excluded.value,
                  tags = excluded.tags,
                  updated_at = excluded.updated_at,
                  expires_at = excluded.expires_at
"""


class EntryStore:
    """
    SQLite-backed store for the entries of one namespace.

    Errors from the database surface as StorageError; a file that cannot
    be opened, or that carries a schema this version does not understand,
    raises StorageOpenError / SchemaError from the constructor.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        sweep_grace: timedelta = DEFAULT_SWEEP_GRACE,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a transaction waits for a lock
            sweep_grace: How far past expiry a row must be before a sweep
                removes it
        """
        self._db_path = Path(db_path)
        self._busy_timeout_ms = busy_timeout_ms
        self._sweep_grace = sweep_grace
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    @classmethod
    def connect(cls, db_path: Union[str, Path], **kwargs) -> "EntryStore":
        """Open or create the database at ``db_path``."""
        return cls(db_path, **kwargs)

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def sweep_grace(self) -> timedelta:
        return self._sweep_grace

    # -------------------------------------------------------------------------
    # Schema lifecycle
    # -------------------------------------------------------------------------

    def _init_db(self) -> None:
        """Open the connection and make sure the schema is current."""
        parent = self._db_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageOpenError(self._db_path, f"cannot create directory '{parent}': {e}") from e

        try:
            # isolation_level=None gives us manual transaction control
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False, isolation_level=None,
            )
            self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            self._initialize_schema()
        except sqlite3.Error as e:
            self.close()
            raise StorageOpenError(self._db_path, str(e)) from e
        except StorageOpenError:
            self.close()
            raise
        logger.info("database connection open: %s", self._db_path)

    def _initialize_schema(self) -> None:
        conn = self._conn
        user_version = conn.execute("PRAGMA user_version").fetchone()[0]
        logger.debug("database user_version=%d", user_version)

        # Version checks come before anything that writes to the file
        if user_version == 0:
            table_exists = conn.execute(
                "SELECT COUNT(1) FROM sqlite_master WHERE type = 'table' AND name = 'kv'"
            ).fetchone()[0]
            if table_exists:
                raise SchemaError(
                    self._db_path,
                    "unsupported legacy database detected; "
                    "delete the database file to recreate it",
                )
        elif user_version != SCHEMA_VERSION:
            raise SchemaError(
                self._db_path,
                f"unsupported database schema version {user_version}; "
                "delete the database file to recreate it",
            )

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        if user_version == 0:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("""
                    CREATE TABLE kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        tags TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        expires_at TEXT
                    )
                """)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            logger.info("initialized kv schema (user_version=%d)", SCHEMA_VERSION)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(f"database '{self._db_path}' is closed")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body inside BEGIN IMMEDIATE ... COMMIT, rolling back on error."""
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"database error: {e}") from e

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def load_all(self) -> list[tuple[str, Entry]]:
        """
        Load every entry, ordered by key.

        Used to prime the long-lived cache and to build per-request
        snapshots for the HTTP gateway.
        """
        try:
            rows = self._connection().execute(_SELECT_ALL).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"database error: {e}") from e

        entries = []
        for key, value, tags, created_at, updated_at, expires_at in rows:
            try:
                entry = Entry.from_persisted(value, tags, created_at, updated_at, expires_at)
            except StorageError as e:
                raise StorageError(f"corrupt row for key '{key}': {e}") from e
            entries.append((key, entry))

        logger.info("loaded %d entries from sqlite", len(entries))
        return entries

    def count(self) -> int:
        try:
            return self._connection().execute("SELECT COUNT(*) FROM kv").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"database error: {e}") from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _execute_upsert(conn: sqlite3.Connection, key: str, entry: Entry) -> None:
        conn.execute(_UPSERT, (
            key,
            entry.value,
            entry.tags_json(),
            format_timestamp(entry.created_at),
            format_timestamp(entry.updated_at),
            format_timestamp(entry.expires_at) if entry.expires_at else None,
        ))

    def upsert(self, key: str, entry: Entry) -> None:
        """
        Insert or update one entry.

        On conflict, value, tags, updated_at and expires_at are overwritten;
        the stored created_at is left alone.
        """
        with self._transaction() as conn:
            self._execute_upsert(conn, key, entry)
        logger.info("stored key=%s updated_at=%s", key, format_timestamp(entry.updated_at))

    def delete(self, key: str) -> None:
        """
        Delete one entry.

        Raises:
            NotFoundError: If no row has this key
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            if cursor.rowcount == 0:
                raise NotFoundError(key)
        logger.info("deleted key=%s", key)

    def replace_all(self, entries: Iterable[tuple[str, Entry]]) -> None:
        """Replace the whole table with ``entries`` in one transaction."""
        entries = list(entries)
        with self._transaction() as conn:
            conn.execute("DELETE FROM kv")
            for key, entry in entries:
                self._execute_upsert(conn, key, entry)
        logger.info("replaced all entries (count=%d)", len(entries))

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete rows whose expiry is at or before ``now`` minus the grace window.

        Returns:
            Number of rows deleted
        """
        threshold = format_timestamp((now or utc_now()) - self._sweep_grace)
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (threshold,),
            )
            deleted = cursor.rowcount
        if deleted > 0:
            logger.info("cleaned %d ttl-expired entries", deleted)
        return deleted

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
