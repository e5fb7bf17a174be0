"""
SQLite-based persistent state store.

Provides atomic, durable key/value storage for the sync checkpoint.
All operations are idempotent.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .models import StoredVariable

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when state store operations fail."""
    pass


class VariableStore(Protocol):
    """Key/value persistence used by the sync engine."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class StateStore:
    """
    SQLite-based persistent state store.

    Features:
    - Atomic updates with transactions
    - Connection per operation via context manager
    - Automatic schema migration

    Usage:
        store = StateStore(Path("data/sync_state.db"))

        previous = store.get("GitLabLastCommitSha")
        store.set("GitLabLastCommitSha", head.id)
    """

    SCHEMA_VERSION = 1

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS variables (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT,
            created_at TEXT
        )
    """

    CREATE_METADATA_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS _metadata (
            key TEXT PRIMARY KEY,
            value TEXT
        )
    """

    def __init__(self, database_path: Path):
        """
        Initialize state store.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)

        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

        logger.info(f"State store initialized at {self.database_path}")

    def __repr__(self) -> str:
        return f"StateStore(database_path='{self.database_path}')"

    def _initialize_database(self) -> None:
        """Create tables and run migrations."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(self.CREATE_METADATA_TABLE_SQL)

            cursor.execute("SELECT value FROM _metadata WHERE key = 'schema_version'")
            row = cursor.fetchone()
            current_version = int(row[0]) if row else 0

            if current_version < self.SCHEMA_VERSION:
                logger.info(f"Upgrading schema from v{current_version} to v{self.SCHEMA_VERSION}")
                cursor.execute(
                    "INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)",
                    ("schema_version", str(self.SCHEMA_VERSION)),
                )

            cursor.execute(self.CREATE_TABLE_SQL)

            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection in WAL mode

        Raises:
            StateStoreError: On any SQLite failure
        """
        try:
            conn = sqlite3.connect(
                self.database_path,
                timeout=30.0,
                isolation_level="DEFERRED",
            )
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open {self.database_path}: {e}") from e

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.Error as e:
            raise StateStoreError(f"State store operation failed: {e}") from e
        finally:
            conn.close()

    def get_record(self, key: str) -> Optional[StoredVariable]:
        """
        Get a stored variable with its timestamps.

        Args:
            key: Variable name

        Returns:
            StoredVariable if found, None otherwise
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT key, value, updated_at, created_at FROM variables WHERE key = ?",
                (key,),
            )

            row = cursor.fetchone()
            if row:
                return StoredVariable.from_row(row)
            return None

    def get(self, key: str) -> Optional[str]:
        """
        Get a variable's value.

        Args:
            key: Variable name

        Returns:
            The stored value, or None if never set
        """
        record = self.get_record(key)
        return record.value if record else None

    def set(self, key: str, value: str) -> None:
        """
        Create or overwrite a variable.

        The original created_at is kept on overwrite.

        Args:
            key: Variable name
            value: Value to store
        """
        now = datetime.utcnow().isoformat()

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO variables (key, value, updated_at, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now, now),
            )
            conn.commit()

        logger.debug(f"Saved variable {key}")

    def delete(self, key: str) -> bool:
        """
        Remove a variable.

        Returns:
            True if a record was deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM variables WHERE key = ?", (key,))
            conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted variable {key}")

        return deleted

    def keys(self) -> list[str]:
        """Return all stored variable names, sorted."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT key FROM variables ORDER BY key")
            return [row[0] for row in cursor.fetchall()]

    def clear(self) -> None:
        """
        Clear all stored variables.

        WARNING: This is destructive. Use only for testing or reset.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM variables")
            conn.commit()

        logger.warning("All stored variables cleared")
