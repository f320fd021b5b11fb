"""
Durable local storage for sync snapshots using DuckDB.

This module provides the string-keyed get/set/remove store the sync manager
uses to persist its cache and queue snapshots across restarts.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

import duckdb

from .sync.interfaces import LocalStorage

logger = logging.getLogger(__name__)


class DuckDBLocalStorage(LocalStorage):
    """
    Key-value store in a single DuckDB table.

    Handles the connection lifecycle and schema creation. Use it as a
    context manager, or call :meth:`open` and :meth:`close` explicitly.
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize storage.

        Args:
            db_path: Path to the DuckDB database file (":memory:" for a transient store)
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> 'DuckDBLocalStorage':
        """
        Context manager entry: open database connection and create schema.

        Returns:
            Self for use in with statement

        Raises:
            Exception: If database connection or schema creation fails
        """
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.close()
        except Exception as e:
            logger.warning(f"Error while closing database connection: {e}", exc_info=True)

    def open(self) -> None:
        if self.conn is not None:
            return
        try:
            self.conn = duckdb.connect(str(self.db_path))
            logger.info(f"Connected to local storage at {self.db_path}")
            self._create_schema()
        except Exception as e:
            logger.error(f"Failed to initialize local storage at {self.db_path}: {e}", exc_info=True)
            raise

    def _create_schema(self) -> None:
        """
        Create the kv_store table if it doesn't exist.

        Raises:
            RuntimeError: If database connection is not established
        """
        if self.conn is None:
            raise RuntimeError("Database connection not established")

        try:
            create_table_sql = """
            CREATE TABLE IF NOT EXISTS kv_store (
                key VARCHAR NOT NULL PRIMARY KEY,
                value VARCHAR NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
            """
            self.conn.execute(create_table_sql)
            logger.debug("Local storage schema created or verified")
        except Exception as e:
            logger.error(f"Failed to create local storage schema: {e}", exc_info=True)
            raise

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Database connection not established")
        return self.conn

    def get_item(self, key: str) -> Optional[str]:
        """
        Retrieve the value stored under ``key``.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            RuntimeError: If database connection is not established
        """
        conn = self._connection()
        result = conn.execute("SELECT value FROM kv_store WHERE key = ?", [key]).fetchone()
        if result is None:
            logger.debug(f"No stored value for key: {key}")
            return None
        return result[0]

    def set_item(self, key: str, value: str) -> None:
        """
        Insert or replace the value stored under ``key``.

        Raises:
            RuntimeError: If database connection is not established
        """
        conn = self._connection()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                [key, value, datetime.now()]
            )
            conn.commit()
            logger.debug(f"Stored {len(value)} characters under key: {key}")
        except Exception as e:
            logger.error(f"Failed to store value for key {key}: {e}", exc_info=True)
            raise

    def remove_item(self, key: str) -> None:
        conn = self._connection()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", [key])
            conn.commit()
        except Exception as e:
            logger.error(f"Failed to remove key {key}: {e}", exc_info=True)
            raise

    def list_items(self) -> List[Tuple[str, int, datetime]]:
        """
        List stored keys with the size of their value and last update time.

        Returns:
            (key, size, updated_at) tuples sorted by key
        """
        conn = self._connection()
        return [
            (row[0], row[1], row[2])
            for row in conn.execute(
                "SELECT key, length(value), updated_at FROM kv_store ORDER BY key"
            ).fetchall()
        ]

    def close(self) -> None:
        """
        Close the database connection.

        This method can be called explicitly or will be called automatically
        when using the context manager.
        """
        if self.conn is not None:
            try:
                self.conn.close()
                logger.debug("Database connection closed")
            except Exception as e:
                logger.warning(f"Error closing database connection: {e}", exc_info=True)
            finally:
                self.conn = None
