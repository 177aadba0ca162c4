"""Shared DuckDB connection for the message log, chat directory and media index.

DuckDB is embedded and every statement here is short, so the stores call it
synchronously from the event loop. A single connection is shared by all
stores of a process; ``:memory:`` databases only exist per connection, so
sharing is required for in-memory use as well.

Thread Safety:
    DuckDB connections must not be used concurrently. Statements are
    serialized with a lock because test clients and the server loop may
    touch the same connection from different threads.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

from courier.errors import TransientStoreError

logger = logging.getLogger(__name__)


class Database:
    """Thin wrapper around a single DuckDB connection.

    All ``duckdb.Error`` failures are re-raised as ``TransientStoreError`` so
    callers never see driver-specific exceptions.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        logger.info("[Database] Using DuckDB at %s", db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self._db_path)
            except duckdb.Error as exc:
                raise TransientStoreError("Message store unavailable") from exc
        return self._connection

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        """Run one statement and return its result rows."""
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params or [])
                try:
                    return cursor.fetchall()
                except duckdb.InvalidInputException:
                    # Statement produced no result set
                    return []
            except duckdb.Error as exc:
                logger.error("[Database] Statement failed: %s", exc)
                raise TransientStoreError("Message store unavailable") from exc

    def execute_script(self, *statements: str) -> None:
        for statement in statements:
            self.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run several statements atomically.

        The lock is re-entrant so ``execute`` may be called inside the block.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                conn.begin()
            except duckdb.Error as exc:
                raise TransientStoreError("Message store unavailable") from exc
            try:
                yield self
            except BaseException:
                try:
                    conn.rollback()
                except duckdb.Error:
                    logger.exception("[Database] Rollback failed")
                raise
            else:
                try:
                    conn.commit()
                except duckdb.Error as exc:
                    raise TransientStoreError("Message store unavailable") from exc

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
