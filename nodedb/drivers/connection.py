"""
Database handles and the connection pool for NodeDB.

A DatabaseHandle wraps one DB-API connection opened by a SqlDriver. It
opens lazily, reopens after a fork, counts nested transactions and
translates driver exceptions into NodeDB errors.

Invariants:
    - One handle per (dialect, host, port, database) per engine
    - ``transaction_level`` > 0 means BEGIN was issued and not yet closed
    - Nested begin/commit pairs only touch the outermost transaction
    - A lost connection is retried once, and only outside a transaction
      (retrying inside one would silently drop the earlier statements)
    - Driver exceptions never escape: they become DBConnectFailed or
      DBQueryFailed chained to the original

How to change safely:
    - Keep the retry rule above; transactional retries need savepoints
    - Cursors are closed before a method returns
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from ..errors import DBConnectFailed, DBQueryFailed, InvalidArgument
from .base import Credentials, SqlDriver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseHandle:
    """Lazily connected, transaction-aware wrapper of a DB-API connection.

    Example:
        >>> handle = DatabaseHandle(SqliteDriver(), Credentials("myapp", path="/tmp/myapp.db"))
        >>> with handle.transaction():
        ...     handle.write('DELETE FROM "person" WHERE "id" = ?', ["abc"])
    """

    def __init__(self, driver: SqlDriver, credentials: Credentials, reconnect_delay: float = 1.0) -> None:
        self.driver = driver
        self.credentials = credentials
        self.reconnect_delay = reconnect_delay
        self.transaction_level = 0
        self._conn: Any = None
        self._pid: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and self._pid == os.getpid()

    @property
    def connection(self) -> Any:
        """Open DB-API connection, (re)connecting when needed."""
        if not self.connected:
            if self._conn is not None:
                logger.debug("Discarding connection inherited from parent process")
                self._conn = None
                self.transaction_level = 0
            self._connect()
        return self._conn

    def _connect(self) -> None:
        try:
            self._conn = self.driver.connect(self.credentials)
        except self.driver.errors as exc:
            raise DBConnectFailed(
                f"Cannot connect to {self.driver.name} database {self.credentials.label}: {exc}",
                database=self.credentials.database,
                driver=self.driver.name,
            ) from exc
        except OSError as exc:
            raise DBConnectFailed(
                f"Cannot connect to {self.driver.name} database {self.credentials.label}: {exc}",
                database=self.credentials.database,
                driver=self.driver.name,
            ) from exc
        self._pid = os.getpid()
        logger.info(
            f"Connected to {self.driver.name} database {self.credentials.database}",
            extra={"driver": self.driver.name, "database": self.credentials.database},
        )

    def close(self) -> None:
        if self._conn is not None and self._pid == os.getpid():
            try:
                self._conn.close()
            except self.driver.errors as exc:
                logger.warning(f"Error closing connection: {exc}", extra={"driver": self.driver.name})
        self._conn = None
        self._pid = None
        self.transaction_level = 0

    # -- execution ----------------------------------------------------------

    def _run(self, sql: str, params: Optional[list], consume: Callable[[Any], T]) -> T:
        def attempt() -> T:
            cursor = self.connection.cursor()
            try:
                if params is None:
                    cursor.execute(sql)
                else:
                    cursor.execute(sql, params)
                return consume(cursor)
            finally:
                cursor.close()

        try:
            return attempt()
        except self.driver.errors as exc:
            if self.transaction_level == 0 and self.driver.is_connection_lost(exc):
                logger.warning(
                    f"Lost connection to {self.credentials.database}, reconnecting",
                    extra={"driver": self.driver.name, "database": self.credentials.database},
                )
                self.close()
                time.sleep(self.reconnect_delay)
                try:
                    return attempt()
                except self.driver.errors as retry_exc:
                    raise DBQueryFailed(f"Query failed after reconnect: {retry_exc}", sql=sql) from retry_exc
            raise DBQueryFailed(f"Query failed: {exc}", sql=sql) from exc

    def query(self, sql: str, params: Optional[list] = None) -> list[tuple]:
        """Run a SELECT and return all rows as tuples."""
        return self._run(sql, params, lambda cursor: [tuple(row) for row in cursor.fetchall()])

    def query_dicts(self, sql: str, params: Optional[list] = None) -> list[dict[str, Any]]:
        """Run a SELECT and return all rows as column-name dicts."""

        def consume(cursor: Any) -> list[dict[str, Any]]:
            names = [column[0] for column in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]

        return self._run(sql, params, consume)

    def write(self, sql: str, params: Optional[list] = None) -> int:
        """Run a data-modifying statement and return the affected row count."""
        return self._run(sql, params, lambda cursor: cursor.rowcount)

    def insert(self, sql: str, params: Optional[list] = None) -> Any:
        """Run an INSERT and return the id of the new row."""
        return self._run(sql, params, lambda cursor: cursor.lastrowid)

    # -- transactions -------------------------------------------------------

    def begin(self) -> None:
        if self.transaction_level == 0:
            self.write(self.driver.begin_sql)
        self.transaction_level += 1

    def commit(self) -> None:
        if self.transaction_level == 0:
            raise InvalidArgument("commit() without begin()")
        self.transaction_level -= 1
        if self.transaction_level == 0:
            self.write(self.driver.commit_sql)

    def rollback(self) -> None:
        """Abort the whole transaction, however deeply nested.

        Raises:
            DBQueryFailed: If ROLLBACK itself fails
        """
        level = self.transaction_level
        self.transaction_level = 0
        if level == 0:
            return
        self.write(self.driver.rollback_sql)
        logger.info(
            f"Rolled back transaction on {self.credentials.database}",
            extra={"driver": self.driver.name, "depth": level},
        )

    @contextmanager
    def transaction(self) -> Iterator["DatabaseHandle"]:
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class ConnectionPool:
    """Shares one DatabaseHandle per database among all entities of an engine."""

    def __init__(self, reconnect_delay: float = 1.0) -> None:
        self.reconnect_delay = reconnect_delay
        self._handles: dict[tuple, DatabaseHandle] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(driver: SqlDriver, credentials: Credentials) -> tuple:
        return (
            driver.name,
            credentials.path or credentials.host,
            credentials.port,
            credentials.database,
        )

    def get(self, driver: SqlDriver, credentials: Credentials) -> DatabaseHandle:
        key = self._key(driver, credentials)
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = DatabaseHandle(driver, credentials, self.reconnect_delay)
                self._handles[key] = handle
            return handle

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.close()

    def __len__(self) -> int:
        return len(self._handles)
