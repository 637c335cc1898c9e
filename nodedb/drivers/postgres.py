"""
PostgreSQL dialect for NodeDB (psycopg 3).

Declared column types use MySQL-flavoured names (``INT(11)``,
``DOUBLE(30,10)``); this dialect rewrites them to PostgreSQL types and
logs each rewrite once. Engine-managed timestamps are FLOAT epoch seconds.
Serial keys are read back with ``INSERT ... RETURNING``.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import TYPE_CHECKING, Any

import psycopg

from ..schema.entity import EntityDef, StorageType
from .base import Credentials, SqlDriver

if TYPE_CHECKING:
    from .connection import DatabaseHandle

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5432

_TYPE_REWRITES = (
    (re.compile(r"^(TINYINT|SMALLINT|MEDIUMINT|INT|INTEGER|BIGINT)\(\d+\)$"), "INT"),
    (re.compile(r"^INTEGER$"), "INT"),
    (re.compile(r"^DOUBLE(\(\d+,\s*\d+\))?$"), "FLOAT"),
    (re.compile(r"^(DATETIME|TIMESTAMP)$"), "TIMESTAMPTZ"),
    (re.compile(r"^(TINY|MEDIUM|LONG)?BLOB$"), "BYTEA"),
    (re.compile(r"^(TINY|MEDIUM|LONG)TEXT$"), "TEXT"),
)

_LOST_CONNECTION_MARKERS = ("closed", "terminat", "lost", "broken pipe", "reset by peer")


class PostgresDriver(SqlDriver):
    """PostgreSQL dialect."""

    storage = StorageType.POSTGRESQL
    placeholder = "%s"
    datetime_column_type = "FLOAT"
    serial_key_clause = "SERIAL PRIMARY KEY"
    default_foreign_keys = True
    errors = (psycopg.Error,)

    _warned: set[str] = set()
    _warned_lock = threading.Lock()

    def adapt_column_type(self, column_type: str) -> str:
        for pattern, replacement in _TYPE_REWRITES:
            if pattern.match(column_type):
                self._warn_once(column_type, replacement)
                return replacement
        return column_type

    def _warn_once(self, original: str, replacement: str) -> None:
        if original == replacement:
            return
        with self._warned_lock:
            if original in self._warned:
                return
            self._warned.add(original)
        logger.warning(
            f"Column type {original} is not PostgreSQL, using {replacement}",
            extra={"column_type": original, "replacement": replacement},
        )

    def datetime_insert(self, placeholder: str) -> str:
        return f"to_timestamp({placeholder})"

    def datetime_select(self, column_sql: str) -> str:
        return f"extract(epoch from {column_sql})"

    def connect(self, credentials: Credentials) -> psycopg.Connection:
        return psycopg.connect(
            host=credentials.host,
            port=credentials.port or DEFAULT_PORT,
            dbname=credentials.database,
            user=credentials.user,
            password=credentials.password,
            autocommit=True,
            connect_timeout=10,
        )

    def is_connection_lost(self, exc: BaseException) -> bool:
        if not isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
            return False
        text = str(exc).lower()
        return any(marker in text for marker in _LOST_CONNECTION_MARKERS)

    def insert_returning_key(self, handle: "DatabaseHandle", entity: EntityDef, sql: str, params: list) -> Any:
        rows = handle.query(f"{sql} RETURNING {self.quote(entity.primary_key)}", params)
        return rows[0][0]
