"""
SQLite dialect for NodeDB.

Each database name maps to one file: ``<sqlite_path>/<database>.db``.
Connections run in autocommit mode (``isolation_level=None``); the
engine issues BEGIN/COMMIT itself.

Engine-managed timestamps (ctime, mtime) are DATETIME columns holding
``YYYY-MM-DD HH:MM:SS.SSS`` text: epoch seconds are converted on the way
in with ``strftime(..., 'unixepoch')`` and back with ``julianday``.
Sub-millisecond precision is lost.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from ..schema.entity import EntityDef, StorageType
from .base import Credentials, SqlDriver

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

UNIX_EPOCH_JULIAN_DAY = 2440587.5
SECONDS_PER_DAY = 86400.0
DEFAULT_BUSY_TIMEOUT_MS = 5000


class SqliteDriver(SqlDriver):
    """SQLite dialect (stdlib ``sqlite3``)."""

    storage = StorageType.SQLITE
    placeholder = "?"
    datetime_column_type = "DATETIME"
    serial_key_clause = "INTEGER PRIMARY KEY AUTOINCREMENT"
    default_foreign_keys = False
    errors = (sqlite3.Error,)

    @property
    def busy_timeout_ms(self) -> int:
        if self.settings is None:
            return DEFAULT_BUSY_TIMEOUT_MS
        return self.settings.sqlite_busy_timeout_ms

    def datetime_insert(self, placeholder: str) -> str:
        return f"strftime('%Y-%m-%d %H:%M:%f', {placeholder}, 'unixepoch')"

    def datetime_select(self, column_sql: str) -> str:
        return f"(julianday({column_sql}) - {UNIX_EPOCH_JULIAN_DAY}) * {SECONDS_PER_DAY}"

    def credentials(self, entity: EntityDef, settings: "Settings") -> Credentials:
        path = settings.sqlite_path / f"{entity.database_name}.db"
        return Credentials(database=entity.database_name, path=str(path))

    def connect(self, credentials: Credentials) -> sqlite3.Connection:
        path = Path(credentials.path or f"{credentials.database}.db")
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Opened SQLite database {path}", extra={"database": credentials.database})
        return conn
