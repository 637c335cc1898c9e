"""
MySQL dialect for NodeDB (PyMySQL).

Connections use ``CLIENT.FOUND_ROWS`` so that an UPDATE matching a row
reports it even when no value changed; the engine's update-then-insert
save depends on this. References are emitted as table-level FOREIGN KEY
constraints, and tables are created with the InnoDB engine.
"""

from __future__ import annotations

import logging

import pymysql
from pymysql.constants import CLIENT

from ..schema.entity import StorageType
from .base import Credentials, SqlDriver

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306

# CR_SERVER_GONE_ERROR, CR_SERVER_LOST, CR_SERVER_LOST_EXTENDED
_LOST_CONNECTION_CODES = (2006, 2013, 2055)


class MysqlDriver(SqlDriver):
    """MySQL dialect."""

    storage = StorageType.MYSQL
    placeholder = "%s"
    identifier_quote = "`"
    datetime_column_type = "DATETIME"
    serial_key_clause = "INTEGER PRIMARY KEY AUTO_INCREMENT"
    default_foreign_keys = True
    inline_references = False
    begin_sql = "START TRANSACTION"
    errors = (pymysql.MySQLError,)

    def adapt_column_type(self, column_type: str) -> str:
        if column_type == "DATETIME":
            return "DATETIME(6)"
        return column_type

    def datetime_insert(self, placeholder: str) -> str:
        return f"FROM_UNIXTIME({placeholder})"

    def datetime_select(self, column_sql: str) -> str:
        return f"UNIX_TIMESTAMP({column_sql})"

    def concat(self, parts: list[str]) -> str:
        return f"CONCAT({', '.join(parts)})"

    def table_options(self) -> str:
        return " ENGINE=InnoDB DEFAULT CHARSET=utf8mb4"

    def connect(self, credentials: Credentials) -> pymysql.connections.Connection:
        return pymysql.connect(
            host=credentials.host,
            port=credentials.port or DEFAULT_PORT,
            user=credentials.user,
            password=credentials.password or "",
            database=credentials.database,
            charset="utf8mb4",
            autocommit=True,
            client_flag=CLIENT.FOUND_ROWS,
            connect_timeout=10,
        )

    def is_connection_lost(self, exc: BaseException) -> bool:
        if not isinstance(exc, (pymysql.err.OperationalError, pymysql.err.InterfaceError)):
            return False
        code = exc.args[0] if exc.args else None
        return code in _LOST_CONNECTION_CODES or isinstance(exc, pymysql.err.InterfaceError)
