"""
Storage drivers for NodeDB.

- base: SqlDriver (generic SQL dialect) and Credentials
- sqlite / postgres / mysql: Dialect subclasses
- connection: DatabaseHandle and ConnectionPool
- flatfile: One-document-per-object file store
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..errors import InvalidArgument
from ..schema.entity import StorageType
from .base import Credentials, SqlDriver
from .connection import ConnectionPool, DatabaseHandle
from .flatfile import FlatfileDriver

if TYPE_CHECKING:
    from ..config import Settings
    from ..schema.registry import EntityRegistry

# Order of preference when the storage type is "auto"
PROBE_ORDER = (StorageType.MYSQL, StorageType.POSTGRESQL, StorageType.SQLITE)


def driver_class(storage: StorageType) -> type[SqlDriver]:
    """Driver class for a SQL storage type.

    Dialect modules are imported on first use so that a missing client
    library only matters to entities that need it.

    Raises:
        InvalidArgument: If ``storage`` has no SQL driver
    """
    if storage == StorageType.SQLITE:
        from .sqlite import SqliteDriver

        return SqliteDriver
    if storage == StorageType.POSTGRESQL:
        from .postgres import PostgresDriver

        return PostgresDriver
    if storage == StorageType.MYSQL:
        from .mysql import MysqlDriver

        return MysqlDriver
    raise InvalidArgument(f"No SQL driver for storage type '{storage.value}'")


def create_driver(
    storage: StorageType,
    registry: Optional["EntityRegistry"] = None,
    settings: Optional["Settings"] = None,
) -> SqlDriver:
    return driver_class(storage)(registry, settings)


__all__ = [
    "ConnectionPool",
    "Credentials",
    "DatabaseHandle",
    "FlatfileDriver",
    "PROBE_ORDER",
    "SqlDriver",
    "create_driver",
    "driver_class",
]
