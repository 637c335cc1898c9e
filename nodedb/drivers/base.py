"""
Generic SQL dialect adapter for NodeDB.

SqlDriver translates EntityDef/TypeDef metadata into DDL and DML text and
answers the driver-specific questions of the persistence engine: column
types, serial-key retrieval, datetime encoding, foreign-key emission and
connection-loss detection. Dialects subclass it and override class
attributes and hooks; the base class speaks ANSI SQL.

Statement shapes:
    CREATE TABLE IF NOT EXISTS "t" (
        "attr" TYPE [DEFAULT lit] [NOT NULL] [UNIQUE] [PRIMARY KEY]
                    [REFERENCES "r" ("pk") [ON DELETE ..] [ON UPDATE ..]],
        ...
        [UNIQUE ("attr", "co_key", ...)]
    )
    UPDATE "t" SET "a" = ?, ... WHERE "pk" = ?
    INSERT INTO "t" ("a", ...) VALUES (?, ...)

Invariants:
    - Columns are emitted in sorted attribute order
    - Collection attributes never become columns (embedded ones do)
    - insert columns exclude a serial primary key
    - update columns exclude the primary key and ctime
    - Value precedence: sql_insert_value/sql_update_value, then sql_value,
      then the bound storage representation
    - Literal SQL fragments are escaped for pyformat drivers ("%" -> "%%")

How to change safely:
    - DDL changes only affect new tables; existing tables are never altered
    - Keep statement builders pure (no I/O); connection work goes through
      DatabaseHandle
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..errors import InvalidArgument, MethodNotApplicable
from ..schema.entity import ELEMENT_INDEX, ELEMENT_KEY, PARENT_ID, EntityDef, StorageType
from ..schema.types import TypeDef, TypeKind

if TYPE_CHECKING:
    from ..config import Settings
    from ..schema.registry import EntityRegistry
    from .connection import DatabaseHandle

logger = logging.getLogger(__name__)

NAME_ALIAS = "__name"
NAME_SEPARATOR = " / "
NATIVE_DATETIME_TYPES = ("DATETIME", "TIMESTAMP", "TIMESTAMPTZ", "TIMESTAMP WITH TIME ZONE")


@dataclass(frozen=True)
class Credentials:
    """Connection parameters for one database.

    Attributes:
        database: Database name
        host: Server host (network dialects)
        port: Server port (network dialects)
        user: User name
        password: Password (never shown in repr)
        path: Database file (SQLite)
    """

    database: str
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    path: Optional[str] = None

    @property
    def label(self) -> str:
        """Secret-free description for logs and errors."""
        if self.path:
            return self.path
        return f"{self.user}@{self.host}:{self.port or ''}/{self.database}"


class SqlDriver:
    """Generic (ANSI) SQL dialect adapter.

    Attributes:
        storage: StorageType this driver serves
        placeholder: DB-API parameter marker
        identifier_quote: Character used to quote identifiers
        datetime_column_type: Column type for engine-managed timestamps
        serial_key_clause: Column definition for serial primary keys
        default_foreign_keys: Emit REFERENCES unless the entity says otherwise
        inline_references: REFERENCES inline (True) or as table constraints
        begin_sql / commit_sql / rollback_sql: Transaction statements
        errors: Driver exception base classes translated by DatabaseHandle
    """

    storage = StorageType.NONE
    placeholder = "?"
    identifier_quote = '"'
    datetime_column_type = "DATETIME"
    serial_key_clause = "INTEGER PRIMARY KEY"
    default_foreign_keys = False
    inline_references = True
    begin_sql = "BEGIN"
    commit_sql = "COMMIT"
    rollback_sql = "ROLLBACK"
    errors: tuple[type[BaseException], ...] = ()

    def __init__(
        self,
        registry: Optional["EntityRegistry"] = None,
        settings: Optional["Settings"] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings

    @property
    def name(self) -> str:
        return self.storage.value

    # -- identifiers and literals -----------------------------------------

    def quote(self, identifier: str) -> str:
        q = self.identifier_quote
        return f"{q}{identifier.replace(q, q + q)}{q}"

    def table(self, entity: EntityDef) -> str:
        return self.quote(entity.table_name)

    def column(self, entity: EntityDef, attr: str) -> str:
        return f"{self.table(entity)}.{self.quote(attr)}"

    def quote_literal(self, value: Any) -> str:
        """Render a Python value as a SQL literal (DDL defaults, never parameterized)."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return repr(value)
        text = str(value).replace("'", "''")
        return f"'{text}'"

    def literal_sql(self, text: str) -> str:
        """Escape literal SQL for statements that also carry bound parameters."""
        if self.placeholder == "%s":
            return text.replace("%", "%%")
        return text

    def bind_value_query(self, query: str) -> str:
        """Prepare a reference query: escape it and bind ``{value}``."""
        return self.literal_sql(query).replace("{value}", self.placeholder)

    def concat(self, parts: list[str]) -> str:
        return " || ".join(parts)

    def limit_clause(self, limit: int, offset: int) -> str:
        return f" LIMIT {int(limit)} OFFSET {int(offset)}"

    # -- datetimes ----------------------------------------------------------

    def datetime_insert(self, placeholder: str) -> str:
        """SQL expression converting a bound epoch to the native datetime."""
        return placeholder

    def datetime_select(self, column_sql: str) -> str:
        """SQL expression converting a native datetime column to epoch seconds."""
        return column_sql

    def uses_native_datetime(self, entity: EntityDef, attr: str) -> bool:
        typedef = entity.type_of(attr)
        if typedef.kind != TypeKind.DATETIME:
            return False
        return self._raw_column_type(typedef) in NATIVE_DATETIME_TYPES

    # -- column types -------------------------------------------------------

    def adapt_column_type(self, column_type: str) -> str:
        """Dialect hook rewriting a declared column type."""
        return column_type

    def _raw_column_type(self, typedef: TypeDef) -> str:
        if typedef.column_type:
            return typedef.column_type.upper()
        kind = typedef.kind
        if kind == TypeKind.DATETIME:
            return self.datetime_column_type
        if kind == TypeKind.EXTID:
            return self._reference_column_type(typedef)
        if kind.is_integral:
            return "INTEGER"
        if kind == TypeKind.BOOL:
            return "INTEGER(1)"
        if kind.is_real:
            return "DOUBLE(30,10)"
        return "TEXT"

    def _reference_column_type(self, typedef: TypeDef) -> str:
        target = self._target(typedef, required=False)
        if target is None:
            return "TEXT"
        pk_type = target.primary_key_type
        if pk_type.serial:
            return "INTEGER"
        return self._raw_column_type(pk_type)

    def column_type(self, entity: EntityDef, attr: str) -> str:
        """Column type of one attribute in this dialect."""
        return self.adapt_column_type(self._raw_column_type(entity.type_of(attr)))

    def _target(self, typedef: TypeDef, required: bool = True) -> Optional[EntityDef]:
        name = typedef.member_class
        if name is None:
            return None
        target = self.registry.get(name) if self.registry is not None else None
        if target is None and required:
            raise InvalidArgument(f"Referenced entity '{name}' is not declared")
        return target

    # -- foreign keys -------------------------------------------------------

    def use_foreign_keys(self, entity: EntityDef) -> bool:
        if entity.options.use_foreign_keys is not None:
            return entity.options.use_foreign_keys
        return self.default_foreign_keys

    def references_clause(self, typedef: TypeDef) -> str:
        target = self._target(typedef)
        assert target is not None
        clause = f"REFERENCES {self.table(target)} ({self.quote(target.primary_key)})"
        if typedef.delete_ref_opt:
            clause += f" ON DELETE {typedef.delete_ref_opt}"
        if typedef.update_ref_opt:
            clause += f" ON UPDATE {typedef.update_ref_opt}"
        return clause

    # -- DDL ----------------------------------------------------------------

    def column_fragment(self, entity: EntityDef, attr: str) -> str:
        """Column definition for one attribute."""
        typedef = entity.type_of(attr)
        is_key = attr == entity.primary_key
        if is_key and typedef.serial:
            return f"{self.quote(attr)} {self.serial_key_clause}"

        column_type = self.column_type(entity, attr)
        parts = [self.quote(attr), column_type]

        if (
            typedef.default is not None
            and not typedef.embedded
            and not column_type.startswith(("TEXT", "BLOB", "BYTEA"))
            and not self.uses_native_datetime(entity, attr)
        ):
            parts.append(f"DEFAULT {self.quote_literal(typedef.to_storage(typedef.default))}")
        if not typedef.optional and not is_key:
            parts.append("NOT NULL")
        if typedef.unique is True and not is_key:
            parts.append("UNIQUE")
        if is_key:
            parts.append("PRIMARY KEY")
        if (
            self.inline_references
            and typedef.member_class is not None
            and self.use_foreign_keys(entity)
        ):
            parts.append(self.references_clause(typedef))
        return " ".join(parts)

    def table_constraints(self, entity: EntityDef) -> list[str]:
        """Table-level constraints (co-key uniqueness, non-inline references)."""
        constraints = []
        for attr in entity.column_attributes():
            typedef = entity.type_of(attr)
            if typedef.co_keys:
                columns = ", ".join(self.quote(c) for c in (attr, *typedef.co_keys))
                constraints.append(f"UNIQUE ({columns})")
        if not self.inline_references and self.use_foreign_keys(entity):
            for attr in entity.reference_attributes():
                clause = self.references_clause(entity.type_of(attr))
                constraints.append(f"FOREIGN KEY ({self.quote(attr)}) {clause}")
        return constraints

    def schema_ddl(self, entity: EntityDef) -> str:
        """CREATE TABLE statement for an entity."""
        lines = [self.column_fragment(entity, attr) for attr in entity.column_attributes()]
        lines.extend(self.table_constraints(entity))
        body = ",\n  ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {self.table(entity)} (\n  {body}\n){self.table_options()}"

    def table_options(self) -> str:
        return ""

    def drop_ddl(self, entity: EntityDef) -> str:
        return f"DROP TABLE IF EXISTS {self.table(entity)}"

    # -- column lists -------------------------------------------------------

    def select_columns(self, entity: EntityDef) -> list[str]:
        return entity.column_attributes()

    def insert_columns(self, entity: EntityDef) -> list[str]:
        return [
            attr
            for attr in entity.column_attributes()
            if not (attr == entity.primary_key and entity.has_serial_key)
        ]

    def update_columns(self, entity: EntityDef) -> list[str]:
        return [
            attr
            for attr in entity.column_attributes()
            if attr not in (entity.primary_key, "ctime")
        ]

    def select_list(self, entity: EntityDef) -> str:
        items = []
        for attr in self.select_columns(entity):
            column = self.quote(attr)
            if self.uses_native_datetime(entity, attr):
                items.append(f"{self.datetime_select(column)} AS {column}")
            else:
                items.append(column)
        return ", ".join(items)

    # -- DML ----------------------------------------------------------------

    def _value_sql(self, entity: EntityDef, attr: str, value: Any, override: Optional[str], params: list) -> str:
        if override is not None:
            return self.literal_sql(override)
        typedef = entity.type_of(attr)
        storage = typedef.to_storage(value)
        params.append(storage)
        if storage is not None and self.uses_native_datetime(entity, attr):
            return self.datetime_insert(self.placeholder)
        return self.placeholder

    def key_param(self, entity: EntityDef, key: Any) -> Any:
        return entity.primary_key_type.to_storage(key)

    def insert_statement(self, entity: EntityDef, values: Mapping[str, Any]) -> tuple[str, list]:
        """INSERT statement and parameters for one row."""
        columns = self.insert_columns(entity)
        params: list = []
        value_sql = []
        for attr in columns:
            typedef = entity.type_of(attr)
            override = typedef.sql_insert_value or typedef.sql_value
            value_sql.append(self._value_sql(entity, attr, values.get(attr), override, params))
        column_sql = ", ".join(self.quote(c) for c in columns)
        sql = f"INSERT INTO {self.table(entity)} ({column_sql}) VALUES ({', '.join(value_sql)})"
        return sql, params

    def update_statement(self, entity: EntityDef, values: Mapping[str, Any]) -> tuple[str, list]:
        """UPDATE-by-primary-key statement and parameters for one row."""
        params: list = []
        assignments = []
        for attr in self.update_columns(entity):
            typedef = entity.type_of(attr)
            override = typedef.sql_update_value or typedef.sql_value
            assignments.append(
                f"{self.quote(attr)} = {self._value_sql(entity, attr, values.get(attr), override, params)}"
            )
        params.append(self.key_param(entity, values.get(entity.primary_key)))
        sql = (
            f"UPDATE {self.table(entity)} SET {', '.join(assignments)} "
            f"WHERE {self.quote(entity.primary_key)} = {self.placeholder}"
        )
        return sql, params

    def select_by_key_statement(self, entity: EntityDef) -> str:
        return (
            f"SELECT {self.select_list(entity)} FROM {self.table(entity)} "
            f"WHERE {self.quote(entity.primary_key)} = {self.placeholder}"
        )

    def delete_by_key_statement(self, entity: EntityDef) -> str:
        return f"DELETE FROM {self.table(entity)} WHERE {self.quote(entity.primary_key)} = {self.placeholder}"

    def exists_statement(self, entity: EntityDef, attr: str) -> str:
        return (
            f"SELECT 1 FROM {self.table(entity)} WHERE {self.quote(attr)} = {self.placeholder} LIMIT 1"
        )

    def count_statement(self, entity: EntityDef) -> str:
        return f"SELECT count(*) FROM {self.table(entity)}"

    def count_query_statement(self, query: str) -> str:
        return f"SELECT count(*) FROM ({query}) stream_count"

    def all_ids_statement(self, entity: EntityDef) -> str:
        return (
            f"SELECT {self.quote(entity.primary_key)} FROM {self.table(entity)} "
            f"ORDER BY {self.name_order(entity)}"
        )

    def all_names_statement(self, entity: EntityDef) -> str:
        return f"SELECT {self.quote('name')} FROM {self.table(entity)} ORDER BY {self.quote('name')}"

    def id_for_name_statement(self, entity: EntityDef) -> str:
        return (
            f"SELECT {self.quote(entity.primary_key)} FROM {self.table(entity)} "
            f"WHERE {self.quote('name')} = {self.placeholder}"
        )

    def name_for_id_statement(self, entity: EntityDef) -> str:
        return (
            f"SELECT {self.quote('name')} FROM {self.table(entity)} "
            f"WHERE {self.quote(entity.primary_key)} = {self.placeholder}"
        )

    def name_order(self, entity: EntityDef) -> str:
        """ORDER BY list: name with the primary key as tiebreak."""
        if entity.has_attribute("name"):
            return f"{self.quote('name')}, {self.quote(entity.primary_key)}"
        return self.quote(entity.primary_key)

    def name_expression(self, entity: EntityDef) -> str:
        """Display-name expression: the name plus any co-key values."""
        if not entity.has_attribute("name"):
            return self.column(entity, entity.primary_key)
        name_type = entity.type_of("name")
        if not name_type.co_keys:
            return self.column(entity, "name")
        parts = [f"COALESCE({self.column(entity, 'name')}, '')"]
        for co_key in name_type.co_keys:
            co_type = entity.type_of(co_key)
            target = self._target(co_type, required=False)
            if target is not None and target.has_attribute("name"):
                expr = (
                    f"(SELECT {self.column(target, 'name')} FROM {self.table(target)} "
                    f"WHERE {self.column(target, target.primary_key)} = {self.column(entity, co_key)})"
                )
            else:
                expr = self.column(entity, co_key)
            parts.append(f"'{NAME_SEPARATOR}'")
            parts.append(f"COALESCE({expr}, '')")
        return self.concat(parts)

    def tuple_statement(self, entity: EntityDef) -> str:
        """Primary key plus display name, ordered by display name then key."""
        alias = self.quote(NAME_ALIAS)
        return (
            f"SELECT {self.column(entity, entity.primary_key)}, {self.name_expression(entity)} AS {alias} "
            f"FROM {self.table(entity)} ORDER BY {alias}, {self.column(entity, entity.primary_key)}"
        )

    # -- element tables -----------------------------------------------------

    def element_select_statement(self, element: EntityDef) -> str:
        order = ELEMENT_INDEX if element.has_attribute(ELEMENT_INDEX) else ELEMENT_KEY
        return (
            f"SELECT {self.select_list(element)} FROM {self.table(element)} "
            f"WHERE {self.quote(PARENT_ID)} = {self.placeholder} ORDER BY {self.quote(order)}"
        )

    def element_delete_statement(self, element: EntityDef) -> str:
        return f"DELETE FROM {self.table(element)} WHERE {self.quote(PARENT_ID)} = {self.placeholder}"

    # -- connections --------------------------------------------------------

    def credentials(self, entity: EntityDef, settings: "Settings") -> Credentials:
        return Credentials(
            database=entity.database_name,
            host=settings.db_host,
            port=settings.db_port,
            user=settings.db_user,
            password=settings.db_pass,
        )

    def connect(self, credentials: Credentials) -> Any:
        """Open a DB-API connection in autocommit mode."""
        raise MethodNotApplicable(f"Driver {self.name} cannot open connections")

    def is_connection_lost(self, exc: BaseException) -> bool:
        """True if ``exc`` means the server connection is gone."""
        return False

    def insert_returning_key(self, handle: "DatabaseHandle", entity: EntityDef, sql: str, params: list) -> Any:
        """Run an INSERT and return the store-assigned serial key."""
        return handle.insert(sql, params)

    def probe(self, credentials: Credentials) -> bool:
        """Whether this backing store is reachable with ``credentials``.

        Errors are expected here and mean "unavailable".
        """
        try:
            conn = self.connect(credentials)
        except Exception as exc:
            logger.debug(
                f"{self.name} unavailable: {exc}",
                extra={"driver": self.name, "database": credentials.database},
            )
            return False
        conn.close()
        return True
