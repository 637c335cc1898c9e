"""
Per-entity persistence operations.

A Repository binds one EntityDef to its resolved backing stores (SQL
handle, flatfile directory, version archive, cache, text index) and
implements loading, saving, removing, querying and revision handling.

Save:
    1. apply defaults, validate every attribute, run the presave hook
    2. assign key and timestamps (old values kept for rollback)
    3. SQL: BEGIN, UPDATE, INSERT if no row matched, rewrite element rows
    4. flatfile: checkout, atomic write, checkin
    5. cache write
    6. COMMIT
    7. text index refresh

Invariants:
    - Nothing is written before validation succeeds
    - A failed save leaves the node's id, ctime and mtime as they were
    - Element rows of a node are replaced as a whole on every save
    - Version history survives remove; restore() can bring an object back
    - Flatfile writes happen only on the configured master host

How to change safely:
    - Keep cache writes inside the transaction window so a failed commit
      purges them
    - Text index updates run after commit; the index is not transactional
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Optional, Union

from ..drivers.flatfile import dump_json, dump_yaml, load_json, load_yaml
from ..errors import (
    DataConversionFailed,
    InvalidArgument,
    MethodNotApplicable,
    NodeDbError,
    ObjectIsAnonymous,
    ObjectNotFound,
    PrimaryKeyMissing,
    TransactionFailed,
    TransactionRollbackFailed,
    WrongHost,
)
from ..runtime import current_user, hostname, new_guid, normalize_guid, now
from ..schema.entity import EntityDef
from ..schema.types import TypeKind
from . import marshal
from .node import Node
from .stream import DEFAULT_LIMIT, Stream, collect

if TYPE_CHECKING:
    from ..drivers.connection import DatabaseHandle
    from .engine import Binding, Engine

logger = logging.getLogger(__name__)

NO_COMMENT = "No comment given"


class Repository:
    """Public operations on the objects of one entity.

    Obtain instances through ``Engine.repository``.

    Example:
        >>> people = engine.repository("myapp.Person")
        >>> alice = people.new(name="Alice", age=30)
        >>> people.save(alice, "first save")
        True
        >>> people.load_by_name("Alice").age
        30
    """

    def __init__(self, engine: "Engine", binding: "Binding") -> None:
        self.engine = engine
        self.binding = binding
        self.entity: EntityDef = binding.entity
        self._initialized = False
        self._initializing = False

    def __repr__(self) -> str:
        return f"Repository({self.entity.name!r}, storage={self.binding.storage.value!r})"

    # -- bindings -------------------------------------------------------------

    @property
    def driver(self):
        return self.binding.driver

    @property
    def flatfile(self):
        return self.binding.flatfile

    @property
    def settings(self):
        return self.binding.settings

    @property
    def versioned(self) -> bool:
        return self.entity.options.versioned and self.flatfile is not None

    def handle(self) -> "DatabaseHandle":
        """Database handle of this entity's SQL store.

        Raises:
            MethodNotApplicable: If the entity has no SQL store
        """
        if self.driver is None:
            raise MethodNotApplicable(f"{self.entity.name} has no SQL store", entity=self.entity.name)
        return self.engine.pool.get(self.driver, self.binding.credentials)

    def _require_sql(self, operation: str) -> "DatabaseHandle":
        if self.driver is None:
            raise MethodNotApplicable(
                f"{operation} needs a SQL store; {self.entity.name} has none",
                entity=self.entity.name,
            )
        return self.handle()

    def _ensure_initialized(self) -> None:
        if self._initialized or self._initializing:
            return
        self._initializing = True
        try:
            if self.driver is not None:
                self.create_table()
            indexed = self.entity.indexed_attributes()
            if indexed:
                self.engine.search_index.provision(self.index_collection, indexed)
        finally:
            self._initializing = False
        self._initialized = True

    @property
    def index_collection(self) -> str:
        return f"{self.entity.database_name}_{self.entity.table_name}_idx"

    def _coerce_key(self, key: Any) -> Any:
        if key is None:
            raise InvalidArgument(f"{self.entity.name}: key must not be None")
        pk_type = self.entity.primary_key_type
        if pk_type.kind.is_integral:
            try:
                return int(key)
            except (TypeError, ValueError) as exc:
                raise InvalidArgument(f"{self.entity.name}: invalid key {key!r}") from exc
        if pk_type.kind == TypeKind.ID:
            return normalize_guid(key)
        return key

    def _check_node(self, node: Node) -> None:
        if node.entity.name != self.entity.name:
            raise InvalidArgument(
                f"{node.entity.name} node passed to {self.entity.name} repository",
                details={"entity": self.entity.name, "node_entity": node.entity.name},
            )

    def _check_host(self) -> None:
        expected = self.settings.flatfile_host
        if not expected:
            return
        actual = hostname()
        if actual != expected:
            raise WrongHost(
                f"{self.entity.name} flatfiles may only be written on {expected}, this is {actual}",
                expected=expected,
                actual=actual,
            )

    # -- schema ---------------------------------------------------------------

    def referenced_entities(self) -> list[str]:
        """Names of other entities referenced by attributes or collection members."""
        names = {self.entity.type_of(attr).external_class for attr in self.entity.attribute_names()}
        names.discard(None)
        names.discard(self.entity.name)
        return sorted(names)

    def create_table(self) -> None:
        """Create the entity table and its element tables if missing.

        Tables of referenced entities are created first. In a reference
        cycle the entity being initialized is skipped, so REFERENCES to it
        need a store without foreign keys.
        """
        for name in self.referenced_entities():
            self.engine.repository(name)._ensure_initialized()
        handle = self.handle()
        handle.write(self.driver.schema_ddl(self.entity))
        for attr in self.entity.collection_attributes():
            handle.write(self.driver.schema_ddl(self.entity.element_entity(attr)))
        logger.debug(f"Ensured tables for {self.entity.name}", extra={"entity": self.entity.name})

    def drop_table(self) -> None:
        """Drop the element tables and then the entity table."""
        handle = self.handle()
        for attr in self.entity.collection_attributes():
            handle.write(self.driver.drop_ddl(self.entity.element_entity(attr)))
        handle.write(self.driver.drop_ddl(self.entity))
        self._initialized = False
        logger.info(f"Dropped tables for {self.entity.name}", extra={"entity": self.entity.name})

    # -- construction ---------------------------------------------------------

    def new(self, values: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Node:
        """New unsaved node with defaults applied.

        Raises:
            InvalidArgument: On unknown attribute names
        """
        node = Node(self.entity)
        marshal.apply_defaults(self.entity, node)
        node.update({**(values or {}), **kwargs})
        return node

    def spawn(self, name: str) -> Node:
        """Load the object called ``name``, or a new unsaved node with that name."""
        try:
            return self.load_by_name(name)
        except ObjectNotFound:
            return self.new(name=name)

    def pretty(self, attr: str) -> str:
        self.entity.type_of(attr)
        return EntityDef.pretty(attr)

    # -- cache ----------------------------------------------------------------

    def _cache_get(self, key: Any) -> Optional[Node]:
        cache = self.engine.cache
        if cache is None or not self.binding.cache_ttl:
            return None
        data = cache.get(self.entity.cache_key(key))
        if data is None:
            return None
        logger.debug(f"Cache hit for {self.entity.name} {key}", extra={"entity": self.entity.name})
        return Node(self.entity, marshal.decode_cache(self.entity, data))

    def _cache_set(self, node: Node) -> None:
        cache = self.engine.cache
        if cache is None or not self.binding.cache_ttl:
            return
        cache.set(
            self.entity.cache_key(node.key),
            marshal.encode_cache(self.entity, node.to_dict()),
            self.binding.cache_ttl,
        )

    def _cache_delete(self, key: Any) -> None:
        cache = self.engine.cache
        if cache is None or not self.binding.cache_ttl:
            return
        cache.delete(self.entity.cache_key(key))

    # -- reads ----------------------------------------------------------------

    def load(self, key: Any) -> Node:
        """Load one object by primary key.

        Raises:
            ObjectNotFound: If no such object exists
        """
        self._ensure_initialized()
        key = self._coerce_key(key)
        node = self._cache_get(key)
        if node is not None:
            return node
        if self.driver is not None:
            values = self._load_row(key)
        else:
            values = marshal.from_document(
                self.entity,
                self.flatfile.read(self.entity, key),
                source=str(self.flatfile.path(self.entity, key)),
            )
        node = Node(self.entity, values)
        self._cache_set(node)
        return node

    def _load_row(self, key: Any) -> dict[str, Any]:
        handle = self.handle()
        rows = handle.query_dicts(
            self.driver.select_by_key_statement(self.entity),
            [self.driver.key_param(self.entity, key)],
        )
        if not rows:
            raise ObjectNotFound(f"{self.entity.name} {key} not found", entity=self.entity.name, key=key)
        values = marshal.from_row(self.entity, rows[0])
        for attr in self.entity.collection_attributes():
            element = self.entity.element_entity(attr)
            element_rows = handle.query_dicts(
                self.driver.element_select_statement(element),
                [self.driver.key_param(self.entity, key)],
            )
            values[attr] = marshal.assemble_collection(self.entity.type_of(attr), element, element_rows)
        return values

    def load_by_name(self, name: str) -> Node:
        return self.load(self.id_for_name(name))

    def id_for_name(self, name: str) -> Any:
        """Primary key of the object called ``name``.

        Raises:
            ObjectNotFound: If no object has that name
        """
        self._ensure_initialized()
        if self.driver is not None:
            rows = self.handle().query(self.driver.id_for_name_statement(self.entity), [name])
            if rows:
                return self.entity.primary_key_type.from_storage(rows[0][0])
        else:
            for key in self.all_ids():
                if self.load(key).get("name") == name:
                    return key
        raise ObjectNotFound(f"{self.entity.name} named {name!r} not found", entity=self.entity.name, key=name)

    def name_for_id(self, key: Any) -> Optional[str]:
        """Name of the object with primary key ``key``.

        Raises:
            ObjectNotFound: If no such object exists
        """
        self._ensure_initialized()
        key = self._coerce_key(key)
        if self.driver is None:
            return self.load(key).get("name")
        rows = self.handle().query(
            self.driver.name_for_id_statement(self.entity), [self.driver.key_param(self.entity, key)]
        )
        if not rows:
            raise ObjectNotFound(f"{self.entity.name} {key} not found", entity=self.entity.name, key=key)
        return rows[0][0]

    def does_id_exist(self, key: Any) -> bool:
        self._ensure_initialized()
        key = self._coerce_key(key)
        if self.driver is not None:
            sql = self.driver.exists_statement(self.entity, self.entity.primary_key)
            return bool(self.handle().query(sql, [self.driver.key_param(self.entity, key)]))
        return self.flatfile.exists(self.entity, key)

    def does_name_exist(self, name: str) -> bool:
        try:
            self.id_for_name(name)
        except ObjectNotFound:
            return False
        return True

    def exists(self, node: Node) -> bool:
        """True if ``node`` has a key and is stored."""
        self._check_node(node)
        return node.key is not None and self.does_id_exist(node.key)

    def all_ids(self) -> list[Any]:
        """All primary keys, ordered by name (SQL) or by key (flatfile)."""
        self._ensure_initialized()
        if self.driver is not None:
            pk_type = self.entity.primary_key_type
            rows = self.handle().query(self.driver.all_ids_statement(self.entity))
            return [pk_type.from_storage(row[0]) for row in rows]
        return self.flatfile.ids(self.entity)

    def all_names(self) -> list[str]:
        handle = self._require_sql("all_names")
        self._ensure_initialized()
        return [row[0] for row in handle.query(self.driver.all_names_statement(self.entity))]

    def count(self) -> int:
        self._ensure_initialized()
        if self.driver is not None:
            return int(self.handle().query(self.driver.count_statement(self.entity))[0][0])
        return len(self.flatfile.ids(self.entity))

    def tuples(self) -> list[tuple[Any, str]]:
        """(key, display name) pairs ordered by display name."""
        handle = self._require_sql("tuples")
        self._ensure_initialized()
        return [tuple(row) for row in handle.query(self.driver.tuple_statement(self.entity))]

    def stream(self, limit: int = DEFAULT_LIMIT, offset: int = 0, query: Optional[str] = None) -> Stream:
        self._ensure_initialized()
        return Stream(self, limit=limit, offset=offset, query=query)

    def each(self, fn: Callable[[Any], Any]) -> list[Any]:
        """Collect ``fn(key)`` over all keys, honoring Signal/Emit results."""
        self._ensure_initialized()
        if self.driver is not None:
            return Stream(self, query=self.driver.all_ids_statement(self.entity)).each(fn)
        return collect(iter(self.flatfile.ids(self.entity)), fn)

    def search(self, query: Union[str, Mapping[str, str]]) -> list[Any]:
        """Keys of objects matching a full-text query, best match first."""
        self._ensure_initialized()
        if not self.entity.indexed_attributes():
            return []
        pk_type = self.entity.primary_key_type
        keys = self.engine.search_index.search(self.index_collection, query)
        return [pk_type.from_storage(key) for key in keys]

    def member_class(self, attr: str) -> EntityDef:
        """Entity referenced by ``attr`` (looking through collections).

        Raises:
            InvalidArgument: If ``attr`` references no entity
        """
        name = self.entity.type_of(attr).external_class
        if name is None:
            raise InvalidArgument(f"{self.entity.name}.{attr} does not reference an entity")
        return self.engine.registry.require(name)

    def set_ids_from_names(self, node: Node, attr: str, *names: str) -> Node:
        """Store the keys of the objects called ``names`` into ``attr``.

        Missing referenced objects are created and saved.
        """
        self._check_node(node)
        target = self.engine.repository(self.member_class(attr))
        keys = []
        for name in names:
            referenced = target.spawn(name)
            if referenced.key is None or not target.exists(referenced):
                target.save(referenced, f"Created as {self.entity.name}.{attr} reference")
            keys.append(referenced.key)
        if self.entity.type_of(attr).kind.is_collection:
            node.set(attr, keys)
        else:
            node.set(attr, keys[0] if keys else None)
        return node

    # -- raw SQL --------------------------------------------------------------

    def select_multi(self, sql: str, params: Optional[list] = None) -> list[Any]:
        """Rows of a query; single-column rows are returned as scalars."""
        rows = self._require_sql("select_multi").query(sql, params)
        return [row[0] if len(row) == 1 else row for row in rows]

    def select_single(self, sql: str, params: Optional[list] = None) -> Optional[tuple]:
        rows = self._require_sql("select_single").query(sql, params)
        return rows[0] if rows else None

    def select_scalar(self, sql: str, params: Optional[list] = None) -> Any:
        row = self.select_single(sql, params)
        return row[0] if row else None

    def select_bool(self, sql: str, params: Optional[list] = None) -> bool:
        return bool(self.select_scalar(sql, params))

    def write(self, sql: str, params: Optional[list] = None) -> int:
        return self._require_sql("write").write(sql, params)

    # -- save -----------------------------------------------------------------

    def validate(self, node: Node) -> None:
        """Validate every attribute of ``node``, references included.

        Raises:
            AssertFailed: On the first failing attribute
        """
        for attr in self.entity.attribute_names():
            self.entity.type_of(attr).validate(attr, node.get(attr), context=self.engine)

    def presave(self, node: Node) -> None:
        """Object-level checks run by save() after validation, before any write.

        Runs ``EntityOptions.presave``. Exceptions propagate and nothing is
        stored.
        """
        hook = self.entity.options.presave
        if hook is not None:
            hook(self, node)

    def save(self, node: Node, comment: Optional[str] = None) -> bool:
        """Validate and store ``node``.

        Raises:
            AssertFailed: If validation fails (nothing written)
            Exception: Whatever the presave hook raises (nothing written)
            PrimaryKeyMissing: If a non-generated key is unset, or a serial
                key has no SQL store to assign it
            WrongHost: If a flatfile store is written off its master host
            TransactionFailed: If a write fails (rolled back)
            TransactionRollbackFailed: If rolling back failed too
        """
        self._check_node(node)
        self._ensure_initialized()
        entity = self.entity
        pk = entity.primary_key

        marshal.apply_defaults(entity, node)
        self.validate(node)
        self.presave(node)
        if self.flatfile is not None:
            self._check_host()

        previous = {attr: node.get(attr) for attr in (pk, "ctime", "mtime") if entity.has_attribute(attr)}
        stamp = now()
        if node.key is None:
            if entity.has_guid_key:
                node.set(pk, new_guid())
            elif not entity.has_serial_key:
                raise PrimaryKeyMissing(f"{entity.name} has no value for primary key '{pk}'", entity=entity.name)
            elif self.driver is None:
                raise PrimaryKeyMissing(
                    f"{entity.name} has a serial key '{pk}' but no SQL store to assign it",
                    entity=entity.name,
                )
        elif entity.has_guid_key:
            node.set(pk, normalize_guid(node.key))
        if entity.has_attribute("ctime") and not node.is_set("ctime"):
            node.set("ctime", stamp)
        if entity.has_attribute("mtime"):
            node.set("mtime", stamp)

        handle = self.handle() if self.driver is not None else None
        try:
            if handle is not None:
                handle.begin()
                self._save_row(handle, node, stamp)
            if self.flatfile is not None:
                self._save_file(node, comment)
            self._cache_set(node)
            if handle is not None:
                handle.commit()
        except NodeDbError as exc:
            if node.key is not None:
                self._cache_delete(node.key)
            node.update(previous)
            self._abort(handle, exc, "save")

        self._index(node)
        logger.info(
            f"Saved {entity.name} {node.key}",
            extra={"entity": entity.name, "key": node.key, "comment": comment},
        )
        return True

    def _abort(self, handle: Optional["DatabaseHandle"], exc: NodeDbError, operation: str) -> None:
        if handle is not None:
            try:
                handle.rollback()
            except NodeDbError as rollback_exc:
                logger.error(
                    f"Rollback of {operation} failed: {rollback_exc}",
                    extra={"entity": self.entity.name, "operation": operation},
                )
                raise TransactionRollbackFailed(
                    f"{operation} of {self.entity.name} failed ({exc.message}) and rollback failed "
                    f"({rollback_exc.message})",
                    entity=self.entity.name,
                ) from exc
        logger.warning(
            f"{operation} of {self.entity.name} failed: {exc.message}",
            extra={"entity": self.entity.name, "operation": operation, "error_code": exc.code},
        )
        raise TransactionFailed(
            f"{operation} of {self.entity.name} failed: {exc.message}", entity=self.entity.name
        ) from exc

    def _save_row(self, handle: "DatabaseHandle", node: Node, stamp: float) -> None:
        driver = self.driver
        entity = self.entity
        values = node.to_dict()
        matched = 0
        if node.key is not None:
            sql, params = driver.update_statement(entity, values)
            matched = handle.write(sql, params)
        if matched == 0:
            sql, params = driver.insert_statement(entity, values)
            if entity.has_serial_key:
                node.set(entity.primary_key, driver.insert_returning_key(handle, entity, sql, params))
            else:
                handle.write(sql, params)

        parent_key = driver.key_param(entity, node.key)
        for attr in entity.collection_attributes():
            element = entity.element_entity(attr)
            handle.write(driver.element_delete_statement(element), [parent_key])
            for row in marshal.element_rows(entity, attr, node.key, node.get(attr), stamp):
                sql, params = driver.insert_statement(element, row)
                handle.write(sql, params)

    def _save_file(self, node: Node, comment: Optional[str]) -> None:
        path = self.flatfile.path(self.entity, node.key)
        archive = self.engine.archive if self.versioned else None
        if archive is not None:
            archive.checkout(path)
        self.flatfile.write(self.entity, node.key, marshal.to_document(self.entity, node.to_dict()))
        if archive is not None:
            archive.checkin(path, f"Edited by user {current_user()} with comment: {comment or NO_COMMENT}")

    def _index(self, node: Node) -> None:
        indexed = self.entity.indexed_attributes()
        if not indexed:
            return
        fields = {}
        for attr in indexed:
            value = node.get(attr)
            if value is None:
                fields[attr] = ""
            elif isinstance(value, Mapping):
                fields[attr] = " ".join(str(v) for v in value.values())
            elif isinstance(value, (list, tuple)):
                fields[attr] = " ".join(str(v) for v in value)
            else:
                fields[attr] = str(value)
        self.engine.search_index.add(self.index_collection, str(node.key), fields)

    # -- remove ---------------------------------------------------------------

    def remove(self, node: Node, reason: Optional[str] = None) -> bool:
        """Delete ``node`` from every store.

        Removing an already removed object is a no-op.

        Raises:
            ObjectIsAnonymous: If the node has no key
            WrongHost: If a flatfile store is written off its master host
            TransactionFailed: If a delete fails (rolled back)
        """
        self._check_node(node)
        if node.key is None:
            raise ObjectIsAnonymous(f"Cannot remove an unsaved {self.entity.name}", entity=self.entity.name)
        self._ensure_initialized()
        if self.flatfile is not None:
            self._check_host()

        key = node.key
        handle = self.handle() if self.driver is not None else None
        if handle is not None:
            key_param = self.driver.key_param(self.entity, key)
            try:
                handle.begin()
                for attr in self.entity.collection_attributes():
                    handle.write(self.driver.element_delete_statement(self.entity.element_entity(attr)), [key_param])
                handle.write(self.driver.delete_by_key_statement(self.entity), [key_param])
                handle.commit()
            except NodeDbError as exc:
                self._abort(handle, exc, "remove")

        self._cache_delete(key)
        if self.entity.indexed_attributes():
            self.engine.search_index.remove(self.index_collection, str(key))
        if self.flatfile is not None:
            self.flatfile.unlink(self.entity, key)
        logger.info(
            f"Removed {self.entity.name} {key}",
            extra={"entity": self.entity.name, "key": key, "reason": reason},
        )
        return True

    # -- revisions ------------------------------------------------------------

    def _archive_path(self, key: Any):
        if not self.versioned:
            raise MethodNotApplicable(f"{self.entity.name} is not versioned", entity=self.entity.name)
        return self.flatfile.path(self.entity, key)

    def _node_key(self, node: Node) -> Any:
        self._check_node(node)
        if node.key is None:
            raise ObjectIsAnonymous(f"Unsaved {self.entity.name} has no revisions", entity=self.entity.name)
        return node.key

    def revisions(self, node: Node) -> list[str]:
        """Revision numbers of ``node``, oldest first."""
        return self.engine.archive.revisions(self._archive_path(self._node_key(node)))

    def head(self, node: Node) -> str:
        return self.engine.archive.head(self._archive_path(self._node_key(node)))

    def revision_info(self, node: Node) -> str:
        """Revision log text of ``node``."""
        return self.engine.archive.log(self._archive_path(self._node_key(node)))

    def revert(self, node: Node, version: Optional[str] = None) -> Node:
        """Replace the values of ``node`` with a stored revision (default: head).

        The working flatfile is rewritten; save the node to store the
        reverted values everywhere else.
        """
        key = self._node_key(node)
        path = self._archive_path(key)
        if self.flatfile is not None:
            self._check_host()
        self.engine.archive.revert(path, version)
        values = marshal.from_document(self.entity, self.flatfile.read(self.entity, key), source=str(path))
        node.replace_values(values)
        self._cache_delete(key)
        logger.info(
            f"Reverted {self.entity.name} {key} to {version or 'head'}",
            extra={"entity": self.entity.name, "key": key, "revision": version},
        )
        return node

    def restore(self, key: Any, version: Optional[str] = None) -> Node:
        """Bring back an object from its revision history, even after remove."""
        node = Node(self.entity)
        node.set(self.entity.primary_key, self._coerce_key(key))
        return self.revert(node, version)

    # -- serialization --------------------------------------------------------

    def to_yaml(self, node: Node) -> str:
        self._check_node(node)
        return dump_yaml(marshal.to_document(self.entity, node.to_dict()))

    def to_json(self, node: Node) -> str:
        self._check_node(node)
        return dump_json(marshal.to_document(self.entity, node.to_dict()))

    def load_yaml(self, text: str) -> Node:
        """Node from a YAML document (not saved, not validated)."""
        return self._from_loaded(load_yaml(text, source="yaml"), "yaml")

    def load_json(self, text: str) -> Node:
        """Node from a JSON document (not saved, not validated)."""
        return self._from_loaded(load_json(text, source="json"), "json")

    def _from_loaded(self, data: Any, source: str) -> Node:
        if not isinstance(data, Mapping):
            raise DataConversionFailed(
                f"Expected a mapping for {self.entity.name}, got {type(data).__name__}", source=source
            )
        return Node(self.entity, marshal.from_document(self.entity, data, source=source))

    def iter_nodes(self) -> Iterator[Node]:
        """Load every object in ``all_ids`` order."""
        for key in self.all_ids():
            yield self.load(key)
