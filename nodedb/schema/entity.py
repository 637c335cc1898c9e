"""
Schema entity definitions for NodeDB.

An EntityDef is the named, flat attribute table of one persistable entity
plus its class configuration (EntityOptions). It computes the derived
facts the persistence engine and drivers need: database and table names,
the primary key, column lists, and linked element entities for
collection-typed attributes.

Invariants:
    - Every entity carries the base attributes id, name, ctime and mtime
      (later declarations may override them)
    - The primary key attribute always has a TypeDef
    - Attribute tables are immutable after construction; only lazily
      computed element entities are memoized
    - An element entity is a regular EntityDef named ``<parent>.<attr>``

How to change safely:
    - New derived facts must be pure functions of name, attributes and options
    - Never change table/database naming for existing entities; stored data
      depends on it

Example:
    >>> from nodedb.schema.assertions import Array, Int, Str
    >>> person = EntityDef.build(
    ...     "myapp.contacts.Person",
    ...     {"age": Int(min=0, max=150), "nicknames": Array(Str())},
    ... )
    >>> person.database_name, person.table_name
    ('myapp', 'contacts_person')
    >>> person.element_entity("nicknames").table_name
    'contacts_person_nicknames'
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ..errors import InvalidArgument, PrimaryKeyMissing
from .assertions import ID, ExtID, Int, Name, Str, Timestamp
from .types import TypeDef, TypeKind

PARENT_ID = "parent_id"
ELEMENT_INDEX = "element_index"
ELEMENT_KEY = "element_key"
ELEMENT_VALUE = "element_value"


class StorageType(Enum):
    """SQL backing store used by an entity."""

    AUTO = "auto"
    NONE = "none"
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"

    @classmethod
    def from_str(cls, value: str) -> StorageType:
        """Convert string representation to StorageType.

        Raises:
            InvalidArgument: If value is not a valid storage type
        """
        for storage in cls:
            if storage.value == value.lower():
                return storage
        valid = [s.value for s in cls]
        raise InvalidArgument(f"Invalid storage type '{value}'. Valid types: {valid}")


class FlatfileFormat(Enum):
    """Serialization format of flatfile stores."""

    YAML = "yaml"
    JSON = "json"


@dataclass(frozen=True)
class EntityOptions:
    """Class configuration for an entity.

    Attributes:
        storage: SQL backing store (None means the configured default)
        flatfile: Flatfile format, or None for no flatfile store
        versioned: Keep version archive history of flatfiles (YAML only)
        cache_ttl: Cache TTL in seconds (None means configured default, 0 disables)
        use_foreign_keys: Emit REFERENCES clauses (None means dialect default)
        primary_key: Primary key attribute name
        database_name: Override for the derived database name
        table_name: Override for the derived table name
        settings: Per-entity overrides of Settings fields
        presave: Called as ``presave(repository, node)`` after validation and
            before anything is written; raise to refuse the save
    """

    storage: Optional[StorageType] = None
    flatfile: Optional[FlatfileFormat] = None
    versioned: bool = False
    cache_ttl: Optional[int] = None
    use_foreign_keys: Optional[bool] = None
    primary_key: str = "id"
    database_name: Optional[str] = None
    table_name: Optional[str] = None
    settings: Mapping[str, Any] = field(default_factory=dict)
    presave: Optional[Callable[..., None]] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.versioned and self.flatfile != FlatfileFormat.YAML:
            raise InvalidArgument("Version archives require a YAML flatfile store")
        if self.cache_ttl is not None and self.cache_ttl < 0:
            raise InvalidArgument("cache_ttl must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage": self.storage.value if self.storage else None,
            "flatfile": self.flatfile.value if self.flatfile else None,
            "versioned": self.versioned,
            "cache_ttl": self.cache_ttl,
            "use_foreign_keys": self.use_foreign_keys,
            "primary_key": self.primary_key,
            "database_name": self.database_name,
            "table_name": self.table_name,
        }


def base_attributes() -> dict[str, TypeDef]:
    """Attributes every entity starts with."""
    return {
        "id": ID(),
        "name": Name(),
        "ctime": Timestamp(),
        "mtime": Timestamp(),
    }


class EntityDef:
    """Definition of a persistable entity.

    Attributes:
        name: Dotted entity name ("myapp.contacts.Person")
        attributes: Attribute name to TypeDef, base attributes included
        options: Class configuration
        parent: Owning entity and attribute, for element entities
    """

    def __init__(
        self,
        name: str,
        attributes: Mapping[str, TypeDef],
        options: Optional[EntityOptions] = None,
        parent: Optional[tuple[EntityDef, str]] = None,
    ) -> None:
        if not name or name.startswith(".") or name.endswith("."):
            raise InvalidArgument(f"Invalid entity name '{name}'")
        self.name = name
        self.options = options or EntityOptions()
        self.parent = parent
        self._attributes = dict(attributes)
        self._elements: dict[str, EntityDef] = {}
        self._lock = threading.Lock()

        for attr, typedef in self._attributes.items():
            if not isinstance(typedef, TypeDef):
                raise InvalidArgument(
                    f"Attribute '{attr}' of {name} must be a TypeDef, got {type(typedef).__name__}"
                )
        if self.primary_key not in self._attributes:
            raise PrimaryKeyMissing(
                f"Entity {name} has no Type for primary key '{self.primary_key}'",
                entity=name,
            )
        for attr, typedef in self._attributes.items():
            for co_key in typedef.co_keys:
                if co_key not in self._attributes:
                    raise InvalidArgument(
                        f"Unique co-key '{co_key}' of {name}.{attr} is not an attribute"
                    )

    @classmethod
    def build(
        cls,
        name: str,
        attributes: Optional[Mapping[str, TypeDef]] = None,
        extends: Optional[EntityDef] = None,
        options: Optional[EntityOptions] = None,
    ) -> EntityDef:
        """Merge base, inherited and own attributes into a new entity.

        Args:
            name: Dotted entity name
            attributes: Own attributes; override inherited ones
            extends: Entity whose attributes (and options, if none given) are inherited
            options: Class configuration
        """
        merged = base_attributes()
        if extends is not None:
            merged.update(extends.attributes)
            if options is None:
                options = extends.options
        merged.update(attributes or {})
        return cls(name, merged, options)

    # -- names -------------------------------------------------------------

    @property
    def attributes(self) -> dict[str, TypeDef]:
        """Copy of the attribute table."""
        return dict(self._attributes)

    def attribute_names(self) -> list[str]:
        return sorted(self._attributes)

    def has_attribute(self, attr: str) -> bool:
        return attr in self._attributes

    def type_of(self, attr: str) -> TypeDef:
        """TypeDef of an attribute.

        Raises:
            InvalidArgument: If the attribute is not declared
        """
        try:
            return self._attributes[attr]
        except KeyError:
            raise InvalidArgument(f"{self.name} has no attribute '{attr}'") from None

    @property
    def database_name(self) -> str:
        """Lowercased first segment of the entity name."""
        if self.options.database_name:
            return self.options.database_name
        return self.name.split(".")[0].lower()

    @property
    def table_name(self) -> str:
        """Remaining name segments joined by ``_``, lowercased."""
        if self.options.table_name:
            return self.options.table_name
        segments = self.name.split(".")
        rest = segments[1:] or segments
        return "_".join(rest).lower()

    @property
    def path_segments(self) -> list[str]:
        """Directory segments for flatfile storage."""
        return self.name.split(".")

    @property
    def primary_key(self) -> str:
        return self.options.primary_key

    @property
    def primary_key_type(self) -> TypeDef:
        return self._attributes[self.primary_key]

    @property
    def has_serial_key(self) -> bool:
        return self.primary_key_type.serial

    @property
    def has_guid_key(self) -> bool:
        return self.primary_key_type.kind == TypeKind.ID

    def cache_key(self, key: Any) -> str:
        """Cache key: the bare id when ids are globally unique GUIDs."""
        if self.has_guid_key:
            return str(key)
        return f"{self.name}:{key}"

    @property
    def is_element(self) -> bool:
        return self.parent is not None

    # -- attribute groups --------------------------------------------------

    def column_attributes(self) -> list[str]:
        """Attributes stored as columns (everything but linked collections), sorted."""
        return [a for a in self.attribute_names() if not self._attributes[a].is_collection]

    def collection_attributes(self) -> list[str]:
        """Attributes whose values live in element tables, sorted."""
        return [a for a in self.attribute_names() if self._attributes[a].is_collection]

    def indexed_attributes(self) -> list[str]:
        """Attributes participating in the full-text index, sorted."""
        return [a for a in self.attribute_names() if self._attributes[a].indexed]

    def reference_attributes(self) -> list[str]:
        """Scalar attributes referencing another entity, sorted."""
        return [
            a
            for a in self.column_attributes()
            if self._attributes[a].member_class is not None
        ]

    # -- element entities --------------------------------------------------

    def element_entity(self, attr: str) -> EntityDef:
        """Linked element entity for a collection attribute (memoized).

        Raises:
            InvalidArgument: If ``attr`` is not a collection attribute
        """
        typedef = self.type_of(attr)
        if not typedef.is_collection:
            raise InvalidArgument(f"{self.name}.{attr} is not a collection attribute")
        with self._lock:
            element = self._elements.get(attr)
            if element is None:
                element = self._build_element(attr, typedef)
                self._elements[attr] = element
            return element

    def _build_element(self, attr: str, typedef: TypeDef) -> EntityDef:
        member = typedef.member_type or Str()
        if member.kind.is_collection:
            member = member.replace(embedded=True, column_type="TEXT", optional=True)

        attributes: dict[str, TypeDef] = {
            "id": ID(),
            "ctime": Timestamp(),
            "mtime": Timestamp(),
            PARENT_ID: ExtID(self),
            ELEMENT_VALUE: member,
        }
        if typedef.kind == TypeKind.ARRAY:
            attributes[ELEMENT_INDEX] = Int()
        else:
            attributes[ELEMENT_KEY] = Str()

        options = EntityOptions(
            storage=self.options.storage,
            cache_ttl=0,
            use_foreign_keys=self.options.use_foreign_keys,
            database_name=self.database_name,
            table_name=f"{self.table_name}_{attr.lower()}",
            settings=self.options.settings,
        )
        return EntityDef(f"{self.name}.{attr}", attributes, options, parent=(self, attr))

    # -- presentation ------------------------------------------------------

    @staticmethod
    def pretty(attr: str) -> str:
        """Human label for an attribute name ("element_value" -> "Element Value")."""
        return " ".join(part.capitalize() for part in attr.split("_") if part)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "database": self.database_name,
            "table": self.table_name,
            "primary_key": self.primary_key,
            "attributes": {a: self._attributes[a].to_dict() for a in self.attribute_names()},
            "options": self.options.to_dict(),
        }

    def __repr__(self) -> str:
        return f"EntityDef({self.name!r})"


__all__ = [
    "ELEMENT_INDEX",
    "ELEMENT_KEY",
    "ELEMENT_VALUE",
    "EntityDef",
    "EntityOptions",
    "FlatfileFormat",
    "PARENT_ID",
    "StorageType",
    "base_attributes",
]
