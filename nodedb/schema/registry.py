"""
Schema entity registry for NodeDB.

The EntityRegistry is the central authority for entity definitions.
It provides:
- Declaration of entities (base attributes + inheritance + own attributes)
- Lookup by name
- Schema fingerprinting for consistency checks between processes
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during start-up, then effectively read-only
    - Once frozen, no new entities can be declared
    - Entity names are globally unique within a registry
    - Fingerprint changes when any declared schema changes

How to change safely:
    - Declare all entities before the first persistence operation
    - Compare fingerprints across deployments before sharing a database

Example:
    >>> from nodedb.schema import EntityRegistry, Int
    >>> registry = EntityRegistry()
    >>> Person = registry.declare("myapp.Person", {"age": Int(min=0, max=150)})
    >>> registry.get("myapp.Person") is Person
    True
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, Mapping, Optional, Union

from ..errors import DuplicateEntityError, InvalidArgument, RegistryFrozenError
from .entity import EntityDef, EntityOptions
from .types import TypeDef

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: Optional[EntityRegistry] = None
_registry_lock = threading.Lock()


class EntityRegistry:
    """Central registry for entity definitions.

    Thread-safety:
        - Declaration is thread-safe (uses internal lock)
        - Lookups are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._entities: Dict[str, EntityDef] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def declare(
        self,
        name: str,
        attributes: Optional[Mapping[str, TypeDef]] = None,
        extends: Union[EntityDef, str, None] = None,
        options: Optional[EntityOptions] = None,
    ) -> EntityDef:
        """Declare and register an entity.

        Args:
            name: Dotted entity name ("myapp.contacts.Person")
            attributes: Own attributes, overriding inherited ones
            extends: Base entity (or its name) to inherit attributes from
            options: Class configuration

        Returns:
            The registered EntityDef

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateEntityError: If the name is already declared
            PrimaryKeyMissing: If the primary key has no Type
        """
        base = self.require(extends) if isinstance(extends, str) else extends
        entity = EntityDef.build(name, attributes, extends=base, options=options)
        self.register(entity)
        return entity

    def register(self, entity: EntityDef) -> None:
        """Register an already-built entity.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateEntityError: If the name is already declared
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot declare entity '{entity.name}': registry is frozen"
                )
            if entity.name in self._entities:
                raise DuplicateEntityError(
                    f"Entity '{entity.name}' is already declared", entity=entity.name
                )
            self._entities[entity.name] = entity
            logger.debug(
                f"Declared entity: {entity.name} "
                f"(database={entity.database_name}, table={entity.table_name})"
            )

    def get(self, name: str) -> Optional[EntityDef]:
        """Get an entity by name, or None."""
        return self._entities.get(name)

    def require(self, name: str) -> EntityDef:
        """Get an entity by name.

        Raises:
            InvalidArgument: If no such entity is declared
        """
        entity = self._entities.get(name)
        if entity is None:
            raise InvalidArgument(f"Entity '{name}' is not declared", details={"entity": name})
        return entity

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def entities(self) -> Iterator[EntityDef]:
        """Iterate over declared entities in declaration order."""
        yield from list(self._entities.values())

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Entity registry frozen with {len(self._entities)} entities, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def compute_fingerprint(self) -> str:
        """Fingerprint of the current schema, frozen or not."""
        return self._fingerprint or self._compute_fingerprint()

    def _compute_fingerprint(self) -> str:
        """SHA-256 over the canonical JSON form, sorted by entity name."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation."""
        return {
            "entities": [self._entities[name].to_dict() for name in sorted(self._entities)],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, default=str)


def get_registry() -> EntityRegistry:
    """Get the global registry instance, creating it on first use."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = EntityRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
