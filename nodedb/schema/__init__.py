"""
Schema definitions for NodeDB.

This package contains:
- types: TypeDef, TypeKind and the base predicates
- rules: The subtype rule catalog
- assertions: Type constructors (Str, Int, ExtID, Array, ...)
- entity: EntityDef, EntityOptions, StorageType, FlatfileFormat
- registry: EntityRegistry and the process-wide default registry
"""

from .assertions import (
    ID,
    Array,
    Bool,
    DateTime,
    Double,
    ExtID,
    Float,
    Hash,
    Int,
    Name,
    Num,
    Rule,
    Serial,
    Str,
    TimeSpan,
    Timestamp,
)
from .entity import EntityDef, EntityOptions, FlatfileFormat, StorageType
from .registry import EntityRegistry, get_registry, reset_registry
from .rules import Subtype, SubtypeRule, subtype
from .types import ReferenceCheck, TypeDef, TypeKind

__all__ = [
    # Types
    "TypeDef",
    "TypeKind",
    "ReferenceCheck",
    # Rules
    "Subtype",
    "SubtypeRule",
    "subtype",
    # Constructors
    "Array",
    "Bool",
    "DateTime",
    "Double",
    "ExtID",
    "Float",
    "Hash",
    "ID",
    "Int",
    "Name",
    "Num",
    "Rule",
    "Serial",
    "Str",
    "TimeSpan",
    "Timestamp",
    # Entities
    "EntityDef",
    "EntityOptions",
    "FlatfileFormat",
    "StorageType",
    # Registry
    "EntityRegistry",
    "get_registry",
    "reset_registry",
]
