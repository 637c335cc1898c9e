"""
Conversion between node values and stored representations.

Three representations exist besides the in-memory Node:

- rows: one dict per SQL row, attribute name to storage value
  (TypeDef.to_storage / from_storage)
- documents: plain dicts of JSON/YAML-safe values, used by flatfiles and
  cache entries; collections are kept whole
- element rows: one row per collection element in the element table

Invariants:
    - from_document(to_document(x)) == x for validated values
    - Array element rows carry ``element_index`` 0..n-1; loading orders by it
    - Hash element rows carry ``element_key``; loading rebuilds the mapping
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Optional

from ..errors import DataConversionFailed
from ..runtime import new_guid
from ..schema.entity import ELEMENT_INDEX, ELEMENT_KEY, ELEMENT_VALUE, PARENT_ID, EntityDef
from ..schema.types import TypeDef, TypeKind
from .node import Node


def apply_defaults(entity: EntityDef, node: Node) -> None:
    """Fill unset attributes that declare a default."""
    for attr in entity.attribute_names():
        typedef = entity.type_of(attr)
        if typedef.default is not None and not node.is_set(attr):
            node.set(attr, typedef.default_value())


# ---------------------------------------------------------------------------
# SQL rows
# ---------------------------------------------------------------------------


def from_row(entity: EntityDef, row: Mapping[str, Any]) -> dict[str, Any]:
    """Python values of the column attributes present in ``row``."""
    values = {}
    for attr, raw in row.items():
        if entity.has_attribute(attr):
            values[attr] = entity.type_of(attr).from_storage(raw)
    return values


def element_rows(
    entity: EntityDef, attr: str, parent_key: Any, value: Any, stamp: float
) -> list[dict[str, Any]]:
    """Element-table rows for one collection value."""
    if value is None:
        return []
    typedef = entity.type_of(attr)
    rows = []
    if typedef.kind == TypeKind.ARRAY:
        for index, element in enumerate(value):
            rows.append(_element_row(parent_key, stamp, ELEMENT_INDEX, index, element))
    else:
        for element_key, element in value.items():
            rows.append(_element_row(parent_key, stamp, ELEMENT_KEY, str(element_key), element))
    return rows


def _element_row(parent_key: Any, stamp: float, slot: str, position: Any, element: Any) -> dict[str, Any]:
    return {
        "id": new_guid(),
        "ctime": stamp,
        "mtime": stamp,
        PARENT_ID: parent_key,
        slot: position,
        ELEMENT_VALUE: element,
    }


def assemble_collection(typedef: TypeDef, element: EntityDef, rows: list[Mapping[str, Any]]) -> Any:
    """Rebuild a list or mapping from element rows (already in order)."""
    member = element.type_of(ELEMENT_VALUE)
    if typedef.kind == TypeKind.ARRAY:
        return [member.from_storage(row[ELEMENT_VALUE]) for row in rows]
    return {str(row[ELEMENT_KEY]): member.from_storage(row[ELEMENT_VALUE]) for row in rows}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def _encode(typedef: Optional[TypeDef], value: Any) -> Any:
    if value is None or typedef is None:
        return value
    if typedef.kind.is_collection:
        member = typedef.member_type
        if isinstance(value, Mapping):
            return {str(k): _encode(member, v) for k, v in value.items()}
        return [_encode(member, v) for v in value]
    if typedef.kind == TypeKind.BOOL:
        return bool(typedef.to_storage(value))
    return typedef.to_storage(value)


def _decode(typedef: Optional[TypeDef], raw: Any) -> Any:
    if raw is None or typedef is None:
        return raw
    if typedef.kind.is_collection:
        member = typedef.member_type
        if isinstance(raw, Mapping):
            return {str(k): _decode(member, v) for k, v in raw.items()}
        if isinstance(raw, list):
            return [_decode(member, v) for v in raw]
        raise DataConversionFailed(f"Expected a collection, got {type(raw).__name__}")
    return typedef.from_storage(raw)


def to_document(entity: EntityDef, values: Mapping[str, Any]) -> dict[str, Any]:
    """Plain, serializable dict of all set attributes, in attribute order."""
    return {
        attr: _encode(entity.type_of(attr), values[attr])
        for attr in entity.attribute_names()
        if attr in values
    }


def from_document(entity: EntityDef, data: Mapping[str, Any], source: Optional[str] = None) -> dict[str, Any]:
    """Python values from a document; unknown keys are rejected.

    Raises:
        DataConversionFailed: On unknown attributes or unconvertible values
    """
    values = {}
    for attr, raw in data.items():
        if not entity.has_attribute(attr):
            raise DataConversionFailed(f"{entity.name} has no attribute '{attr}'", source=source)
        values[attr] = _decode(entity.type_of(attr), raw)
    return values


def encode_cache(entity: EntityDef, values: Mapping[str, Any]) -> bytes:
    return json.dumps(to_document(entity, values), separators=(",", ":")).encode("utf-8")


def decode_cache(entity: EntityDef, data: bytes) -> dict[str, Any]:
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DataConversionFailed(f"Corrupt cache entry for {entity.name}: {exc}", source="cache") from exc
    return from_document(entity, document, source="cache")
