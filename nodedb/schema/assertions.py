"""
Type constructors for NodeDB entity attributes.

Each constructor returns a TypeDef for one primitive kind, with the kind's
default column type and rules applied first and caller rules layered on top.

Arguments accepted by every constructor:
- Keyword subtype rules, parsed through the rule catalog
  (``Int(min=0, max=150)``)
- Positional Subtype objects from ``subtype(...)``
- Positional plain values: the allowed list (``Str("red", "green")``)
- A single positional callable: the allowed predicate

Example:
    >>> from nodedb.schema.assertions import Array, ExtID, Int, Str
    >>> attributes = {
    ...     "age": Int(min=0, max=150),
    ...     "color": Str("red", "green", optional=True),
    ...     "tags": Array(Str(max_size=32)),
    ... }
"""

from __future__ import annotations

from typing import Any, Optional, Union

from ..errors import AssertFailed, InvalidArgument
from .rules import collect
from .types import (
    ReferenceCheck,
    TypeDef,
    TypeKind,
    is_array,
    is_bool,
    is_datetime,
    is_float,
    is_hash,
    is_id,
    is_int,
    is_rule,
    is_str,
    is_timespan,
)

MAX_EPOCH = 2**32


def _build(kind: TypeKind, code: Any, args: tuple, rules: dict[str, Any], **defaults: Any) -> TypeDef:
    allowed, parsed = collect(args, rules)
    fields = dict(defaults)
    fields.update(parsed)

    if len(allowed) == 1 and callable(allowed[0]) and not isinstance(allowed[0], TypeDef):
        fields["allowed"] = allowed[0]
    elif allowed:
        fields["allowed"] = tuple(allowed)

    typedef = TypeDef(kind=kind, code=code, **fields)
    _check_default(typedef)
    return typedef


def _check_default(typedef: TypeDef) -> None:
    """A required attribute's default must satisfy the base predicate."""
    if typedef.default is None or typedef.optional:
        return
    try:
        typedef.code(typedef.default)
    except AssertFailed as exc:
        raise InvalidArgument(
            f"Default {typedef.default!r} is not a valid {typedef.kind.value}: {exc.reason}",
            details={"kind": typedef.kind.value},
        ) from exc


def Str(*args: Any, **rules: Any) -> TypeDef:
    """String attribute, VARCHAR(1024) by default."""
    return _build(TypeKind.STR, is_str, args, rules, column_type="VARCHAR(1024)", max_size=1024)


def Name(*args: Any, **rules: Any) -> TypeDef:
    """Human-readable secondary key: unique and optional unless overridden."""
    defaults: dict[str, Any] = {"unique": True, "optional": True}
    if "column_type" not in rules:
        defaults.update(column_type="VARCHAR(128)", max_size=128)
    return _build(TypeKind.NAME, is_str, args, rules, **defaults)


def ID(*args: Any, **rules: Any) -> TypeDef:
    """GUID primary key; always optional so unsaved objects validate."""
    typedef = _build(TypeKind.ID, is_id, args, rules, column_type="CHAR(24)")
    return typedef.replace(optional=True)


def Int(*args: Any, **rules: Any) -> TypeDef:
    """Non-negative integer attribute."""
    return _build(TypeKind.INT, is_int, args, rules, column_type="INT(11)", max_size=11)


def Num(*args: Any, **rules: Any) -> TypeDef:
    """Any number."""
    return _build(TypeKind.NUM, is_float, args, rules, column_type="DOUBLE(30,10)")


def Float(*args: Any, **rules: Any) -> TypeDef:
    return _build(TypeKind.FLOAT, is_float, args, rules, column_type="FLOAT")


def Double(*args: Any, **rules: Any) -> TypeDef:
    """Double-precision number, defaulting to 0.0."""
    return _build(TypeKind.DOUBLE, is_float, args, rules, column_type="DOUBLE(30,10)", default=0.0)


def Bool(*args: Any, **rules: Any) -> TypeDef:
    """Boolean stored as 0/1; never optional."""
    typedef = _build(
        TypeKind.BOOL,
        is_bool,
        args,
        rules,
        column_type="INTEGER(1)",
        allowed=(0, 1),
        default=False,
    )
    return typedef.replace(optional=False)


def DateTime(*args: Any, **rules: Any) -> TypeDef:
    """Point in time as epoch seconds, stored in a numeric column."""
    return _build(
        TypeKind.DATETIME,
        is_datetime,
        args,
        rules,
        column_type="DOUBLE(15,4)",
        min=0,
        max=MAX_EPOCH,
        optional=True,
    )


def Timestamp(**rules: Any) -> TypeDef:
    """Engine-managed timestamp stored in the dialect's native datetime column."""
    return _build(TypeKind.DATETIME, is_datetime, (), rules, min=0, max=MAX_EPOCH, optional=True)


def TimeSpan(*args: Any, **rules: Any) -> TypeDef:
    """Duration in seconds."""
    return _build(
        TypeKind.TIMESPAN,
        is_timespan,
        args,
        rules,
        column_type="DOUBLE(15,4)",
        min=0,
        max=MAX_EPOCH,
        default=0.0,
    )


def Serial(*args: Any, **rules: Any) -> TypeDef:
    """Auto-increment integer primary key assigned by the backing store."""
    return _build(
        TypeKind.SERIAL,
        is_int,
        args,
        rules,
        column_type="INTEGER",
        serial=True,
        optional=True,
    )


def ExtID(target: Union[str, Any], *args: Any, query: Optional[str] = None, **rules: Any) -> TypeDef:
    """Foreign-key-like reference to another entity's primary key.

    Args:
        target: Referenced EntityDef, or its declared name
        query: Optional boolean SQL query replacing the existence check;
            ``{value}`` is bound to the value under test

    The column type follows the referenced primary key when the EntityDef
    is given; otherwise the driver resolves it through the registry.
    """
    if isinstance(target, str):
        name, column_type = target, None
    else:
        name = target.name
        pk_type = target.primary_key_type
        column_type = pk_type.column_type if pk_type.column_type else None
    typedef = _build(TypeKind.EXTID, is_str, args, rules, column_type=column_type)
    return typedef.replace(allowed=ReferenceCheck(name, query), member_class=name)


def Array(member_type: Optional[TypeDef] = None, *args: Any, **rules: Any) -> TypeDef:
    """Ordered collection; elements live in a linked element table."""
    if member_type is None:
        member_type = Str()
    elif not isinstance(member_type, TypeDef):
        raise InvalidArgument("Array member type must be a TypeDef")
    typedef = _build(TypeKind.ARRAY, is_array, args, rules)
    return typedef.replace(member_type=member_type, column_type=None)


def Hash(member_type: Optional[TypeDef] = None, *args: Any, **rules: Any) -> TypeDef:
    """Keyed collection; entries live in a linked element table."""
    if member_type is None:
        member_type = Str()
    elif not isinstance(member_type, TypeDef):
        raise InvalidArgument("Hash member type must be a TypeDef")
    typedef = _build(TypeKind.HASH, is_hash, args, rules)
    return typedef.replace(member_type=member_type, column_type=None)


def Rule(*args: Any, **rules: Any) -> TypeDef:
    """Regular expression attribute."""
    return _build(TypeKind.RULE, is_rule, args, rules, column_type="TEXT")


__all__ = [
    "Array",
    "Bool",
    "DateTime",
    "Double",
    "ExtID",
    "Float",
    "Hash",
    "ID",
    "Int",
    "MAX_EPOCH",
    "Name",
    "Num",
    "Rule",
    "Serial",
    "Str",
    "TimeSpan",
    "Timestamp",
]
