"""
Type (assertion) engine for NodeDB.

A TypeDef is the contract of one entity attribute: a base predicate for
its primitive kind, plus optional subtype rules (allowed values, size,
range, pattern) and schema hints (column type, uniqueness, references).

This module defines:
- TypeKind: The primitive kinds an attribute can have
- TypeDef: Immutable validation + schema rule for one attribute
- ReferenceCheck: Allowed-predicate that verifies a referenced row exists
- Base predicates: is_str, is_int, is_float, is_bool, is_array, ...

Invariants:
    - TypeDefs are immutable and shared by every instance of an entity
    - Validation is pure; the only I/O is delegated to a ReferenceCheck
      through the caller-supplied context
    - Validation order is fixed: null, allowed, size, range, regex, base
      predicate, members. The first failure wins.
    - Integer-ness is ``^\\d+$``: negative integers are rejected

How to change safely:
    - Add new kinds at the end of TypeKind and give them a predicate
      plus storage conversion
    - Never reorder validation steps; error kinds depend on it

Example:
    >>> from nodedb.schema.assertions import Int
    >>> age = Int(min=0, max=150)
    >>> age.validate("age", 30)
    >>> age.validate("age", 200)
    Traceback (most recent call last):
    ...
    nodedb.errors.OutOfRange: Assertion for "age" value "200" failed: ...
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

import yaml

from ..errors import (
    AssertFailed,
    DataConversionFailed,
    MissingRequiredValue,
    OutOfRange,
    PatternMismatch,
    SizeMismatch,
    TypeMismatch,
    ValueNotAllowed,
)
from ..runtime import normalize_guid

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")
_INT_RE = re.compile(r"^\d+$")
_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})$")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]{22}==$")

YAML_DOCUMENT_START = "---"


class TypeKind(Enum):
    """Primitive kinds an attribute can have.

    The kind selects the base predicate and the storage conversion.
    """

    STR = "str"
    NAME = "name"
    ID = "id"
    INT = "int"
    NUM = "num"
    FLOAT = "float"
    DOUBLE = "double"
    BOOL = "bool"
    DATETIME = "datetime"
    TIMESPAN = "timespan"
    SERIAL = "serial"
    EXTID = "extid"
    ARRAY = "array"
    HASH = "hash"
    RULE = "rule"

    @classmethod
    def from_str(cls, value: str) -> TypeKind:
        """Convert string representation to TypeKind.

        Raises:
            ValueError: If value is not a valid kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid type kind '{value}'. Valid kinds: {valid}")

    @property
    def is_collection(self) -> bool:
        return self in (TypeKind.ARRAY, TypeKind.HASH)

    @property
    def is_integral(self) -> bool:
        return self in (TypeKind.INT, TypeKind.SERIAL)

    @property
    def is_real(self) -> bool:
        return self in (
            TypeKind.NUM,
            TypeKind.FLOAT,
            TypeKind.DOUBLE,
            TypeKind.DATETIME,
            TypeKind.TIMESPAN,
        )


# ---------------------------------------------------------------------------
# Base predicates
# ---------------------------------------------------------------------------


def looks_like_number(value: Any) -> bool:
    """Locale-independent numeric check."""
    if isinstance(value, (bool, int, float, Decimal)):
        return True
    if isinstance(value, str):
        return bool(_NUMBER_RE.match(value))
    return False


def is_str(value: Any) -> None:
    """Value is defined and either a plain scalar or string-coercible."""
    if value is None:
        raise TypeMismatch("Received undef value")
    if isinstance(value, (str, int, float, Decimal)):
        return
    if isinstance(value, (Mapping, list, tuple, set, frozenset, bytes, bytearray)):
        raise TypeMismatch(f"{type(value).__name__} is not a string")
    if type(value).__str__ is object.__str__:
        raise TypeMismatch(f"{type(value).__name__} is not string-coercible")


def is_float(value: Any) -> None:
    """Value looks like a number."""
    if value is None or not looks_like_number(value):
        raise TypeMismatch("Received non-numeric value")


def is_int(value: Any) -> None:
    """Value is a non-negative whole number."""
    if value is None or isinstance(value, bool) or not _INT_RE.match(str(value)):
        raise TypeMismatch("Received non-integer value")


def is_bool(value: Any) -> None:
    """Value is exactly 0 or 1."""
    if not looks_like_number(value) or float(value) not in (0.0, 1.0):
        raise TypeMismatch("Received non-boolean value")


def is_array(value: Any) -> None:
    if not isinstance(value, (list, tuple)):
        raise TypeMismatch("Received non-list value")


def is_hash(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise TypeMismatch("Received non-mapping value")


def is_id(value: Any) -> None:
    """Value is a GUID, in base64 or hyphenated form."""
    is_str(value)
    if not _BASE64_RE.match(normalize_guid(value)):
        raise TypeMismatch("Received malformed GUID")


def is_datetime(value: Any) -> None:
    """Value is an epoch number, a datetime, or "YYYY-MM-DD HH:MM:SS"."""
    if isinstance(value, (datetime, date)) or looks_like_number(value):
        return
    if isinstance(value, str) and _DATETIME_RE.match(value):
        return
    raise TypeMismatch("Received non-datetime value")


def is_timespan(value: Any) -> None:
    if isinstance(value, timedelta) or looks_like_number(value):
        return
    raise TypeMismatch("Received non-timespan value")


def is_rule(value: Any) -> None:
    """Value is a regular expression (pattern text or compiled)."""
    if isinstance(value, re.Pattern):
        return
    if not isinstance(value, str):
        raise TypeMismatch("Received non-pattern value")
    try:
        re.compile(value)
    except re.error as exc:
        raise TypeMismatch(f"Invalid pattern: {exc}") from exc


def to_epoch(value: Any) -> float:
    """Convert a datetime-ish value to epoch seconds.

    Strings in "YYYY-MM-DD HH:MM:SS" form are read as local time.
    """
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, date):
        return time.mktime(value.timetuple())
    if isinstance(value, str):
        match = _DATETIME_RE.match(value)
        if match:
            parts = [int(p) for p in match.groups()]
            return time.mktime((*parts, 0, 0, -1))
    return float(value)


def to_seconds(value: Any) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def measure(value: Any) -> int:
    """Polymorphic size: element count for collections, else string length."""
    if isinstance(value, (Mapping, list, tuple)):
        return len(value)
    return len(str(value))


# ---------------------------------------------------------------------------
# Reference checks
# ---------------------------------------------------------------------------


class ValidationContext(Protocol):
    """Runtime services a ReferenceCheck may call during validation."""

    def reference_exists(self, entity_name: str, value: Any) -> bool:
        """True if an object of the named entity has primary key ``value``."""
        ...

    def query_reference(self, entity_name: str, query: str, value: Any) -> bool:
        """Run a boolean query in the named entity's store."""
        ...


@dataclass(frozen=True)
class ReferenceCheck:
    """Allowed-predicate for foreign-key-like attributes.

    Attributes:
        entity: Name of the referenced entity
        query: Optional boolean SQL query replacing the existence check;
            ``{value}`` is bound to the value under test
    """

    entity: str
    query: Optional[str] = None

    def check(self, key: str, value: Any, context: Optional[ValidationContext]) -> None:
        if context is None:
            logger.debug(
                f"Skipping reference check for {key}: no context",
                extra={"entity": self.entity},
            )
            return
        if self.query is not None:
            found = context.query_reference(self.entity, self.query, value)
        else:
            found = context.reference_exists(self.entity, value)
        if not found:
            raise ValueNotAllowed(f"Referenced {self.entity} does not exist", key, value)


Allowed = Union[tuple, Callable[[Any], Any], ReferenceCheck, None]


# ---------------------------------------------------------------------------
# TypeDef
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class TypeDef:
    """Validation and schema rule for one attribute.

    Attributes:
        kind: Primitive kind
        code: Base predicate; raises AssertFailed on rejection
        allowed: Tuple of permitted values, a predicate, or a ReferenceCheck
        default: Value used when the attribute is unset
        optional: Whether None is acceptable
        min: Numeric lower bound
        max: Numeric upper bound
        size: Exact size
        min_size: Minimum size
        max_size: Maximum size
        regex: Pattern the string form must match
        column_type: Backing-store column type; None means the kind default
        unique: True, or a tuple of co-key attribute names
        serial: Auto-increment primary key
        member_type: Element Type for collections
        member_class: Referenced entity name for foreign-key-like attributes
        sql_value: Literal SQL used for inserts and updates
        sql_insert_value: Literal SQL used for inserts
        sql_update_value: Literal SQL used for updates
        indexed: Participates in the full-text index
        delete_ref_opt: ON DELETE action for references
        update_ref_opt: ON UPDATE action for references
        description: Human description
        example: Example value
        embedded: Collection stored inline as a YAML document
    """

    kind: TypeKind
    code: Callable[[Any], None]
    allowed: Allowed = None
    default: Any = None
    optional: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    size: Optional[int] = None
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    regex: Optional[str] = None
    column_type: Optional[str] = None
    unique: Union[bool, tuple[str, ...]] = False
    serial: bool = False
    member_type: Optional[TypeDef] = None
    member_class: Optional[str] = None
    sql_value: Optional[str] = None
    sql_insert_value: Optional[str] = None
    sql_update_value: Optional[str] = None
    indexed: bool = False
    delete_ref_opt: Optional[str] = None
    update_ref_opt: Optional[str] = None
    description: Optional[str] = None
    example: Optional[str] = None
    embedded: bool = False

    # -- derived facts -----------------------------------------------------

    @property
    def is_collection(self) -> bool:
        """True if values live in a linked element table."""
        return self.kind.is_collection and not self.embedded

    @property
    def external_class(self) -> Optional[str]:
        """Referenced entity name, looking through collection wrappers."""
        if self.member_class is not None:
            return self.member_class
        if self.member_type is not None:
            return self.member_type.external_class
        return None

    @property
    def co_keys(self) -> tuple[str, ...]:
        return self.unique if isinstance(self.unique, tuple) else ()

    def replace(self, **changes: Any) -> TypeDef:
        """Return a copy with fields replaced."""
        return replace(self, **changes)

    # -- validation --------------------------------------------------------

    def validate(self, key: str, value: Any, context: Optional[ValidationContext] = None) -> None:
        """Validate ``value`` for attribute ``key``.

        Args:
            key: Attribute name, used in error messages
            value: Value to check
            context: Services for reference checks (the persistence engine)

        Raises:
            AssertFailed: Subclass naming the failed rule
        """
        if value is None:
            if self.optional:
                return
            raise MissingRequiredValue("Value is required", key, value)

        self._check_allowed(key, value, context)
        self._check_size(key, value)
        self._check_range(key, value)

        if self.regex is not None and not re.search(self.regex, str(value)):
            raise PatternMismatch(f"Value does not match /{self.regex}/", key, value)

        try:
            self.code(value)
        except AssertFailed as exc:
            raise TypeMismatch(exc.reason, key, value) from exc

        if self.member_type is not None:
            self._check_members(key, value, context)

    def _check_allowed(self, key: str, value: Any, context: Optional[ValidationContext]) -> None:
        allowed = self.allowed
        if allowed is None:
            return
        if isinstance(allowed, ReferenceCheck):
            allowed.check(key, value, context)
        elif callable(allowed):
            if not allowed(value):
                raise ValueNotAllowed("Value is not permitted", key, value)
        elif allowed and value not in allowed:
            shown = ", ".join(str(v) for v in allowed)
            raise ValueNotAllowed(f"Value is not in the allowed list ({shown})", key, value)

    def _check_size(self, key: str, value: Any) -> None:
        if self.size is None and self.min_size is None and self.max_size is None:
            return
        actual = measure(value)
        if self.size is not None and actual != self.size:
            raise SizeMismatch(f"Size of {actual} does not match required size {self.size}", key, value)
        if self.min_size is not None and actual < self.min_size:
            raise SizeMismatch(f"Size of {actual} is below minimum size {self.min_size}", key, value)
        if self.max_size is not None and actual > self.max_size:
            raise SizeMismatch(f"Size of {actual} exceeds maximum size {self.max_size}", key, value)

    def _check_range(self, key: str, value: Any) -> None:
        if self.min is None and self.max is None:
            return
        if isinstance(value, (Mapping, list, tuple)):
            return
        try:
            number = self.numeric(value)
        except (TypeError, ValueError, OverflowError) as exc:
            raise TypeMismatch("Value is not numeric", key, value) from exc
        if self.min is not None and number < self.min:
            raise OutOfRange(f"Value is less than minimum {self.min}", key, value)
        if self.max is not None and number > self.max:
            raise OutOfRange(f"Value is greater than maximum {self.max}", key, value)

    def _check_members(self, key: str, value: Any, context: Optional[ValidationContext]) -> None:
        member = self.member_type
        assert member is not None
        if isinstance(value, Mapping):
            for element_key, element in value.items():
                member.validate(f"{key}[{element_key}]", element, context)
        elif isinstance(value, (list, tuple)):
            for index, element in enumerate(value):
                member.validate(f"{key}[{index}]", element, context)

    def numeric(self, value: Any) -> float:
        """Numeric coercion used by min/max."""
        if self.kind == TypeKind.DATETIME:
            return to_epoch(value)
        if self.kind == TypeKind.TIMESPAN:
            return to_seconds(value)
        return float(value)

    # -- storage representation --------------------------------------------

    def to_storage(self, value: Any) -> Any:
        """Convert a validated value to its storage representation."""
        if value is None:
            return None
        kind = self.kind
        if self.embedded:
            return yaml.safe_dump(_plain(value), explicit_start=True, default_flow_style=False, sort_keys=False)
        if kind == TypeKind.BOOL:
            return 1 if float(value) else 0
        if kind.is_integral:
            return int(value)
        if kind == TypeKind.DATETIME:
            return to_epoch(value)
        if kind == TypeKind.TIMESPAN:
            return to_seconds(value)
        if kind in (TypeKind.NUM, TypeKind.FLOAT, TypeKind.DOUBLE):
            return float(value)
        if kind == TypeKind.ID:
            return normalize_guid(value)
        if kind == TypeKind.RULE and isinstance(value, re.Pattern):
            return value.pattern
        if kind in (TypeKind.STR, TypeKind.NAME, TypeKind.RULE):
            return str(value)
        if kind.is_collection:
            return _plain(value)
        return value

    def from_storage(self, raw: Any) -> Any:
        """Convert a stored value back to its Python representation.

        Raises:
            DataConversionFailed: If the stored value cannot be converted
        """
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        kind = self.kind
        try:
            if self.embedded:
                if isinstance(raw, str) and raw.startswith(YAML_DOCUMENT_START):
                    return yaml.safe_load(raw)
                return raw
            if kind == TypeKind.BOOL:
                return bool(int(float(raw)))
            if kind.is_integral:
                return int(raw)
            if kind.is_real:
                return float(raw)
            if kind in (TypeKind.STR, TypeKind.NAME, TypeKind.ID, TypeKind.RULE):
                return str(raw)
        except (TypeError, ValueError, yaml.YAMLError) as exc:
            raise DataConversionFailed(f"Cannot convert stored value {raw!r} to {kind.value}: {exc}") from exc
        return raw

    def default_value(self) -> Any:
        """Default value, copied so collections are never shared."""
        if isinstance(self.default, list):
            return list(self.default)
        if isinstance(self.default, dict):
            return dict(self.default)
        return self.default

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation (schema fingerprints and docs)."""
        result: dict[str, Any] = {"kind": self.kind.value}
        if isinstance(self.allowed, ReferenceCheck):
            result["references"] = self.allowed.entity
            if self.allowed.query:
                result["reference_query"] = self.allowed.query
        elif callable(self.allowed):
            result["allowed"] = "<predicate>"
        elif self.allowed:
            result["allowed"] = [_plain(v) for v in self.allowed]
        for name in (
            "default",
            "min",
            "max",
            "size",
            "min_size",
            "max_size",
            "regex",
            "column_type",
            "member_class",
            "sql_value",
            "sql_insert_value",
            "sql_update_value",
            "delete_ref_opt",
            "update_ref_opt",
            "description",
            "example",
        ):
            value = getattr(self, name)
            if value is not None:
                result[name] = _plain(value)
        for flag in ("optional", "serial", "indexed", "embedded"):
            if getattr(self, flag):
                result[flag] = True
        if self.unique:
            result["unique"] = list(self.unique) if isinstance(self.unique, tuple) else True
        if self.member_type is not None:
            result["member_type"] = self.member_type.to_dict()
        return result

    def __repr__(self) -> str:
        return f"TypeDef({self.to_dict()!r})"


def _plain(value: Any) -> Any:
    """Convert tuples and mappings into plain lists and dicts for dumping."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


__all__ = [
    "ReferenceCheck",
    "TypeDef",
    "TypeKind",
    "ValidationContext",
    "is_array",
    "is_bool",
    "is_datetime",
    "is_float",
    "is_hash",
    "is_id",
    "is_int",
    "is_rule",
    "is_str",
    "is_timespan",
    "looks_like_number",
    "measure",
    "to_epoch",
    "to_seconds",
]
