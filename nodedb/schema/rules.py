"""
Subtype rule catalog for NodeDB.

Subtype rules parameterize a Type at declaration time: bounds, sizes,
patterns, uniqueness, defaults, column-type overrides and SQL overrides.
Each rule kind is parsed by a pure function ``raw -> value`` from a static
dispatch table; unknown rule names are a declaration-time error.

Invariants:
    - The catalog is closed: SubtypeRule enumerates every accepted rule
    - Parsing never performs I/O
    - A parsed rule value is what ends up on the TypeDef field of the same name

How to change safely:
    - Add a SubtypeRule member, a parser, and a TypeDef field together
    - Never loosen an existing parser; declarations may depend on the errors

Example:
    >>> from nodedb.schema.rules import subtype
    >>> rules = subtype(min=0, max=150, column_type="tinyint")
    >>> [r.rule.value for r in rules]
    ['min', 'max', 'column_type']
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..errors import InvalidArgument
from .types import looks_like_number

REF_OPTIONS = ("CASCADE", "SET NULL", "RESTRICT", "NO ACTION")


class SubtypeRule(Enum):
    """Named modifiers accepted by Type constructors."""

    COLUMN_TYPE = "column_type"
    DEFAULT = "default"
    DELETE_REF_OPT = "delete_ref_opt"
    DESCRIPTION = "description"
    EXAMPLE = "example"
    INDEXED = "indexed"
    MAX = "max"
    MAX_SIZE = "max_size"
    MIN = "min"
    MIN_SIZE = "min_size"
    OPTIONAL = "optional"
    REGEX = "regex"
    SERIAL = "serial"
    SIZE = "size"
    SQL_INSERT_VALUE = "sql_insert_value"
    SQL_UPDATE_VALUE = "sql_update_value"
    SQL_VALUE = "sql_value"
    UNIQUE = "unique"
    UPDATE_REF_OPT = "update_ref_opt"

    @classmethod
    def from_str(cls, value: str) -> SubtypeRule:
        """Convert a rule name to SubtypeRule.

        Raises:
            InvalidArgument: If the name is not in the catalog
        """
        for rule in cls:
            if rule.value == value:
                return rule
        valid = sorted(r.value for r in cls)
        raise InvalidArgument(
            f"Unknown subtype rule '{value}'. Valid rules: {valid}",
            details={"rule": value},
        )


@dataclass(frozen=True)
class Subtype:
    """A parsed subtype rule.

    Attributes:
        rule: Rule kind
        value: Parsed value, ready to set on a TypeDef
    """

    rule: SubtypeRule
    value: Any


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _fail(rule: SubtypeRule, raw: Any, expected: str) -> InvalidArgument:
    return InvalidArgument(
        f"Subtype rule '{rule.value}' expects {expected}, got {raw!r}",
        details={"rule": rule.value, "value": repr(raw)},
    )


def _parse_str(rule: SubtypeRule, raw: Any) -> str:
    if not isinstance(raw, str):
        raise _fail(rule, raw, "a string")
    return raw


def _parse_upper_str(rule: SubtypeRule, raw: Any) -> str:
    return _parse_str(rule, raw).upper()


def _parse_number(rule: SubtypeRule, raw: Any) -> float:
    if isinstance(raw, bool) or not looks_like_number(raw):
        raise _fail(rule, raw, "a number")
    number = float(raw)
    return int(number) if number.is_integer() else number


def _parse_int(rule: SubtypeRule, raw: Any) -> int:
    if isinstance(raw, bool) or not re.match(r"^\d+$", str(raw)):
        raise _fail(rule, raw, "a non-negative integer")
    return int(raw)


def _parse_bool(rule: SubtypeRule, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw in (0, 1):
        return bool(raw)
    raise _fail(rule, raw, "a boolean")


def _parse_any(rule: SubtypeRule, raw: Any) -> Any:
    return raw


def _parse_default(rule: SubtypeRule, raw: Any) -> Any:
    if isinstance(raw, tuple):
        return list(raw)
    return raw


def _parse_regex(rule: SubtypeRule, raw: Any) -> str:
    if isinstance(raw, re.Pattern):
        return raw.pattern
    pattern = _parse_str(rule, raw)
    try:
        re.compile(pattern)
    except re.error as exc:
        raise _fail(rule, raw, f"a valid pattern ({exc})") from exc
    return pattern


def _parse_ref_opt(rule: SubtypeRule, raw: Any) -> str:
    value = _parse_upper_str(rule, raw)
    if value not in REF_OPTIONS:
        raise _fail(rule, raw, f"one of {', '.join(REF_OPTIONS)}")
    return value


def _parse_unique(rule: SubtypeRule, raw: Any) -> bool | tuple[str, ...]:
    if isinstance(raw, bool):
        return raw
    if raw in (0, 1) and not isinstance(raw, str):
        return bool(raw)
    if isinstance(raw, str):
        if looks_like_number(raw):
            raise _fail(rule, raw, "a boolean or co-key attribute name(s)")
        return (raw,)
    if isinstance(raw, Iterable):
        names = tuple(raw)
        if not names or not all(isinstance(n, str) and n for n in names):
            raise _fail(rule, raw, "a list of co-key attribute names")
        return names
    raise _fail(rule, raw, "a boolean or co-key attribute name(s)")


_PARSERS: dict[SubtypeRule, Callable[[SubtypeRule, Any], Any]] = {
    SubtypeRule.COLUMN_TYPE: _parse_upper_str,
    SubtypeRule.DEFAULT: _parse_default,
    SubtypeRule.DELETE_REF_OPT: _parse_ref_opt,
    SubtypeRule.DESCRIPTION: _parse_str,
    SubtypeRule.EXAMPLE: _parse_any,
    SubtypeRule.INDEXED: _parse_bool,
    SubtypeRule.MAX: _parse_number,
    SubtypeRule.MAX_SIZE: _parse_int,
    SubtypeRule.MIN: _parse_number,
    SubtypeRule.MIN_SIZE: _parse_int,
    SubtypeRule.OPTIONAL: _parse_bool,
    SubtypeRule.REGEX: _parse_regex,
    SubtypeRule.SERIAL: _parse_bool,
    SubtypeRule.SIZE: _parse_int,
    SubtypeRule.SQL_INSERT_VALUE: _parse_str,
    SubtypeRule.SQL_UPDATE_VALUE: _parse_str,
    SubtypeRule.SQL_VALUE: _parse_str,
    SubtypeRule.UNIQUE: _parse_unique,
    SubtypeRule.UPDATE_REF_OPT: _parse_ref_opt,
}


def parse_rule(name: str | SubtypeRule, raw: Any) -> Subtype:
    """Parse one rule.

    Args:
        name: Rule name or SubtypeRule
        raw: Raw argument from the declaration

    Returns:
        Parsed Subtype

    Raises:
        InvalidArgument: Unknown rule name or malformed argument
    """
    rule = name if isinstance(name, SubtypeRule) else SubtypeRule.from_str(name)
    return Subtype(rule, _PARSERS[rule](rule, raw))


def subtype(**rules: Any) -> tuple[Subtype, ...]:
    """Parse keyword rules in declaration order."""
    return tuple(parse_rule(name, raw) for name, raw in rules.items())


def collect(args: Iterable[Any], rules: dict[str, Any]) -> tuple[list[Any], dict[str, Any]]:
    """Split Type constructor arguments into allowed values and parsed rules.

    Positional Subtype objects are rules; everything else positional is an
    allowed value. Keyword arguments are parsed through the catalog.

    Returns:
        (allowed values, {TypeDef field name: parsed value})
    """
    allowed: list[Any] = []
    parsed: dict[str, Any] = {}
    for arg in args:
        if isinstance(arg, Subtype):
            parsed[arg.rule.value] = arg.value
        elif isinstance(arg, tuple) and arg and all(isinstance(a, Subtype) for a in arg):
            for item in arg:
                parsed[item.rule.value] = item.value
        else:
            allowed.append(arg)
    for item in subtype(**rules):
        parsed[item.rule.value] = item.value
    return allowed, parsed


__all__ = ["REF_OPTIONS", "Subtype", "SubtypeRule", "collect", "parse_rule", "subtype"]
