"""
Node instances for NodeDB.

A Node is the in-memory value of one persistable object: a mapping of
attribute name to Python value, bound to its EntityDef. Attributes are
readable and writable both as ``node.age`` and ``node["age"]``.

Invariants:
    - Only attributes declared on the entity can be read or assigned
    - Unknown names raise InvalidArgument listing close matches
    - Nodes hold plain Python values; storage conversion happens in marshal
"""

from __future__ import annotations

import copy
from difflib import get_close_matches
from typing import Any, Iterator, Mapping, Optional

from ..errors import InvalidArgument
from ..schema.entity import EntityDef


def unknown_attribute(entity: EntityDef, attr: str) -> InvalidArgument:
    suggestions = get_close_matches(attr, entity.attribute_names(), n=3)
    if suggestions:
        message = f"{entity.name} has no attribute '{attr}'. Did you mean: {suggestions}?"
    else:
        message = f"{entity.name} has no attribute '{attr}'"
    return InvalidArgument(message, details={"entity": entity.name, "attribute": attr})


class Node:
    """One object of an entity.

    Example:
        >>> node = Node(person, name="Alice", age=30)
        >>> node.age
        30
        >>> node["name"]
        'Alice'
        >>> node.agee = 31
        Traceback (most recent call last):
        ...
        nodedb.errors.InvalidArgument: myapp.Person has no attribute 'agee'. Did you mean: ['age']?
    """

    __slots__ = ("_entity", "_values")

    def __init__(self, entity: EntityDef, values: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        object.__setattr__(self, "_entity", entity)
        object.__setattr__(self, "_values", {})
        for attr, value in {**(values or {}), **kwargs}.items():
            self.set(attr, value)

    @property
    def entity(self) -> EntityDef:
        return self._entity

    @property
    def key(self) -> Any:
        """Primary key value (None until saved)."""
        return self._values.get(self._entity.primary_key)

    def _check(self, attr: str) -> None:
        if not self._entity.has_attribute(attr):
            raise unknown_attribute(self._entity, attr)

    def get(self, attr: str, default: Any = None) -> Any:
        self._check(attr)
        value = self._values.get(attr)
        return default if value is None else value

    def set(self, attr: str, value: Any) -> None:
        self._check(attr)
        self._values[attr] = value

    def update(self, values: Mapping[str, Any]) -> None:
        for attr, value in values.items():
            self.set(attr, value)

    def replace_values(self, values: Mapping[str, Any]) -> None:
        """Discard all current values and take ``values``."""
        for attr in values:
            self._check(attr)
        self._values.clear()
        self._values.update(values)

    def is_set(self, attr: str) -> bool:
        """True if ``attr`` holds a non-None value."""
        return self._values.get(attr) is not None

    def to_dict(self) -> dict[str, Any]:
        """Deep copy of the attribute values."""
        return copy.deepcopy(self._values)

    def copy(self) -> Node:
        return Node(self._entity, self.to_dict())

    # -- attribute and mapping access --------------------------------------

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        if self._entity.has_attribute(name):
            return self._values.get(name)
        raise AttributeError(str(unknown_attribute(self._entity, name)))

    def __setattr__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __getitem__(self, attr: str) -> Any:
        self._check(attr)
        return self._values.get(attr)

    def __setitem__(self, attr: str, value: Any) -> None:
        self.set(attr, value)

    def __contains__(self, attr: object) -> bool:
        return attr in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._values))

    def keys(self) -> list[str]:
        return sorted(self._values)

    def items(self) -> list[tuple[str, Any]]:
        return [(attr, self._values[attr]) for attr in self.keys()]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return self._entity.name == other._entity.name and self._values == other._values

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Node({self._entity.name!r}, key={self.key!r}, name={self._values.get('name')!r})"
