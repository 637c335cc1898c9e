"""
Chunked iteration over query results.

A Stream pages through a SELECT with LIMIT/OFFSET, ``limit`` rows at a
time. The total row count is read once when iteration starts; rows
inserted or deleted while a stream is open may be skipped or seen twice.

Callbacks passed to ``each`` steer collection through their return value:

    None          nothing is collected
    Signal.SKIP   nothing is collected
    Signal.STOP   iteration ends
    Emit(a, b)    a and b are collected
    anything else the value is collected
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional

from ..errors import InvalidArgument, MethodNotApplicable

if TYPE_CHECKING:
    from .repository import Repository

DEFAULT_LIMIT = 50


class Signal(Enum):
    """Control values a stream callback can return."""

    SKIP = "skip"
    STOP = "stop"


class Emit:
    """Callback result contributing several values."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = values

    def __repr__(self) -> str:
        return f"Emit{self.values!r}"


def collect(rows: Iterable[Any], fn: Callable[..., Any], as_tuple: bool = False) -> list[Any]:
    """Apply ``fn`` to each row and gather results per the Signal/Emit rules."""
    results: list[Any] = []
    for row in rows:
        if as_tuple and isinstance(row, tuple):
            result = fn(*row)
        else:
            result = fn(row)
        if result is None or result is Signal.SKIP:
            continue
        if result is Signal.STOP:
            break
        if isinstance(result, Emit):
            results.extend(result.values)
        else:
            results.append(result)
    return results


class Stream:
    """Paged iterator over a repository's rows.

    Example:
        >>> stream = repo.stream(limit=50)
        >>> [len(page) for page in stream.pages()]
        [50, 50, 20]
        >>> stream.each(lambda row: row[1])[:2]
        ['Alice', 'Bob']
    """

    def __init__(
        self,
        repository: "Repository",
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        query: Optional[str] = None,
    ) -> None:
        if limit <= 0:
            raise InvalidArgument(f"Stream limit must be positive, got {limit}")
        if offset < 0:
            raise InvalidArgument(f"Stream offset must be >= 0, got {offset}")
        if repository.driver is None:
            raise MethodNotApplicable(
                f"Streams need a SQL store; {repository.entity.name} has none",
                entity=repository.entity.name,
            )
        self.repository = repository
        self.limit = limit
        self.offset = offset
        self._query = query

    @property
    def query(self) -> str:
        if self._query is not None:
            return self._query
        return self.repository.driver.tuple_statement(self.repository.entity)

    def count(self) -> int:
        if self._query is None:
            return self.repository.count()
        driver = self.repository.driver
        return int(self.repository.select_scalar(driver.count_query_statement(self._query)) or 0)

    def pages(self) -> Iterator[list[Any]]:
        """Yield lists of at most ``limit`` rows."""
        total = self.count()
        driver = self.repository.driver
        offset = self.offset
        while offset < total:
            rows = self.repository.select_multi(self.query + driver.limit_clause(self.limit, offset))
            if not rows:
                break
            yield rows
            offset += self.limit

    def __iter__(self) -> Iterator[Any]:
        for page in self.pages():
            yield from page

    def each(self, fn: Callable[..., Any], as_tuple: bool = False) -> list[Any]:
        """Collect ``fn(row)`` over all rows (``fn(*row)`` with ``as_tuple``)."""
        return collect(self, fn, as_tuple)
