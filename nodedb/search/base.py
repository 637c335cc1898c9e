"""
Base protocol for the NodeDB full-text search index.

Entities with at least one ``indexed`` attribute get one index collection,
provisioned lazily on first use. Documents are keyed by the object's
primary key and carry the text of every indexed attribute.

Invariants:
    - A document is fully replaced on every add
    - Field queries are combined with AND; terms within a field with AND
    - Query text is tokenized to words; FTS syntax in user text is never
      interpreted

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ``build_match_query`` free of engine-specific operators other
      than column filters, quotes and AND
"""

from __future__ import annotations

import re
from abc import abstractmethod
from typing import Mapping, Protocol, Sequence, Union, runtime_checkable

from ..errors import NodeDbError

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

Query = Union[str, Mapping[str, str]]


class SearchIndexError(NodeDbError):
    """Full-text index backend failure."""

    def __init__(self, message: str, collection: str | None = None) -> None:
        super().__init__(message, code="SEARCH_INDEX_ERROR", details={"collection": collection})
        self.collection = collection


@runtime_checkable
class SearchIndex(Protocol):
    """Protocol for full-text index backends."""

    @abstractmethod
    def provision(self, collection: str, fields: Sequence[str]) -> None:
        """Create the collection if it does not exist."""
        ...

    @abstractmethod
    def add(self, collection: str, doc_id: str, fields: Mapping[str, str]) -> None:
        """Index (or re-index) one document."""
        ...

    @abstractmethod
    def remove(self, collection: str, doc_id: str) -> None:
        """Remove one document; missing documents are not an error."""
        ...

    @abstractmethod
    def search(self, collection: str, query: Query) -> list[str]:
        """Return matching document ids, best match first."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def tokenize(text: str) -> list[str]:
    """Split query text into word tokens."""
    return _TOKEN_RE.findall(text or "")


def _quote(token: str) -> str:
    return '"' + token.replace('"', '""') + '"'


def build_match_query(query: Query, fields: Sequence[str]) -> str:
    """Build an FTS5 MATCH expression.

    Args:
        query: Free text (all fields), or {field: text}
        fields: Fields known to the collection

    Returns:
        MATCH expression, or "" when the query has no searchable terms

    Raises:
        SearchIndexError: If a field is not indexed
    """
    if isinstance(query, str):
        return " AND ".join(_quote(token) for token in tokenize(query))

    clauses = []
    for field, text in query.items():
        if field not in fields:
            raise SearchIndexError(f"Field '{field}' is not indexed")
        for token in tokenize(text):
            clauses.append(f"{_quote(field)} : {_quote(token)}")
    return " AND ".join(clauses)
