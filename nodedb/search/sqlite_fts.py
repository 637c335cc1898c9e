"""
SQLite FTS5 full-text index for NodeDB.

One FTS5 virtual table per entity collection, in a dedicated SQLite file
so the index works the same for every backing store.

Table schema:
    <collection> (FTS5):
        - doc_id UNINDEXED (primary key of the indexed object)
        - one column per indexed attribute

Invariants:
    - Connections are opened per operation (autocommit, explicit BEGIN)
    - add() replaces any previous document with the same doc_id
    - Collection names are sanitized to [A-Za-z0-9_]
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Mapping, Sequence

from .base import Query, SearchIndexError, build_match_query

logger = logging.getLogger(__name__)


def _safe_name(collection: str) -> str:
    return "".join(c if c.isalnum() or c == "_" else "_" for c in collection)


class SqliteTextIndex:
    """FTS5 implementation of the SearchIndex protocol.

    Example:
        >>> index = SqliteTextIndex("/tmp/textindex.db")
        >>> index.provision("myapp_person_idx", ["bio"])
        >>> index.add("myapp_person_idx", "abc", {"bio": "likes sailing"})
        >>> index.search("myapp_person_idx", "sailing")
        ['abc']
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = 5000) -> None:
        """Initialize the index.

        Args:
            path: SQLite file holding all collections
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._fields: dict[str, list[str]] = {}

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        finally:
            conn.close()

    def provision(self, collection: str, fields: Sequence[str]) -> None:
        table = _safe_name(collection)
        columns = ", ".join(f'"{f}"' for f in fields)
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f'CREATE VIRTUAL TABLE IF NOT EXISTS "{table}" USING fts5(doc_id UNINDEXED, {columns})'
                )
        except sqlite3.Error as exc:
            raise SearchIndexError(f"Cannot provision index {table}: {exc}", collection) from exc
        self._fields[table] = list(fields)
        logger.debug(f"Provisioned text index {table}", extra={"fields": list(fields)})

    def _known_fields(self, table: str) -> list[str]:
        try:
            return self._fields[table]
        except KeyError:
            raise SearchIndexError(f"Index {table} is not provisioned", table) from None

    def add(self, collection: str, doc_id: str, fields: Mapping[str, str]) -> None:
        table = _safe_name(collection)
        known = self._known_fields(table)
        columns = ["doc_id"] + known
        values = [str(doc_id)] + ["" if fields.get(f) is None else str(fields[f]) for f in known]
        column_sql = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN")
                try:
                    conn.execute(f'DELETE FROM "{table}" WHERE doc_id = ?', (str(doc_id),))
                    conn.execute(f'INSERT INTO "{table}" ({column_sql}) VALUES ({placeholders})', values)
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as exc:
            raise SearchIndexError(f"Cannot index {doc_id} in {table}: {exc}", table) from exc

    def remove(self, collection: str, doc_id: str) -> None:
        table = _safe_name(collection)
        self._known_fields(table)
        try:
            with self._get_connection() as conn:
                conn.execute(f'DELETE FROM "{table}" WHERE doc_id = ?', (str(doc_id),))
        except sqlite3.Error as exc:
            raise SearchIndexError(f"Cannot remove {doc_id} from {table}: {exc}", table) from exc

    def search(self, collection: str, query: Query) -> list[str]:
        table = _safe_name(collection)
        expression = build_match_query(query, self._known_fields(table))
        if not expression:
            return []
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f'SELECT doc_id FROM "{table}" WHERE "{table}" MATCH ? ORDER BY rank',
                    (expression,),
                )
                return [row["doc_id"] for row in cursor.fetchall()]
        except sqlite3.OperationalError as exc:
            raise SearchIndexError(f"Search failed in {table}: {exc}", table) from exc

    def close(self) -> None:
        self._fields.clear()
