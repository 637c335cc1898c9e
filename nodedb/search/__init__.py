"""
Full-text search index for NodeDB.

- base: SearchIndex protocol and query building
- sqlite_fts: SQLite FTS5 implementation
"""

from .base import SearchIndex, SearchIndexError, build_match_query, tokenize
from .sqlite_fts import SqliteTextIndex

__all__ = ["SearchIndex", "SearchIndexError", "SqliteTextIndex", "build_match_query", "tokenize"]
