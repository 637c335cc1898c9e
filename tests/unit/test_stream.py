"""
Unit tests for stream callbacks and stream arguments.

Tests cover:
- Signal and Emit handling in collect
- Tuple unpacking
- Argument validation
"""

import pytest

from nodedb.errors import InvalidArgument, MethodNotApplicable
from nodedb.persistence.stream import Emit, Signal, Stream, collect
from nodedb.schema.entity import EntityDef


class FlatfileOnlyRepository:
    """Repository stand-in without a SQL store."""

    driver = None
    entity = EntityDef.build("myapp.Note")


class TestCollect:
    """Tests for collect."""

    def test_values_collected(self):
        """Plain return values are collected."""
        assert collect([1, 2, 3], lambda x: x * 2) == [2, 4, 6]

    def test_none_and_skip(self):
        """None and Signal.SKIP contribute nothing."""
        result = collect([1, 2, 3, 4], lambda x: Signal.SKIP if x % 2 else None if x == 2 else x)
        assert result == [4]

    def test_stop(self):
        """Signal.STOP ends iteration."""
        assert collect([1, 2, 3], lambda x: Signal.STOP if x == 2 else x) == [1]

    def test_emit(self):
        """Emit contributes several values."""
        assert collect([1, 2], lambda x: Emit(x, -x)) == [1, -1, 2, -2]

    def test_as_tuple(self):
        """as_tuple unpacks rows into arguments."""
        rows = [("k1", "Alice"), ("k2", "Bob")]
        assert collect(rows, lambda key, name: name, as_tuple=True) == ["Alice", "Bob"]


class TestStreamArguments:
    """Tests for Stream argument validation."""

    def test_limit_must_be_positive(self):
        """Zero or negative limits are rejected."""
        with pytest.raises(InvalidArgument, match="limit must be positive"):
            Stream(FlatfileOnlyRepository(), limit=0)

    def test_offset_must_not_be_negative(self):
        """Negative offsets are rejected."""
        with pytest.raises(InvalidArgument):
            Stream(FlatfileOnlyRepository(), offset=-1)

    def test_needs_sql_store(self):
        """Streams are not available without a SQL store."""
        with pytest.raises(MethodNotApplicable, match="need a SQL store"):
            Stream(FlatfileOnlyRepository())
