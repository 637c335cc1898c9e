"""
Unit tests for row, document and cache conversion.

Tests cover:
- Defaults
- Element rows and collection assembly
- Documents and cache entries
"""

import pytest

from nodedb.errors import DataConversionFailed
from nodedb.persistence import marshal
from nodedb.persistence.node import Node
from nodedb.schema.assertions import Array, Bool, DateTime, Double, Hash, Int, Str
from nodedb.schema.entity import ELEMENT_INDEX, ELEMENT_KEY, ELEMENT_VALUE, PARENT_ID, EntityDef


@pytest.fixture
def person():
    return EntityDef.build(
        "myapp.Person",
        {
            "active": Bool(),
            "age": Int(),
            "born": DateTime(),
            "score": Double(),
            "tags": Array(Str()),
            "limits": Hash(Int()),
        },
    )


class TestDefaults:
    """Tests for default filling."""

    def test_apply_defaults(self, person):
        """Unset attributes with defaults are filled; set ones are kept."""
        node = Node(person, score=2.5)
        marshal.apply_defaults(person, node)
        assert node.active is False
        assert node.score == 2.5
        assert node.age is None


class TestRows:
    """Tests for SQL row conversion."""

    def test_from_row(self, person):
        """Storage values are converted back; unknown columns are ignored."""
        values = marshal.from_row(person, {"active": 1, "age": "42", "born": "1700000000.25", "extra": 1})
        assert values == {"active": True, "age": 42, "born": 1700000000.25}

    def test_array_element_rows(self, person):
        """Array rows carry consecutive indexes."""
        rows = marshal.element_rows(person, "tags", "pk", ["a", "b"], 10.0)
        assert [row[ELEMENT_INDEX] for row in rows] == [0, 1]
        assert [row[ELEMENT_VALUE] for row in rows] == ["a", "b"]
        assert all(row[PARENT_ID] == "pk" and row["ctime"] == 10.0 for row in rows)
        assert rows[0]["id"] != rows[1]["id"]

    def test_hash_element_rows(self, person):
        """Hash rows carry string keys."""
        rows = marshal.element_rows(person, "limits", "pk", {"a": 1, 2: 3}, 10.0)
        assert sorted(row[ELEMENT_KEY] for row in rows) == ["2", "a"]

    def test_no_rows_for_none(self, person):
        """Unset collections have no rows."""
        assert marshal.element_rows(person, "tags", "pk", None, 10.0) == []

    def test_assemble(self, person):
        """Collections are rebuilt from ordered rows."""
        tags = person.element_entity("tags")
        limits = person.element_entity("limits")
        assert marshal.assemble_collection(
            person.type_of("tags"), tags, [{ELEMENT_VALUE: "a"}, {ELEMENT_VALUE: "b"}]
        ) == ["a", "b"]
        assert marshal.assemble_collection(
            person.type_of("limits"), limits, [{ELEMENT_KEY: "x", ELEMENT_VALUE: "5"}]
        ) == {"x": 5}


class TestDocuments:
    """Tests for document and cache conversion."""

    def test_document_round_trip(self, person):
        """Documents keep collections whole and bools as bools."""
        values = {"active": True, "age": 3, "tags": ["a"], "limits": {"x": 1}, "name": "Alice"}
        document = marshal.to_document(person, values)

        assert document["active"] is True
        assert list(document) == ["active", "age", "limits", "name", "tags"]
        assert marshal.from_document(person, document) == values

    def test_unknown_document_key(self, person):
        """Documents with undeclared keys are rejected."""
        with pytest.raises(DataConversionFailed, match="no attribute 'shoe_size'"):
            marshal.from_document(person, {"shoe_size": 44})

    def test_collection_shape_checked(self, person):
        """A scalar where a collection belongs is rejected."""
        with pytest.raises(DataConversionFailed):
            marshal.from_document(person, {"tags": "a"})

    def test_cache_entries(self, person):
        """Cache entries are compact JSON bytes."""
        data = marshal.encode_cache(person, {"age": 3, "tags": ["a"]})
        assert data == b'{"age":3,"tags":["a"]}'
        assert marshal.decode_cache(person, data) == {"age": 3, "tags": ["a"]}

    def test_corrupt_cache_entry(self, person):
        """Corrupt cache bytes raise DataConversionFailed."""
        with pytest.raises(DataConversionFailed, match="Corrupt cache entry"):
            marshal.decode_cache(person, b"{not json")
