"""
Unit tests for the subtype rule catalog.

Tests cover:
- Rule parsing and normalization
- Unknown and malformed rules
- Positional argument collection
"""

import re

import pytest

from nodedb.errors import InvalidArgument
from nodedb.schema.assertions import Int, Str
from nodedb.schema.rules import Subtype, SubtypeRule, collect, parse_rule, subtype


class TestParseRule:
    """Tests for parse_rule."""

    def test_column_type_uppercased(self):
        """Column types are normalized to upper case."""
        assert parse_rule("column_type", "tinyint").value == "TINYINT"

    def test_numbers(self):
        """min/max accept numbers and numeric strings."""
        assert parse_rule("min", "0").value == 0
        assert parse_rule("max", 2.5).value == 2.5

    def test_sizes_must_be_non_negative_integers(self):
        """Size rules reject negative or fractional values."""
        assert parse_rule("max_size", 32).value == 32
        with pytest.raises(InvalidArgument, match="non-negative integer"):
            parse_rule("max_size", -1)
        with pytest.raises(InvalidArgument):
            parse_rule("size", 1.5)

    def test_unknown_rule(self):
        """Unknown rule names list the valid rules."""
        with pytest.raises(InvalidArgument, match="Unknown subtype rule 'maximum'"):
            parse_rule("maximum", 3)

    def test_regex_validated(self):
        """regex must compile; compiled patterns are accepted."""
        assert parse_rule("regex", re.compile(r"^a")).value == "^a"
        with pytest.raises(InvalidArgument, match="valid pattern"):
            parse_rule("regex", "(")

    def test_ref_opts(self):
        """Reference actions are upper-cased and checked."""
        assert parse_rule("delete_ref_opt", "cascade").value == "CASCADE"
        with pytest.raises(InvalidArgument):
            parse_rule("update_ref_opt", "explode")

    def test_unique_forms(self):
        """unique takes a boolean, one co-key name, or a list of co-keys."""
        assert parse_rule("unique", True).value is True
        assert parse_rule("unique", 1).value is True
        assert parse_rule("unique", "owner").value == ("owner",)
        assert parse_rule("unique", ["owner", "kind"]).value == ("owner", "kind")
        with pytest.raises(InvalidArgument):
            parse_rule("unique", [])

    def test_tuple_default_becomes_list(self):
        """Tuple defaults are stored as lists."""
        assert parse_rule("default", ("a", "b")).value == ["a", "b"]

    def test_enum_lookup(self):
        """SubtypeRule members can be passed directly."""
        assert parse_rule(SubtypeRule.OPTIONAL, True) == Subtype(SubtypeRule.OPTIONAL, True)


class TestCollect:
    """Tests for constructor argument collection."""

    def test_subtype_keeps_order(self):
        """subtype() returns rules in declaration order."""
        rules = subtype(min=0, max=150, column_type="tinyint")
        assert [r.rule.value for r in rules] == ["min", "max", "column_type"]

    def test_positional_subtypes_and_allowed_values(self):
        """Positional Subtype tuples are rules, other positionals are allowed values."""
        allowed, parsed = collect(["red", subtype(optional=True), "green"], {"max_size": 5})
        assert allowed == ["red", "green"]
        assert parsed == {"optional": True, "max_size": 5}

    def test_constructor_with_positional_rules(self):
        """Type constructors accept the output of subtype()."""
        age = Int(subtype(min=0, max=150))
        assert age.min == 0
        assert age.max == 150

    def test_caller_rules_override_defaults(self):
        """Caller rules replace the kind defaults."""
        assert Str(max_size=10).max_size == 10
        assert Str(column_type="text").column_type == "TEXT"

    def test_invalid_default_rejected(self):
        """A required attribute's default must pass the base predicate."""
        with pytest.raises(InvalidArgument, match="is not a valid int"):
            Int(default="abc")
