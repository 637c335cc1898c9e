"""
Unit tests for the entity registry.

Tests cover:
- Entity declaration and lookup
- Registry freezing
- Fingerprint generation
- Duplicate detection
"""

import pytest

from nodedb.errors import DuplicateEntityError, InvalidArgument, RegistryFrozenError
from nodedb.schema.assertions import Int, Str
from nodedb.schema.entity import EntityDef
from nodedb.schema.registry import EntityRegistry, get_registry, reset_registry


class TestEntityRegistry:
    """Tests for EntityRegistry."""

    def test_declare_and_get(self):
        """Declared entities can be looked up by name."""
        registry = EntityRegistry()
        person = registry.declare("myapp.Person", {"age": Int()})

        assert registry.get("myapp.Person") is person
        assert "myapp.Person" in registry
        assert len(registry) == 1

    def test_get_unknown_returns_none(self):
        """get returns None for undeclared names."""
        assert EntityRegistry().get("myapp.Nobody") is None

    def test_require_unknown_raises(self):
        """require raises for undeclared names."""
        with pytest.raises(InvalidArgument, match="not declared"):
            EntityRegistry().require("myapp.Nobody")

    def test_extends_by_name(self):
        """extends may name a declared entity."""
        registry = EntityRegistry()
        registry.declare("myapp.Base", {"age": Int()})
        derived = registry.declare("myapp.Derived", {"title": Str()}, extends="myapp.Base")

        assert derived.has_attribute("age")
        assert derived.has_attribute("title")

    def test_duplicate_name_raises(self):
        """Declaring the same name twice raises."""
        registry = EntityRegistry()
        registry.declare("myapp.Person")

        with pytest.raises(DuplicateEntityError, match="already declared"):
            registry.declare("myapp.Person")

    def test_register_built_entity(self):
        """Pre-built entities can be registered."""
        registry = EntityRegistry()
        entity = EntityDef.build("myapp.Thing")
        registry.register(entity)

        assert list(registry.entities()) == [entity]


class TestRegistryFreeze:
    """Tests for registry freezing."""

    def test_freeze_prevents_declaration(self):
        """Frozen registry rejects new entities."""
        registry = EntityRegistry()
        registry.declare("myapp.Person")
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RegistryFrozenError, match="frozen"):
            registry.declare("myapp.Company")

    def test_double_freeze_raises(self):
        """Freezing twice raises."""
        registry = EntityRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.freeze()


class TestFingerprint:
    """Tests for schema fingerprints."""

    def test_fingerprint_format(self):
        """Fingerprints are sha256-prefixed hex digests."""
        registry = EntityRegistry()
        registry.declare("myapp.Person", {"age": Int()})
        fingerprint = registry.freeze()

        assert fingerprint.startswith("sha256:")
        assert len(fingerprint) == len("sha256:") + 64
        assert registry.fingerprint == fingerprint

    def test_fingerprint_is_deterministic(self):
        """Same declarations give the same fingerprint regardless of order."""
        first = EntityRegistry()
        first.declare("myapp.Person", {"age": Int()})
        first.declare("myapp.Company")

        second = EntityRegistry()
        second.declare("myapp.Company")
        second.declare("myapp.Person", {"age": Int()})

        assert first.compute_fingerprint() == second.compute_fingerprint()

    def test_fingerprint_changes_with_schema(self):
        """Changing a rule changes the fingerprint."""
        first = EntityRegistry()
        first.declare("myapp.Person", {"age": Int(max=100)})

        second = EntityRegistry()
        second.declare("myapp.Person", {"age": Int(max=150)})

        assert first.compute_fingerprint() != second.compute_fingerprint()


class TestGlobalRegistry:
    """Tests for the process-wide registry."""

    def test_reset(self):
        """reset_registry discards the global instance."""
        reset_registry()
        registry = get_registry()
        registry.declare("myapp.Person")

        assert get_registry() is registry
        reset_registry()
        assert "myapp.Person" not in get_registry()
        reset_registry()
