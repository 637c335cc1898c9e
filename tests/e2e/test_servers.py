"""
E2E tests against PostgreSQL, MySQL and Redis.

Tests cover:
- Round trips through each server dialect
- Rollback on unique violations
- Foreign key references and linked collections
- Streams with server-side LIMIT/OFFSET
- Redis-backed caching

The database named by NODEDB_E2E_DATABASE (default nodedb_e2e) must exist
and be writable by NODEDB_DB_USER. Each test works in its own tables.
"""

import os
import uuid

import pytest

from nodedb.cache import RedisCache
from nodedb.errors import ObjectNotFound, TransactionFailed
from nodedb.persistence import Engine
from nodedb.schema import (
    Array,
    Bool,
    DateTime,
    EntityOptions,
    EntityRegistry,
    ExtID,
    Hash,
    Int,
    StorageType,
    Str,
)

pytestmark = pytest.mark.e2e

DATABASE = os.environ.get("NODEDB_E2E_DATABASE", "nodedb_e2e")


@pytest.fixture(params=[StorageType.POSTGRESQL, StorageType.MYSQL], ids=["postgres", "mysql"])
def storage(request):
    return request.param


@pytest.fixture
def settings(storage, request):
    fixture = "postgres_settings" if storage == StorageType.POSTGRESQL else "mysql_settings"
    return request.getfixturevalue(fixture)


@pytest.fixture
def registry(storage):
    """Uncached company and person entities in per-test tables."""
    suffix = uuid.uuid4().hex[:8]

    def options(table):
        return EntityOptions(
            storage=storage, database_name=DATABASE, table_name=f"{table}_{suffix}", cache_ttl=0
        )

    registry = EntityRegistry()
    registry.declare("e2e.Company", {"city": Str(optional=True)}, options=options("company"))
    registry.declare(
        "e2e.Person",
        {
            "active": Bool(),
            "age": Int(min=0, max=150),
            "born": DateTime(optional=True),
            "company": ExtID("e2e.Company", optional=True),
            "tags": Array(Str(max_size=32), optional=True),
            "limits": Hash(Int(), optional=True),
        },
        options=options("person"),
    )
    return registry


@pytest.fixture
def engine(registry, settings):
    engine = Engine(registry, settings)
    yield engine
    for name in ("e2e.Person", "e2e.Company"):
        engine.repository(name).drop_table()
    engine.close()


class TestServerRoundTrips:
    """Tests for persistence through real servers."""

    def test_round_trip(self, engine):
        """Values survive the server's column types."""
        companies = engine.repository("e2e.Company")
        people = engine.repository("e2e.Person")
        acme = companies.new(name="Acme", city="Oslo")
        companies.save(acme)

        alice = people.new(
            name="Alice",
            age=30,
            active=True,
            born=1700000000.25,
            company=acme.id,
            tags=["a", "b"],
            limits={"x": 1},
        )
        people.save(alice)

        loaded = people.load(alice.id)
        assert loaded.age == 30
        assert loaded.active is True
        assert loaded.born == pytest.approx(1700000000.25, abs=0.001)
        assert loaded.company == acme.id
        assert loaded.tags == ["a", "b"]
        assert loaded.limits == {"x": 1}

    def test_unique_violation_rolls_back(self, engine):
        """A failed insert leaves nothing behind."""
        people = engine.repository("e2e.Person")
        people.save(people.new(name="Alice", age=30, tags=["a"]))

        with pytest.raises(TransactionFailed):
            people.save(people.new(name="Alice", age=31, tags=["b", "c"]))

        assert people.count() == 1
        assert people.handle().transaction_level == 0

    def test_remove(self, engine):
        """Removed objects are gone."""
        people = engine.repository("e2e.Person")
        alice = people.new(name="Alice", age=30, tags=["a"])
        people.save(alice)
        people.remove(alice)

        with pytest.raises(ObjectNotFound):
            people.load(alice.id)

    def test_stream(self, engine):
        """Streams page through the server."""
        people = engine.repository("e2e.Person")
        for i in range(12):
            people.save(people.new(name=f"person{i:02d}", age=i))

        pages = list(people.stream(limit=5).pages())
        assert [len(page) for page in pages] == [5, 5, 2]
        assert people.all_names()[0] == "person00"


class TestRedisCache:
    """Tests for the Redis cache."""

    def test_cache_round_trip(self, redis_url):
        """Values expire into Redis and back."""
        cache = RedisCache(redis_url, key_prefix=f"nodedb-e2e-{uuid.uuid4().hex[:8]}:")
        try:
            cache.set("abc", b'{"age":3}', 60)
            assert cache.get("abc") == b'{"age":3}'
            cache.delete("abc")
            assert cache.get("abc") is None
        finally:
            cache.close()
