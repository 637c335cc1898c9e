"""
Integration tests for the engine on SQLite.

Tests cover:
- Save/load round trips and updates
- Uniqueness and transaction rollback
- Linked collections (arrays and hashes)
- Reference checks and name-based references
- Streams, tuples and raw queries
- Cache and full-text index
- Serial keys and their search results
- Referenced tables created before foreign keys
- Presave hooks
- Storage auto-detection
"""

import os
import tempfile

import pytest

from nodedb.cache import MemoryCache
from nodedb.config import Settings
from nodedb.errors import (
    DBQueryFailed,
    InvalidArgument,
    ObjectIsAnonymous,
    ObjectNotFound,
    OutOfRange,
    TransactionFailed,
    TypeMismatch,
    ValueNotAllowed,
)
from nodedb.persistence import Emit, Engine, Signal
from nodedb.runtime import guid_to_string, new_guid
from nodedb.schema import (
    Array,
    Bool,
    EntityOptions,
    EntityRegistry,
    ExtID,
    Hash,
    Int,
    Serial,
    StorageType,
    Str,
)

SQLITE = EntityOptions(storage=StorageType.SQLITE)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def settings(data_dir):
    return Settings(home=data_dir, scratch_root=os.path.join(data_dir, "scratch"))


@pytest.fixture
def registry():
    """Registry with a company and a person referencing it."""
    registry = EntityRegistry()
    registry.declare("myapp.Company", {"city": Str(optional=True)}, options=SQLITE)
    registry.declare(
        "myapp.Person",
        {
            "active": Bool(),
            "age": Int(min=0, max=150),
            "bio": Str(optional=True, indexed=True),
            "company": ExtID("myapp.Company", optional=True),
            "tags": Array(Str(max_size=32), optional=True),
            "limits": Hash(Int(), optional=True),
        },
        options=SQLITE,
    )
    registry.declare(
        "myapp.Ticket",
        {"ticket_id": Serial(), "title": Str(), "body": Str(optional=True, indexed=True)},
        options=EntityOptions(storage=StorageType.SQLITE, primary_key="ticket_id"),
    )
    return registry


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def engine(registry, settings, cache):
    engine = Engine(registry, settings, cache=cache)
    yield engine
    engine.close()


@pytest.fixture
def people(engine):
    return engine.repository("myapp.Person")


class TestSaveAndLoad:
    """Tests for basic persistence."""

    def test_round_trip(self, people):
        """Saved values load back unchanged."""
        alice = people.new(name="Alice", age=30, tags=["a", "b"], limits={"x": 1})
        assert people.save(alice, "first save")

        loaded = people.load(alice.id)
        assert loaded.name == "Alice"
        assert loaded.age == 30
        assert loaded.active is False
        assert loaded.tags == ["a", "b"]
        assert loaded.limits == {"x": 1}
        assert loaded.ctime == pytest.approx(alice.ctime, abs=0.01)

    def test_save_assigns_key_and_timestamps(self, people):
        """Saving assigns a GUID and ctime == mtime."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        assert len(alice.id) == 24
        assert alice.ctime == alice.mtime

    def test_update_keeps_ctime(self, people):
        """Saving again updates the row and mtime but not ctime."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)
        ctime = alice.ctime

        alice.age = 31
        people.save(alice, "birthday")

        loaded = people.load(alice.id)
        assert loaded.age == 31
        assert loaded.ctime == pytest.approx(ctime, abs=0.01)
        assert alice.mtime >= ctime
        assert people.count() == 1

    def test_hyphenated_key_lookup(self, people):
        """Keys may be given in hyphenated GUID form."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        assert people.load(guid_to_string(alice.id)).name == "Alice"

    def test_load_missing(self, people):
        """Unknown keys raise ObjectNotFound."""
        with pytest.raises(ObjectNotFound):
            people.load(new_guid())

    def test_name_lookups(self, people):
        """Objects are reachable by name."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        assert people.load_by_name("Alice").id == alice.id
        assert people.id_for_name("Alice") == alice.id
        assert people.name_for_id(alice.id) == "Alice"
        assert people.does_name_exist("Alice")
        assert not people.does_name_exist("Bob")

    def test_spawn(self, people):
        """spawn loads by name or returns a new named node."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        assert people.spawn("Alice").id == alice.id
        bob = people.spawn("Bob")
        assert bob.id is None
        assert bob.name == "Bob"

    def test_unknown_attribute(self, people):
        """new() rejects undeclared attributes."""
        with pytest.raises(InvalidArgument, match="Did you mean"):
            people.new(nmae="Alice")


class TestValidationAndRollback:
    """Tests for validation failures and rollback."""

    def test_invalid_value_writes_nothing(self, people):
        """A failed validation stores nothing."""
        bad = people.new(name="Bad", age=-1)
        with pytest.raises(OutOfRange):
            people.save(bad)

        assert bad.id is None
        assert people.count() == 0

    def test_duplicate_name_rolls_back(self, people):
        """A unique violation rolls back and restores the node."""
        people.save(people.new(name="Alice", age=30))
        clone = people.new(name="Alice", age=5)

        with pytest.raises(TransactionFailed) as exc_info:
            people.save(clone)

        assert isinstance(exc_info.value.__cause__, DBQueryFailed)
        assert clone.id is None
        assert clone.ctime is None
        assert people.count() == 1
        assert people.handle().transaction_level == 0

    def test_reference_must_exist(self, people):
        """ExtID values must reference stored objects."""
        alice = people.new(name="Alice", age=30, company=new_guid())
        with pytest.raises(ValueNotAllowed, match="Referenced myapp.Company does not exist"):
            people.save(alice)

    def test_reference_to_saved_object(self, engine, people):
        """References to stored objects validate."""
        companies = engine.repository("myapp.Company")
        acme = companies.new(name="Acme")
        companies.save(acme)

        alice = people.new(name="Alice", age=30, company=acme.id)
        assert people.save(alice)

    def test_set_ids_from_names(self, engine, people):
        """Referenced objects are found or created by name."""
        alice = people.new(name="Alice", age=30)
        people.set_ids_from_names(alice, "company", "Acme")
        people.save(alice)

        companies = engine.repository("myapp.Company")
        assert companies.name_for_id(alice.company) == "Acme"
        assert people.member_class("company").name == "myapp.Company"


class TestCollections:
    """Tests for linked collections."""

    def test_array_replaced_on_save(self, people):
        """Element rows are replaced as a whole."""
        alice = people.new(name="Alice", age=30, tags=["a", "b", "c"])
        people.save(alice)
        alice.tags = ["x"]
        people.save(alice)

        assert people.load(alice.id).tags == ["x"]
        assert people.select_scalar('SELECT count(*) FROM "person_tags"') == 1

    def test_unset_collections_load_empty(self, people):
        """Unset collections load as empty collections."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        loaded = people.load(alice.id)
        assert loaded.tags == []
        assert loaded.limits == {}

    def test_member_validation(self, people):
        """Collection members are validated."""
        alice = people.new(name="Alice", age=30, limits={"x": "lots"})
        with pytest.raises(TypeMismatch) as exc_info:
            people.save(alice)
        assert exc_info.value.attribute == "limits[x]"


class TestRemove:
    """Tests for removal."""

    def test_remove(self, people):
        """Removed objects are gone with their element rows."""
        alice = people.new(name="Alice", age=30, tags=["a"])
        people.save(alice)

        assert people.remove(alice, "test")
        assert not people.does_id_exist(alice.id)
        assert people.select_scalar('SELECT count(*) FROM "person_tags"') == 0

    def test_remove_twice(self, people):
        """Removing an already removed object is a no-op."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)
        people.remove(alice)

        assert people.remove(alice)

    def test_remove_unsaved(self, people):
        """Unsaved objects cannot be removed."""
        with pytest.raises(ObjectIsAnonymous):
            people.remove(people.new(name="Alice", age=30))


class TestQueries:
    """Tests for streams, tuples and raw queries."""

    @pytest.fixture
    def crowd(self, people):
        for i in range(120):
            people.save(people.new(name=f"person{i:03d}", age=i % 100))
        return people

    def test_stream_pages(self, crowd):
        """Streams page with the requested limit."""
        stream = crowd.stream(limit=50)
        pages = list(stream.pages())

        assert [len(page) for page in pages] == [50, 50, 20]
        assert pages[0][0][1] == "person000"
        assert stream.count() == 120

    def test_stream_each(self, crowd):
        """each honors Emit and Signal results."""
        stream = crowd.stream(limit=25)

        def pick(key, name):
            if name == "person003":
                return Signal.STOP
            if name == "person001":
                return Emit(name, name.upper())
            return name

        assert stream.each(pick, as_tuple=True) == ["person000", "person001", "PERSON001", "person002"]

    def test_stream_custom_query(self, crowd):
        """Custom queries are paged and counted."""
        stream = crowd.stream(limit=7, query='SELECT "name" FROM "person" WHERE "age" < 10 ORDER BY "name"')

        assert stream.count() == 20
        assert len(list(stream)) == 20

    def test_stream_offset(self, crowd):
        """Streams may start at an offset."""
        assert len(list(crowd.stream(limit=50, offset=100))) == 20

    def test_each_key(self, crowd):
        """Repository.each visits every key."""
        assert len(crowd.each(lambda key: key)) == 120

    def test_all_ids_and_names(self, people):
        """all_ids and all_names are ordered by name."""
        bob = people.new(name="Bob", age=1)
        alice = people.new(name="Alice", age=2)
        people.save(bob)
        people.save(alice)

        assert people.all_ids() == [alice.id, bob.id]
        assert people.all_names() == ["Alice", "Bob"]
        assert people.tuples() == [(alice.id, "Alice"), (bob.id, "Bob")]
        assert [node.name for node in people.iter_nodes()] == ["Alice", "Bob"]

    def test_raw_queries(self, people):
        """Raw query helpers return rows, scalars and booleans."""
        people.save(people.new(name="Alice", age=30))

        assert people.select_multi('SELECT "name" FROM "person"') == ["Alice"]
        assert people.select_single('SELECT "name", "age" FROM "person"') == ("Alice", 30)
        assert people.select_bool('SELECT 1 FROM "person" WHERE "age" > ?', [20])
        assert not people.select_bool('SELECT 1 FROM "person" WHERE "age" > ?', [40])
        assert people.write('UPDATE "person" SET "age" = ?', [31]) == 1

    def test_drop_table(self, people):
        """Dropped tables are recreated on next use."""
        people.save(people.new(name="Alice", age=30))
        people.drop_table()

        assert people.count() == 0


class TestCacheAndSearch:
    """Tests for the cache and full-text index."""

    def test_load_hits_cache(self, people, cache):
        """Saved objects are served from the cache."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)

        assert people.load(alice.id).name == "Alice"
        assert cache.hits == 1

    def test_remove_purges_cache(self, people, cache):
        """Removed objects leave the cache."""
        alice = people.new(name="Alice", age=30)
        people.save(alice)
        people.remove(alice)

        assert alice.id not in cache
        with pytest.raises(ObjectNotFound):
            people.load(alice.id)

    def test_failed_save_purges_cache(self, people, cache):
        """A rolled-back save leaves nothing in the cache."""
        people.save(people.new(name="Alice", age=30))
        clone = people.new(name="Alice", age=5)
        with pytest.raises(TransactionFailed):
            people.save(clone)

        assert len(cache) == 1

    def test_search(self, people):
        """Indexed attributes are searchable."""
        alice = people.new(name="Alice", age=30, bio="likes sailing")
        bob = people.new(name="Bob", age=40, bio="likes climbing")
        people.save(alice)
        people.save(bob)

        assert people.search("sailing") == [alice.id]
        assert sorted(people.search({"bio": "likes"})) == sorted([alice.id, bob.id])

    def test_search_after_remove(self, people):
        """Removed objects are dropped from the index."""
        alice = people.new(name="Alice", age=30, bio="likes sailing")
        people.save(alice)
        people.remove(alice)

        assert people.search("sailing") == []

    def test_unindexed_entity(self, engine):
        """Entities without indexed attributes find nothing."""
        assert engine.repository("myapp.Company").search("anything") == []


class TestSerialKeys:
    """Tests for store-assigned keys."""

    def test_serial_keys_assigned(self, engine):
        """Serial keys come from the store in order."""
        tickets = engine.repository("myapp.Ticket")
        first = tickets.new(title="one")
        second = tickets.new(title="two")
        tickets.save(first)
        tickets.save(second)

        assert second.ticket_id == first.ticket_id + 1
        assert tickets.load(str(first.ticket_id)).title == "one"

    def test_serial_update(self, engine):
        """Saving again updates the same row."""
        tickets = engine.repository("myapp.Ticket")
        ticket = tickets.new(title="one")
        tickets.save(ticket)
        ticket.title = "uno"
        tickets.save(ticket)

        assert tickets.count() == 1
        assert tickets.load(ticket.ticket_id).title == "uno"

    def test_search_returns_integer_keys(self, engine):
        """Search results carry keys in their Python type."""
        tickets = engine.repository("myapp.Ticket")
        ticket = tickets.new(title="one", body="printer on fire")
        tickets.save(ticket)

        assert tickets.search("printer") == [ticket.ticket_id]
        assert isinstance(tickets.search("fire")[0], int)


class TestStorageDetection:
    """Tests for automatic storage selection."""

    def test_falls_back_to_sqlite(self, data_dir):
        """Without reachable servers, auto storage selects SQLite."""
        registry = EntityRegistry()
        registry.declare("auto.Thing")
        settings = Settings(home=data_dir, storage="auto", db_port=1, reconnect_delay=0)

        with Engine(registry, settings) as engine:
            things = engine.repository("auto.Thing")
            assert things.binding.storage == StorageType.SQLITE
            things.save(things.new(name="one"))
            assert things.count() == 1

    def test_flatfile_only_default(self, data_dir):
        """storage "none" stores YAML flatfiles."""
        registry = EntityRegistry()
        registry.declare("auto.Note")

        with Engine(registry, Settings(home=data_dir, storage="none")) as engine:
            notes = engine.repository("auto.Note")
            assert notes.driver is None
            notes.save(notes.new(name="hello"))
            assert notes.count() == 1


class TestReferencedTables:
    """Tests for creating referenced tables ahead of foreign keys."""

    @pytest.fixture
    def linked_engine(self, settings):
        options = EntityOptions(storage=StorageType.SQLITE, use_foreign_keys=True)
        registry = EntityRegistry()
        registry.declare("shop.Supplier", {"city": Str(optional=True)}, options=options)
        registry.declare("shop.Tag", options=options)
        registry.declare(
            "shop.Product",
            {
                "supplier": ExtID("shop.Supplier", optional=True),
                "tags": Array(ExtID("shop.Tag"), optional=True),
                "replaces": ExtID("shop.Product", optional=True),
            },
            options=options,
        )
        engine = Engine(registry, settings)
        yield engine
        engine.close()

    def test_referenced_entities(self, linked_engine):
        """References through attributes and collections are listed once, self excluded."""
        products = linked_engine.repository("shop.Product")
        assert products.referenced_entities() == ["shop.Supplier", "shop.Tag"]

    def test_referenced_tables_created_first(self, linked_engine):
        """Using only the referencing entity creates the referenced tables."""
        products = linked_engine.repository("shop.Product")
        products.save(products.new(name="widget"))

        tables = products.select_multi("SELECT name FROM sqlite_master WHERE type = 'table'")
        assert "supplier" in tables
        assert "tag" in tables
        assert "product" in tables

    def test_reference_to_saved_object(self, linked_engine):
        """Rows referencing stored objects satisfy the foreign key."""
        suppliers = linked_engine.repository("shop.Supplier")
        acme = suppliers.new(name="Acme")
        suppliers.save(acme)

        products = linked_engine.repository("shop.Product")
        widget = products.new(name="widget", supplier=acme.id)
        products.save(widget)
        assert products.load(widget.id).supplier == acme.id


class TestPresaveHook:
    """Tests for the per-entity presave hook."""

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def staff(self, settings, calls):
        def refuse_old_people(repository, node):
            calls.append(node.name)
            if node.age > 100:
                raise InvalidArgument(f"{node.name} is too old to be hired")

        registry = EntityRegistry()
        registry.declare(
            "hr.Employee",
            {"age": Int(min=0, max=150)},
            options=EntityOptions(storage=StorageType.SQLITE, presave=refuse_old_people),
        )
        with Engine(registry, settings) as engine:
            yield engine.repository("hr.Employee")

    def test_hook_runs_on_save(self, staff, calls):
        """Valid objects pass through the hook and are stored."""
        alice = staff.new(name="Alice", age=30)
        staff.save(alice)

        assert calls == ["Alice"]
        assert staff.load(alice.id).age == 30

    def test_refused_save_writes_nothing(self, staff):
        """An exception from the hook propagates before anything is written."""
        old = staff.new(name="Methuselah", age=120)
        with pytest.raises(InvalidArgument, match="too old"):
            staff.save(old)

        assert old.id is None
        assert old.ctime is None
        assert staff.count() == 0

    def test_hook_runs_after_validation(self, staff, calls):
        """Objects failing validation never reach the hook."""
        with pytest.raises(OutOfRange):
            staff.save(staff.new(name="Bad", age=-1))

        assert calls == []
