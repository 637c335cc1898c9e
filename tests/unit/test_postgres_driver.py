"""
Unit tests for the PostgreSQL dialect (no server needed).

Tests cover:
- Column type rewrites
- Foreign keys and serial keys
- Parameter markers, literal escaping and DDL defaults
- Connection-loss detection
"""

import psycopg
import pytest

from nodedb.drivers.postgres import PostgresDriver
from nodedb.schema.assertions import DateTime, Double, ExtID, Int, Serial, Str
from nodedb.schema.entity import EntityOptions
from nodedb.schema.registry import EntityRegistry


@pytest.fixture
def registry():
    registry = EntityRegistry()
    registry.declare("myapp.Company")
    registry.declare(
        "myapp.Person",
        {
            "age": Int(),
            "score": Double(),
            "born": DateTime(),
            "company": ExtID("myapp.Company", optional=True),
        },
    )
    return registry


@pytest.fixture
def driver(registry):
    return PostgresDriver(registry)


class TestPostgresTypes:
    """Tests for column type rewrites."""

    def test_rewrites(self, driver):
        """MySQL-flavoured types are mapped to PostgreSQL types."""
        assert driver.adapt_column_type("INT(11)") == "INT"
        assert driver.adapt_column_type("INTEGER") == "INT"
        assert driver.adapt_column_type("DOUBLE(30,10)") == "FLOAT"
        assert driver.adapt_column_type("DATETIME") == "TIMESTAMPTZ"
        assert driver.adapt_column_type("LONGBLOB") == "BYTEA"
        assert driver.adapt_column_type("VARCHAR(1024)") == "VARCHAR(1024)"

    def test_timestamps_are_float_epochs(self, registry, driver):
        """Engine-managed timestamps are FLOAT epoch seconds."""
        person = registry.get("myapp.Person")
        assert driver.column_type(person, "ctime") == "FLOAT"
        assert not driver.uses_native_datetime(person, "ctime")
        assert driver.column_type(person, "born") == "FLOAT"

    def test_person_table(self, registry, driver):
        """DDL uses rewritten types and inline references."""
        ddl = driver.schema_ddl(registry.get("myapp.Person"))
        assert '"age" INT NOT NULL' in ddl
        assert '"score" FLOAT DEFAULT 0.0 NOT NULL' in ddl
        assert '"company" CHAR(24) REFERENCES "company" ("id")' in ddl

    def test_foreign_keys_can_be_disabled(self, registry, driver):
        """Entities may opt out of REFERENCES."""
        entity = registry.declare(
            "myapp.Loose",
            {"company": ExtID("myapp.Company")},
            options=EntityOptions(use_foreign_keys=False),
        )
        assert "REFERENCES" not in driver.schema_ddl(entity)

    def test_serial_key(self):
        """Serial keys use SERIAL."""
        registry = EntityRegistry()
        entity = registry.declare(
            "myapp.Ticket",
            {"ticket_id": Serial()},
            options=EntityOptions(primary_key="ticket_id"),
        )
        assert '"ticket_id" SERIAL PRIMARY KEY' in PostgresDriver(registry).schema_ddl(entity)


class TestPostgresStatements:
    """Tests for statement text."""

    def test_placeholders(self, registry, driver):
        """Parameters use the pyformat marker."""
        sql = driver.select_by_key_statement(registry.get("myapp.Person"))
        assert sql.endswith('WHERE "id" = %s')

    def test_literal_percent_escaped(self):
        """Literal SQL percent signs are doubled."""
        registry = EntityRegistry()
        entity = registry.declare("myapp.Note", {"body": Str(sql_value="'100%'")})
        sql, _ = PostgresDriver(registry).insert_statement(entity, {"body": "x"})
        assert "'100%%'" in sql

    def test_ddl_default_not_escaped(self):
        """DDL defaults run without parameters, so percent signs stay single."""
        registry = EntityRegistry()
        entity = registry.declare("myapp.Note", {"ratio": Str(default="50%")})
        ddl = PostgresDriver(registry).schema_ddl(entity)
        assert "DEFAULT '50%'" in ddl
        assert "50%%" not in ddl

    def test_reference_query_binding(self, driver):
        """Reference queries bind {value} to the parameter marker."""
        query = "SELECT 1 FROM t WHERE a LIKE 'x%' AND id = {value}"
        assert driver.bind_value_query(query) == "SELECT 1 FROM t WHERE a LIKE 'x%%' AND id = %s"


class TestPostgresConnectionLoss:
    """Tests for connection-loss detection."""

    def test_lost_connection(self, driver):
        """Closed-connection operational errors are retryable."""
        assert driver.is_connection_lost(psycopg.OperationalError("server closed the connection unexpectedly"))

    def test_other_errors(self, driver):
        """Constraint violations are not connection losses."""
        assert not driver.is_connection_lost(psycopg.errors.UniqueViolation("duplicate key"))
        assert not driver.is_connection_lost(ValueError("closed"))
