"""Tests for the DuckDB database implementation."""

import pytest

from remedy.database import DatabaseError, DuckDBDatabase

LEDGER_TABLES = [
    "transformation_plans",
    "transformation_iterations",
    "transformation_approvals",
    "transformation_logs",
    "transformation_rollbacks",
    "transformation_snapshots",
    "lineage_records",
]


def test_duckdb_basic_operations():
    """Test basic DuckDB operations with in-memory database."""
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER, name VARCHAR)")
        db.execute("INSERT INTO test VALUES (?, ?), (?, ?)", [1, "Alice", 2, "Bob"])

        result = db.query("SELECT * FROM test ORDER BY id")

        assert result.count() == 2
        assert not result.empty()
        assert result.first()["name"] == "Alice"
        assert [row["id"] for row in result] == [1, 2]


def test_empty_result():
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER)")

        result = db.query("SELECT * FROM test")

        assert result.empty()
        assert result.first() is None
        assert not result


def test_database_error_handling():
    """Invalid SQL surfaces as DatabaseError."""
    with DuckDBDatabase(":memory:") as db:
        with pytest.raises(DatabaseError):
            db.query("INVALID SQL")

        with pytest.raises(DatabaseError):
            db.execute("INVALID SQL")


def test_transaction_commits():
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER)")

        with db.transaction():
            db.execute("INSERT INTO test VALUES (1)")
            db.execute("INSERT INTO test VALUES (2)")

        assert db.query("SELECT COUNT(*) AS n FROM test").first()["n"] == 2


def test_transaction_rolls_back_on_error():
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER)")

        with pytest.raises(RuntimeError):
            with db.transaction():
                db.execute("INSERT INTO test VALUES (1)")
                raise RuntimeError("abort")

        assert db.query("SELECT COUNT(*) AS n FROM test").first()["n"] == 0


def test_nested_transaction_joins_outer():
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER)")

        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    db.execute("INSERT INTO test VALUES (1)")
                raise RuntimeError("abort outer")

        assert db.query("SELECT COUNT(*) AS n FROM test").first()["n"] == 0


def test_init_schema():
    """Schema initialization creates every ledger table and is idempotent."""
    with DuckDBDatabase(":memory:") as db:
        db.init_schema()

        for table in LEDGER_TABLES:
            result = db.query(f"SELECT COUNT(*) AS count FROM {table}")
            assert result.first()["count"] == 0

        db.init_schema()


def test_cursor_shares_in_memory_database():
    """A cursor session sees the same tables but keeps its own temp tables."""
    with DuckDBDatabase(":memory:") as db:
        db.execute("CREATE TABLE test (id INTEGER)")
        session = db.cursor()
        try:
            session.execute("INSERT INTO test VALUES (1)")
            session.execute("CREATE TEMP TABLE scratch (id INTEGER)")

            assert db.query("SELECT COUNT(*) AS n FROM test").first()["n"] == 1
            with pytest.raises(DatabaseError):
                db.query("SELECT * FROM scratch")
        finally:
            session.close()

        session.interrupt()
        assert db.query("SELECT COUNT(*) AS n FROM test").first()["n"] == 1
