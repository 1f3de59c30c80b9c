"""DuckDB database implementation."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import duckdb

from remedy.database.base import Database, DatabaseError, QueryResult


class DuckDBDatabase(Database):
    """DuckDB implementation of the Database interface."""

    def __init__(
        self,
        db_path: str | Path,
        connection: duckdb.DuckDBPyConnection | None = None,
    ):
        """Initialize DuckDB database connection.

        Args:
            db_path: Path to the DuckDB database file.
                Use ":memory:" for in-memory database.
            connection: An already open connection to wrap instead of
                connecting to db_path
        """
        self.db_path = str(db_path)
        self._connection: duckdb.DuckDBPyConnection | None = connection
        self._transaction_depth = 0
        if connection is None:
            self._connect()

    def _connect(self) -> None:
        """Establish connection to the database."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self.db_path)
        except Exception as e:
            raise DatabaseError(
                f"Failed to connect to DuckDB at {self.db_path}: {e}"
            ) from e

    def _ensure_connected(self) -> duckdb.DuckDBPyConnection:
        """Ensure we have a valid database connection."""
        if self._connection is None:
            self._connect()

        if self._connection is None:
            raise DatabaseError("Database connection is not available")

        return self._connection

    def query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a query and return results.

        Args:
            sql: SQL statement returning rows (SELECT or ... RETURNING)
            params: Optional list of parameters for the query

        Returns:
            QueryResult containing the query results

        Raises:
            DatabaseError: If query execution fails
        """
        start_time = time.time()

        try:
            conn = self._ensure_connected()
            cursor = conn.execute(sql, params) if params else conn.execute(sql)

            rows = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description or []]
            result_rows = [dict(zip(columns, row, strict=False)) for row in rows]

            return QueryResult(rows=result_rows, execution_time=time.time() - start_time)

        except Exception as e:
            raise DatabaseError(f"Query execution failed: {e}") from e

    def execute(self, sql: str, params: list | None = None) -> None:
        """Execute a DDL or DML statement (CREATE, INSERT, UPDATE, DELETE).

        Args:
            sql: SQL statement to execute
            params: Optional list of parameters for the statement

        Raises:
            DatabaseError: If statement execution fails
        """
        try:
            conn = self._ensure_connected()
            if params:
                conn.execute(sql, params)
            else:
                conn.execute(sql)

        except Exception as e:
            raise DatabaseError(f"Statement execution failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements in one transaction.

        Nested calls join the outermost transaction.
        """
        conn = self._ensure_connected()
        if self._transaction_depth > 0:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        try:
            conn.execute("BEGIN TRANSACTION")
        except Exception as e:
            raise DatabaseError(f"Failed to begin transaction: {e}") from e

        self._transaction_depth = 1
        try:
            yield
        except BaseException:
            self._transaction_depth = 0
            conn.execute("ROLLBACK")
            raise
        self._transaction_depth = 0
        try:
            conn.execute("COMMIT")
        except Exception as e:
            raise DatabaseError(f"Failed to commit transaction: {e}") from e

    def cursor(self) -> "DuckDBDatabase":
        """Open a second connection to the same database instance.

        The session sees the same tables (in-memory databases included) but
        keeps its own transaction and temporary tables, and may be used from
        another thread.

        Raises:
            DatabaseError: If the session cannot be opened
        """
        try:
            return DuckDBDatabase(self.db_path, self._ensure_connected().cursor())
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to open session: {e}") from e

    def interrupt(self) -> None:
        """Abort the statement currently running on this connection.

        Safe to call from any thread.
        """
        connection = self._connection
        if connection is not None:
            connection.interrupt()

    def close(self) -> None:
        """Close the database connection and clean up resources."""
        if self._connection is not None:
            try:
                self._connection.close()
            except Exception:
                # Ignore errors when closing
                pass
            finally:
                self._connection = None

    def init_schema(self) -> None:
        """Initialize the plan ledger schema.

        Raises:
            DatabaseError: If schema creation fails
        """
        try:
            # Plan aggregate; only the summary fields are ever updated, guarded
            # by the version column. Updated columns must stay unindexed, DuckDB
            # rewrites updates of indexed columns as delete + insert.
            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_plans(
                    id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL,
                    source_id TEXT,
                    target_asset TEXT NOT NULL,
                    target_column TEXT,
                    transformation_kind TEXT NOT NULL,
                    description TEXT NOT NULL,
                    parameters TEXT NOT NULL,
                    generated_code TEXT,
                    rollback_code TEXT,
                    affected_columns TEXT NOT NULL,
                    estimated_row_count BIGINT,
                    risk_level TEXT NOT NULL,
                    iteration_count INTEGER NOT NULL DEFAULT 0,
                    max_iterations INTEGER NOT NULL,
                    final_accuracy DOUBLE,
                    accuracy_threshold DOUBLE NOT NULL,
                    status TEXT NOT NULL,
                    failure_reason TEXT,
                    requested_by TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    active_operation TEXT,
                    operation_started_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_iterations(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    iteration_number INTEGER NOT NULL,
                    code TEXT,
                    rollback_code TEXT,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP NOT NULL,
                    execution_time_ms INTEGER NOT NULL,
                    sample_size INTEGER NOT NULL,
                    success BOOLEAN NOT NULL,
                    accuracy DOUBLE,
                    meets_threshold BOOLEAN NOT NULL,
                    evaluation_notes TEXT,
                    issues_found TEXT NOT NULL,
                    improvements_suggested TEXT NOT NULL,
                    sample_before TEXT NOT NULL,
                    sample_after TEXT NOT NULL,
                    error_message TEXT,
                    UNIQUE (plan_id, iteration_number)
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_approvals(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reviewed_by TEXT,
                    reviewed_at TIMESTAMP,
                    comment TEXT,
                    auto_approved BOOLEAN NOT NULL DEFAULT FALSE,
                    auto_approve_reason TEXT,
                    expires_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
            """)

            self.execute("""
                CREATE INDEX IF NOT EXISTS idx_transformation_approvals_plan
                ON transformation_approvals(plan_id);
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_logs(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    approval_id TEXT,
                    snapshot_id TEXT,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    rows_affected BIGINT NOT NULL DEFAULT 0,
                    rows_succeeded BIGINT NOT NULL DEFAULT 0,
                    rows_failed BIGINT NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    executed_by TEXT NOT NULL,
                    lineage_recorded BOOLEAN NOT NULL DEFAULT FALSE
                );
            """)

            self.execute("""
                CREATE INDEX IF NOT EXISTS idx_transformation_logs_plan
                ON transformation_logs(plan_id);
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_rollbacks(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    execution_log_id TEXT NOT NULL,
                    snapshot_id TEXT,
                    trigger TEXT NOT NULL,
                    method TEXT,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    requested_by TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_snapshots(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    target_asset TEXT NOT NULL,
                    backup_table TEXT NOT NULL,
                    row_count BIGINT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS lineage_records(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL,
                    execution_log_id TEXT NOT NULL,
                    target_asset TEXT NOT NULL,
                    target_column TEXT,
                    affected_columns TEXT NOT NULL,
                    relation TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
            """)

            self.execute("""
                CREATE INDEX IF NOT EXISTS idx_lineage_records_asset
                ON lineage_records(target_asset, created_at);
            """)

        except Exception as e:
            raise DatabaseError(f"Schema initialization failed: {e}") from e

    def __enter__(self) -> "DuckDBDatabase":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - ensure connection is closed."""
        self.close()

    def __del__(self) -> None:
        """Destructor - ensure connection is closed."""
        self.close()
