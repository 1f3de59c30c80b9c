"""Base classes for database implementations."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any


@dataclass
class QueryResult:
    """Result of a database query operation."""

    rows: list[dict[str, Any]]
    execution_time: float | None = None

    def empty(self) -> bool:
        """Check if the result set is empty."""
        return len(self.rows) == 0

    def count(self) -> int:
        """Get the number of rows in the result set."""
        return len(self.rows)

    def first(self) -> dict[str, Any] | None:
        """Get the first row, or None if empty."""
        return self.rows[0] if self.rows else None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        """Allow iteration over rows."""
        return iter(self.rows)

    def __len__(self) -> int:
        """Get the number of rows."""
        return len(self.rows)

    def __bool__(self) -> bool:
        """Check if the result set has any rows."""
        return not self.empty()


class Database(ABC):
    """Abstract base class for database implementations."""

    @abstractmethod
    def query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a SELECT (or RETURNING) statement and return results.

        Raises:
            DatabaseError: If query execution fails
        """

    @abstractmethod
    def execute(self, sql: str, params: list | None = None) -> None:
        """Execute a DDL or DML statement.

        Raises:
            DatabaseError: If statement execution fails
        """

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Run the enclosed statements in a single transaction.

        Commits on normal exit and rolls back if the block raises.
        """

    @abstractmethod
    def cursor(self) -> "Database":
        """Open a separate session on the same database.

        The session has its own transaction and can be handed to a worker
        thread. The caller closes it.
        """

    @abstractmethod
    def interrupt(self) -> None:
        """Abort the statement currently running, from any thread."""

    @abstractmethod
    def close(self) -> None:
        """Close the database connection and clean up resources."""

    @abstractmethod
    def init_schema(self) -> None:
        """Initialize the plan ledger schema.

        Creates the tables that hold transformation plans and their
        append-only history:
        - transformation_plans: plan aggregate with versioned summary fields
        - transformation_iterations: one row per generate/sample-test cycle
        - transformation_approvals: approval requests and decisions
        - transformation_logs: full-dataset execution attempts
        - transformation_rollbacks: rollback attempts (automatic or manual)
        - transformation_snapshots: rollback checkpoints
        - lineage_records: asset lineage written after execution

        This method is idempotent and can be called multiple times safely.

        Raises:
            DatabaseError: If schema creation fails
        """


class DatabaseError(Exception):
    """Base exception for database-related errors."""
