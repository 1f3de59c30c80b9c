"""Base service class for database operations."""

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..base import QueryResult
    from ..manager import DatabaseManager


class BaseService:
    """Base class for all database services.

    Provides common functionality and database access patterns
    for domain-specific service classes.
    """

    def __init__(self, db_manager: "DatabaseManager"):
        """Initialize service with database manager.

        Args:
            db_manager: DatabaseManager instance for database access
        """
        self.db_manager = db_manager

    def _system_query(self, sql: str, params: list | None = None) -> "QueryResult":
        """Execute query against system database."""
        return self.db_manager.system_query(sql, params)

    def _system_execute(self, sql: str, params: list | None = None) -> None:
        """Execute statement against system database."""
        self.db_manager.system_execute(sql, params)

    @staticmethod
    def _dump(value: Any) -> str:
        """Serialize a JSON-valued column."""
        return json.dumps(value, default=str)
