"""Database module for remedy."""

from remedy.database.base import Database, DatabaseError, QueryResult
from remedy.database.duckdb import DuckDBDatabase
from remedy.database.manager import DatabaseManager

__all__ = [
    "Database",
    "DatabaseError",
    "QueryResult",
    "DuckDBDatabase",
    "DatabaseManager",
]
