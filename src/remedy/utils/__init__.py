"""Utility modules for remedy."""

from remedy.utils.validation import (
    quote_sql_identifier,
    quote_sql_literal,
    validate_asset_name,
    validate_sql_identifier,
)

__all__ = [
    "quote_sql_identifier",
    "quote_sql_literal",
    "validate_asset_name",
    "validate_sql_identifier",
]
