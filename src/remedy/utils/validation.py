"""Input validation utilities for remedy."""

import math
import re
from typing import Any

from remedy.error_handling import ValidationError

_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_sql_identifier(name: str, context: str = "identifier") -> None:
    """Validate a SQL identifier (table/column name).

    Args:
        name: The identifier to validate
        context: Context for error messages (e.g., "table name", "column name")

    Raises:
        ValidationError: If the identifier is invalid

    Rules:
        - Must not be empty
        - Must start with a letter or underscore
        - Can only contain letters, numbers, and underscores
        - Must be 1-128 characters
    """
    if not name:
        raise ValidationError(f"Invalid {context}: cannot be empty")

    if len(name) > 128:
        raise ValidationError(
            f"Invalid {context} '{name}': must be 128 characters or less"
        )

    if not _IDENTIFIER_PATTERN.match(name):
        raise ValidationError(
            f"Invalid {context} '{name}': must start with a letter or underscore "
            "and only contain letters, numbers, and underscores"
        )


def validate_asset_name(name: str) -> None:
    """Validate a target asset name, optionally schema-qualified (``schema.table``).

    Raises:
        ValidationError: If any part is not a valid identifier
    """
    if not name:
        raise ValidationError("Invalid target asset: cannot be empty")

    parts = name.split(".")
    if len(parts) > 2:
        raise ValidationError(
            f"Invalid target asset '{name}': expected 'table' or 'schema.table'"
        )
    for part in parts:
        validate_sql_identifier(part, context="target asset")


def quote_sql_identifier(name: str) -> str:
    """Quote a SQL identifier for safe use in queries.

    Schema-qualified names are quoted part by part. Embedded double quotes
    are escaped by doubling them.
    """
    return ".".join(
        '"' + part.replace('"', '""') + '"' for part in name.split(".")
    )


def quote_sql_literal(value: Any) -> str:
    """Render a Python scalar as a DuckDB SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int | float):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"Cannot render non-finite number {value} as SQL")
        return repr(value)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def validate_fraction(value: Any, name: str) -> float:
    """Validate a fraction in [0, 1].

    Returns:
        The value as float

    Raises:
        ValidationError: If the value is not numeric or out of range
    """
    try:
        fraction = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number, got {value!r}") from e

    if not 0.0 <= fraction <= 1.0:
        raise ValidationError(f"{name} must be between 0 and 1, got {fraction}")
    return fraction


def validate_positive_int(value: Any, name: str) -> int:
    """Validate a strictly positive integer.

    Raises:
        ValidationError: If the value is not a positive integer
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise ValidationError(f"{name} must be at least 1, got {value}")
    return value


def validate_api_key(api_key: str) -> str:
    """Validate an API key.

    Returns:
        Stripped API key

    Raises:
        ValidationError: If the API key is invalid
    """
    if not api_key:
        raise ValidationError("API key cannot be empty")

    api_key = api_key.strip()

    if not api_key:
        raise ValidationError("API key cannot be only whitespace")

    if len(api_key) < 10:
        raise ValidationError(
            f"API key too short ({len(api_key)} characters). "
            "Expected at least 10 characters."
        )

    return api_key


def validate_url(url: str) -> str:
    """Validate a URL.

    Returns:
        Validated URL

    Raises:
        ValidationError: If the URL is invalid
    """
    if not url:
        raise ValidationError("URL cannot be empty")

    url = url.strip()

    if not url:
        raise ValidationError("URL cannot be only whitespace")

    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValidationError(
            f"Invalid URL '{url}': must start with http:// or https://"
        )

    if not re.match(r"^https?://[^\s/$.?#].[^\s]*$", url, re.IGNORECASE):
        raise ValidationError(f"Invalid URL format: {url}")

    return url
