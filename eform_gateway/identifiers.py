"""
SQL identifier handling.

Table and column names cannot be bound as parameters, so they are placed into
SQL text. This module is the only place a client-supplied string is allowed
to become part of a statement: it reduces names to ``[a-z0-9_]`` and quotes
the result.
"""

import re

from eform_gateway.config import PROTECTED_TABLES
from eform_gateway.errors import InvalidIdentifier

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")


def normalize_identifier(name) -> str:
    """
    Lower-case a name and strip every character outside ``[a-z0-9_]``.

    Never raises; anything that is not a string normalizes to ``""``.

    Examples:
        >>> normalize_identifier("Customer Name!")
        'customername'
        >>> normalize_identifier("orders; DROP TABLE users")
        'ordersdroptableusers'
    """
    if not isinstance(name, str):
        return ""
    return _UNSAFE_CHARS.sub("", name.lower())


def sanitize_identifier(name, kind: str = "identifier") -> str:
    """
    Normalize a table/column name and reject it if nothing usable remains.

    Args:
        name: Client-supplied identifier
        kind: Word used in the error message ("table", "column", ...)

    Returns:
        The safe identifier

    Raises:
        InvalidIdentifier: If the name is empty after normalization or
            longer than the backend allows
    """
    safe = normalize_identifier(name)
    if not safe:
        raise InvalidIdentifier(f"Invalid {kind} name: {name!r}")
    if len(safe) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifier(
            f"Invalid {kind} name: {name!r} exceeds {MAX_IDENTIFIER_LENGTH} characters"
        )
    return safe


def quote_identifier(name: str) -> str:
    """
    Quote an already sanitized identifier.

    Quoting keeps reserved words such as ``order`` or ``user`` usable as
    table and column names.

    Examples:
        >>> quote_identifier("order")
        '"order"'
    """
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def sanitize_table_name(name) -> str:
    """
    Sanitize a client-supplied table name.

    The catalog and report tables share the schema with client tables but
    are written only by the service itself, so naming one is an error.

    Raises:
        InvalidIdentifier: On an unusable name or a catalog table
    """
    safe = sanitize_identifier(name, "table")
    if safe in PROTECTED_TABLES:
        raise InvalidIdentifier(f"Table name {safe!r} is reserved for system use")
    return safe


def quoted_table_name(name) -> str:
    """Sanitize, guard and quote a table name in one step."""
    return quote_identifier(sanitize_table_name(name))
