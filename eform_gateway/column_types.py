"""Whitelist of column types a client may request."""

from enum import Enum
from typing import Optional

from eform_gateway.errors import InvalidType


class LogicalType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    NUMERIC = "numeric"
    DATE = "date"
    TIMESTAMP = "timestamp"
    UNIQUE_IDENTIFIER = "unique-identifier"
    BINARY = "binary"


NATIVE_TYPES = {
    LogicalType.TEXT: "TEXT",
    LogicalType.INTEGER: "INTEGER",
    LogicalType.NUMERIC: "NUMERIC",
    LogicalType.DATE: "DATE",
    LogicalType.TIMESTAMP: "TIMESTAMP",
    LogicalType.UNIQUE_IDENTIFIER: "UUID",
    LogicalType.BINARY: "BYTEA",
}

# information_schema.columns.data_type of each native type
_PHYSICAL_TYPES = {
    "text": LogicalType.TEXT,
    "integer": LogicalType.INTEGER,
    "numeric": LogicalType.NUMERIC,
    "date": LogicalType.DATE,
    "timestamp without time zone": LogicalType.TIMESTAMP,
    "uuid": LogicalType.UNIQUE_IDENTIFIER,
    "bytea": LogicalType.BINARY,
}

# Spellings older form builders still send
_ALIASES = {
    "uuid": LogicalType.UNIQUE_IDENTIFIER,
    "blob": LogicalType.BINARY,
}


def resolve_type(value) -> LogicalType:
    """
    Map a requested type name to a LogicalType, case-insensitively.

    Raises:
        InvalidType: If the name is not whitelisted
    """
    if isinstance(value, LogicalType):
        return value
    if not isinstance(value, str):
        raise InvalidType(f"Invalid column type: {value!r}")

    key = value.strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return LogicalType(key)
    except ValueError:
        allowed = ", ".join(t.value for t in LogicalType)
        raise InvalidType(f"Invalid column type: {value!r}. Allowed: {allowed}") from None


def native_type(value) -> str:
    """Backend column type for a logical type name."""
    return NATIVE_TYPES[resolve_type(value)]


def logical_type_of(data_type) -> Optional[LogicalType]:
    """LogicalType of an existing column, or None if it is outside the whitelist."""
    if not isinstance(data_type, str):
        return None
    return _PHYSICAL_TYPES.get(data_type.strip().lower())
