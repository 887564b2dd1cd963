"""
Parameterized DML for tables whose names are only known at request time.

Identifiers go through the sanitizer and are interpolated; values are never
interpolated, they become ``:pN`` bind parameters numbered in the order they
appear in the statement.

Example:
    >>> stmt = build_update("orders", {"amount": 50}, EqualityFilter(values={"id": 7}))
    >>> stmt.sql
    'UPDATE "orders" SET "amount" = :p1 WHERE "id" = :p2 RETURNING *'
    >>> stmt.params
    [50, 7]
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from eform_gateway.errors import (
    EmptyPayload,
    InvalidIdentifier,
    MissingFilter,
    NonSelectStatementRejected,
)
from eform_gateway.identifiers import quote_identifier, quoted_table_name, sanitize_identifier
from eform_gateway.models import (
    EqualityFilter,
    QueryFilter,
    RawCondition,
    RawQuery,
    Statement,
)

_SELECT_PREFIX = re.compile(r"^select\b", re.IGNORECASE)


def ensure_select(sql: str) -> str:
    """
    Guard for the read-only raw SQL surfaces.

    Returns the trimmed statement (one trailing semicolon dropped).

    Raises:
        NonSelectStatementRejected: If the statement does not start with SELECT
    """
    statement = (sql or "").strip()
    if not _SELECT_PREFIX.match(statement):
        raise NonSelectStatementRejected("Only SELECT queries are allowed.")
    if statement.endswith(";"):
        statement = statement[:-1].rstrip()
    return statement


def _escape_raw(sql: str) -> str:
    # a literal ":name" in trusted text must not turn into a bind parameter
    return sql.replace(":", "\\:")


def _quoted_columns(row: Dict[str, Any]) -> List[str]:
    columns = [sanitize_identifier(key, "column") for key in row]
    duplicates = {c for c in columns if columns.count(c) > 1}
    if duplicates:
        raise InvalidIdentifier(
            f"Column names collide after sanitization: {', '.join(sorted(duplicates))}"
        )
    return [quote_identifier(c) for c in columns]


def _has_filter(query_filter: Optional[QueryFilter]) -> bool:
    if query_filter is None:
        return False
    if isinstance(query_filter, EqualityFilter):
        return bool(query_filter.values)
    return bool(query_filter.sql.strip())


def _where_clause(query_filter: QueryFilter, start: int) -> Tuple[str, List[Any]]:
    """
    Render a filter as WHERE text whose placeholders start at ``:p{start}``.
    """
    if isinstance(query_filter, RawCondition):
        return _escape_raw(query_filter.sql.strip()), []
    if not isinstance(query_filter, EqualityFilter):
        raise MissingFilter("A WHERE condition is required, not a complete statement")

    columns = _quoted_columns(query_filter.values)
    clauses = []
    params: List[Any] = []
    for column, value in zip(columns, query_filter.values.values()):
        if value is None:
            clauses.append(f"{column} IS NULL")
            continue
        params.append(value)
        clauses.append(f"{column} = :p{start + len(params) - 1}")
    return " AND ".join(clauses), params


def build_insert(table: str, row: Dict[str, Any]) -> Statement:
    """INSERT one row and return it."""
    qualified = quoted_table_name(table)
    if not row:
        raise EmptyPayload("No data provided for insert")

    columns = _quoted_columns(row)
    placeholders = [f":p{i}" for i in range(1, len(columns) + 1)]
    sql = (
        f"INSERT INTO {qualified} ({', '.join(columns)}) "
        f"VALUES ({', '.join(placeholders)}) RETURNING *"
    )
    return Statement(sql, list(row.values()))


def build_select(table: Optional[str], query_filter: Optional[QueryFilter] = None) -> Statement:
    """
    SELECT rows, optionally filtered.

    A RawQuery is a complete trusted statement: it only has to pass the
    SELECT guard and ``table`` is ignored.
    """
    if isinstance(query_filter, RawQuery):
        return Statement(_escape_raw(ensure_select(query_filter.sql)), [])

    qualified = quoted_table_name(table)
    sql = f"SELECT * FROM {qualified}"
    if not _has_filter(query_filter):
        return Statement(sql, [])

    where, params = _where_clause(query_filter, start=1)
    return Statement(f"{sql} WHERE {where}", params)


def build_update(
    table: str, row: Dict[str, Any], query_filter: Optional[QueryFilter]
) -> Statement:
    """UPDATE matching rows; an unconditional update is never built."""
    if not _has_filter(query_filter):
        raise MissingFilter("WHERE condition is required to prevent updating all rows")
    qualified = quoted_table_name(table)
    if not row:
        raise EmptyPayload("No data provided for update")

    columns = _quoted_columns(row)
    assignments = [f"{col} = :p{i}" for i, col in enumerate(columns, start=1)]
    where, where_params = _where_clause(query_filter, start=len(columns) + 1)
    sql = f"UPDATE {qualified} SET {', '.join(assignments)} WHERE {where} RETURNING *"
    return Statement(sql, list(row.values()) + where_params)


def build_delete(table: str, query_filter: Optional[QueryFilter]) -> Statement:
    """DELETE matching rows; an unconditional delete is never built."""
    if not _has_filter(query_filter):
        raise MissingFilter("WHERE condition is required to prevent deleting all rows")
    qualified = quoted_table_name(table)

    where, params = _where_clause(query_filter, start=1)
    return Statement(f"DELETE FROM {qualified} WHERE {where} RETURNING *", params)
