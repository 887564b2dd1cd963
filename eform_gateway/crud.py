import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Connection

from eform_gateway.catalog import SchemaCatalog
from eform_gateway.database import execute_statement, fetch_rows
from eform_gateway.column_types import LogicalType
from eform_gateway.errors import EmptyPayload, InvalidValue, NotFound
from eform_gateway.identifiers import normalize_identifier, sanitize_table_name
from eform_gateway.models import NamedQueryResult, QueryFilter, RawQuery, Statement
from eform_gateway.query_builder import (
    build_delete,
    build_insert,
    build_select,
    build_update,
    ensure_select,
)

logger = logging.getLogger(__name__)


class CrudExecutor:
    """
    Runs builder output against one pooled connection.

    Every call issues a single statement and opens no transaction of its
    own, so each operation is atomic exactly at statement granularity.
    """

    def __init__(self, conn: Connection, catalog: Optional[SchemaCatalog] = None):
        self.conn = conn
        self.catalog = catalog or SchemaCatalog(conn)

    def _rows(self, statement: Statement) -> List[Dict[str, Any]]:
        return fetch_rows(execute_statement(self.conn, statement))

    def decode_binary(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """
        Turn base64 strings into bytes for the table's binary columns.

        JSON has no bytes type: binary values leave the API base64 encoded,
        and come back the same way. Rows without string values are returned
        untouched, without a catalog lookup.

        Raises:
            InvalidValue: If a binary column gets a string that is not base64
        """
        table = sanitize_table_name(table)
        if not isinstance(row, dict) or not any(isinstance(v, str) for v in row.values()):
            return row
        definition = self.catalog.get(table)
        if definition is None:
            return row

        binary = {
            name for name, logical in definition.fields.items()
            if logical == LogicalType.BINARY.value
        }
        decoded = {}
        for column, value in row.items():
            if isinstance(value, str) and normalize_identifier(column) in binary:
                try:
                    value = base64.b64decode(value, validate=True)
                except (binascii.Error, ValueError):
                    raise InvalidValue(
                        f"Column {column!r} expects base64-encoded binary data"
                    ) from None
            decoded[column] = value
        return decoded

    def insert(
        self, table: str, row: Dict[str, Any], binary_as_base64: bool = False
    ) -> Dict[str, Any]:
        if not isinstance(row, dict):
            raise EmptyPayload("data must be an object of {column: value}")
        statement = build_insert(table, row)
        if binary_as_base64:
            statement = build_insert(table, self.decode_binary(table, row))
        rows = self._rows(statement)
        logger.info(f"Inserted 1 row into {table}")
        return rows[0] if rows else {}

    def read(self, table: Optional[str], query_filter: Optional[QueryFilter] = None) -> List[Dict[str, Any]]:
        return self._rows(build_select(table, query_filter))

    def update(
        self,
        table: str,
        row: Dict[str, Any],
        query_filter: Optional[QueryFilter],
        binary_as_base64: bool = False,
    ) -> List[Dict[str, Any]]:
        # build once to validate before the catalog lookup that decoding needs
        statement = build_update(table, row or {}, query_filter)
        if binary_as_base64:
            statement = build_update(table, self.decode_binary(table, row), query_filter)
        rows = self._rows(statement)
        logger.info(f"Updated {len(rows)} row(s) in {table}")
        return rows

    def delete(self, table: str, query_filter: Optional[QueryFilter]) -> List[Dict[str, Any]]:
        rows = self._rows(build_delete(table, query_filter))
        logger.info(f"Deleted {len(rows)} row(s) from {table}")
        return rows

    def run_named_query(self, slug: str) -> NamedQueryResult:
        """
        Execute a stored report statement by slug.

        Raises:
            NotFound: If no statement is registered for ``slug``
            NonSelectStatementRejected: If the stored statement is not a SELECT
        """
        sql = self.catalog.report_sql(slug)
        if sql is None:
            logger.warning(f"No stored SQL for report slug: {slug}")
            raise NotFound(f"No SQL found for report '{slug}'")

        ensure_select(sql)
        rows = self._rows(build_select(None, RawQuery(sql=sql)))
        return NamedQueryResult(slug=slug, rows=rows, count=len(rows))
