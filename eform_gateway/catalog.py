"""
Persistent record of the tables this service manages.

Existence and column checks read the backend's own system catalog, because
the metadata record may be stale or missing for tables created elsewhere.
Writes are only ever issued by the schema engine, after the matching DDL.
"""

import json
import logging
from typing import Dict, List, Optional

from sqlalchemy.engine import Connection

from eform_gateway.config import CATALOG_TABLE, METADATA_TABLE, REPORT_TABLE
from eform_gateway.database import execute_statement, fetch_rows
from eform_gateway.errors import BackendExecutionError, CatalogWriteError
from eform_gateway.identifiers import quote_identifier, sanitize_identifier
from eform_gateway.models import Statement, TableDefinition

logger = logging.getLogger(__name__)

CATALOG_DDL = (
    f"""CREATE TABLE IF NOT EXISTS {CATALOG_TABLE} (
        id SERIAL PRIMARY KEY,
        entity_name TEXT NOT NULL,
        table_name TEXT NOT NULL UNIQUE,
        created_on TIMESTAMP DEFAULT now()
    )""",
    f"""CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
        table_name TEXT PRIMARY KEY,
        entity_name TEXT NOT NULL,
        fields JSONB NOT NULL DEFAULT '{{}}'::jsonb
    )""",
    f"""CREATE TABLE IF NOT EXISTS {REPORT_TABLE} (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        sql TEXT NOT NULL
    )""",
)

_DEFINITION_QUERY = (
    f"SELECT r.entity_name, r.table_name, r.created_on, m.fields "
    f"FROM {CATALOG_TABLE} r "
    f"LEFT JOIN {METADATA_TABLE} m ON m.table_name = r.table_name"
)


def _load_fields(value) -> Dict[str, str]:
    # pg8000 decodes JSONB already; other drivers may hand back text
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class SchemaCatalog:
    def __init__(self, conn: Connection):
        self.conn = conn

    def _run(self, sql: str, **params):
        return execute_statement(self.conn, Statement(sql, params))

    def _write(self, sql: str, **params):
        try:
            return self._run(sql, **params)
        except BackendExecutionError as e:
            raise CatalogWriteError(e.message, sqlstate=e.sqlstate) from e

    def ensure_schema(self) -> None:
        """Create the catalog tables if this is a fresh database."""
        for ddl in CATALOG_DDL:
            self._run(ddl)
        logger.info("Catalog tables ready")

    def exists(self, table: str) -> bool:
        safe = sanitize_identifier(table, "table")
        result = self._run(
            "SELECT to_regclass(:name) IS NOT NULL", name=quote_identifier(safe)
        )
        return bool(result.scalar())

    def column_types(self, table: str) -> Dict[str, str]:
        """Physical columns of a table mapped to their data_type, in ordinal order."""
        safe = sanitize_identifier(table, "table")
        result = self._run(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = :table "
            "ORDER BY ordinal_position",
            table=safe,
        )
        return {row["column_name"]: row["data_type"] for row in fetch_rows(result)}

    def columns(self, table: str) -> List[str]:
        """Physical columns of a table, in ordinal order."""
        return list(self.column_types(table))

    def get(self, table: str) -> Optional[TableDefinition]:
        safe = sanitize_identifier(table, "table")
        result = self._run(f"{_DEFINITION_QUERY} WHERE r.table_name = :table", table=safe)
        rows = fetch_rows(result)
        if not rows:
            return None

        definition = _to_definition(rows[0])
        # JSONB forgets key order; the physical table remembers it
        order = {name: i for i, name in enumerate(self.columns(safe))}
        definition.fields = dict(
            sorted(definition.fields.items(), key=lambda kv: order.get(kv[0], len(order)))
        )
        return definition

    def list_tables(self) -> List[TableDefinition]:
        result = self._run(f"{_DEFINITION_QUERY} ORDER BY r.created_on, r.table_name")
        return [_to_definition(row) for row in fetch_rows(result)]

    def register(self, entity_name: str, table: str, fields: Dict[str, str]) -> None:
        """Record a new table. Safe to repeat: existing rows are left alone."""
        safe = sanitize_identifier(table, "table")
        self._write(
            f"INSERT INTO {CATALOG_TABLE} (entity_name, table_name) "
            f"VALUES (:entity, :table) ON CONFLICT (table_name) DO NOTHING",
            entity=entity_name,
            table=safe,
        )
        self._write(
            f"INSERT INTO {METADATA_TABLE} (table_name, entity_name, fields) "
            f"VALUES (:table, :entity, CAST(:fields AS JSONB)) "
            f"ON CONFLICT (table_name) DO NOTHING",
            table=safe,
            entity=entity_name,
            fields=json.dumps(fields),
        )
        logger.info(f"Registered table {safe} for entity {entity_name}")

    def merge_fields(self, table: str, fields: Dict[str, str]) -> bool:
        """
        Add fields to the stored map. Keys already present keep their type.

        Returns:
            False if there is no metadata row to merge into
        """
        safe = sanitize_identifier(table, "table")
        result = self._write(
            f"UPDATE {METADATA_TABLE} SET fields = CAST(:fields AS JSONB) || fields "
            f"WHERE table_name = :table",
            fields=json.dumps(fields),
            table=safe,
        )
        return bool(result.rowcount)

    def report_sql(self, slug: str) -> Optional[str]:
        """Stored statement for a report slug, or None."""
        result = self._run(f"SELECT sql FROM {REPORT_TABLE} WHERE slug = :slug", slug=slug)
        row = result.mappings().first()
        return row["sql"] if row else None


def _to_definition(row) -> TableDefinition:
    return TableDefinition(
        entity_name=row["entity_name"],
        table_name=row["table_name"],
        fields=_load_fields(row["fields"]),
        created_on=row["created_on"],
    )
