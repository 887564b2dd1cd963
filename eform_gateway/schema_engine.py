"""
Create or extend tables from a client-supplied ``{column: type}`` map.

The engine is the only writer of both the physical schema and the catalog.
It validates the whole request before touching the database, runs DDL
first and the catalog write second, and only ever adds structure.

Policy for re-declared columns: a field already present in the catalog keeps
its stored type; a request that names it with a different type is ignored
(reported back in ``ignored_columns``), never applied. A column that exists
physically but not in the catalog is recorded with its real type, or left out
when that type is outside the whitelist.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.engine import Connection

from eform_gateway.catalog import SchemaCatalog
from eform_gateway.column_types import logical_type_of, resolve_type
from eform_gateway.config import PRIMARY_KEY_COLUMN, RESERVED_COLUMNS
from eform_gateway.database import (
    DUPLICATE_COLUMN,
    DUPLICATE_TABLE,
    UNIQUE_VIOLATION,
    execute_statement,
)
from eform_gateway.errors import (
    BackendExecutionError,
    CatalogWriteError,
    EmptyPayload,
    InvalidIdentifier,
)
from eform_gateway.identifiers import quote_identifier, sanitize_identifier, sanitize_table_name
from eform_gateway.models import ColumnSpec, SchemaChange, Statement, TableDefinition

logger = logging.getLogger(__name__)

SYSTEM_COLUMN_DDL = (
    '"created_on" TIMESTAMP DEFAULT now()',
    '"modified_on" TIMESTAMP DEFAULT now()',
    '"versionid" UUID DEFAULT gen_random_uuid()',
)


def validate_fields(fields) -> List[ColumnSpec]:
    """
    Sanitize every column name and resolve every type, all or nothing.

    Raises:
        EmptyPayload: If ``fields`` is not a non-empty mapping
        InvalidIdentifier: On an empty, duplicate or reserved column name
        InvalidType: On a type outside the whitelist
    """
    if not isinstance(fields, dict) or not fields:
        raise EmptyPayload("fields must be a non-empty object of {column: type}")

    specs: List[ColumnSpec] = []
    seen = set()
    for column, logical_type in fields.items():
        name = sanitize_identifier(column, "column")
        if name in RESERVED_COLUMNS:
            raise InvalidIdentifier(f"Column name {name!r} is reserved for system use")
        if name in seen:
            raise InvalidIdentifier(f"Column {name!r} is declared more than once")
        seen.add(name)
        specs.append(ColumnSpec(name=name, logical_type=resolve_type(logical_type)))
    return specs


def build_create_table(table: str, specs: List[ColumnSpec]) -> Statement:
    columns = [f"{quote_identifier(PRIMARY_KEY_COLUMN)} SERIAL PRIMARY KEY"]
    columns += [f"{quote_identifier(s.name)} {s.native_type}" for s in specs]
    columns += list(SYSTEM_COLUMN_DDL)
    return Statement(f"CREATE TABLE {quote_identifier(table)} ({', '.join(columns)})")


def build_add_column(table: str, spec: ColumnSpec) -> Statement:
    return Statement(
        f"ALTER TABLE {quote_identifier(table)} "
        f"ADD COLUMN IF NOT EXISTS {quote_identifier(spec.name)} {spec.native_type}",
    )


class SchemaEngine:
    def __init__(self, conn: Connection, catalog: Optional[SchemaCatalog] = None):
        self.conn = conn
        self.catalog = catalog or SchemaCatalog(conn)

    def define_or_extend(self, entity_name: str, table_name: str, fields: Dict[str, str]) -> SchemaChange:
        """
        Create ``table_name`` from ``fields``, or add the missing columns to it.

        Args:
            entity_name: Logical form/entity that owns the table
            table_name: Requested physical name, sanitized before use
            fields: Mapping of column name to logical type

        Returns:
            SchemaChange with the resulting definition

        Raises:
            InvalidIdentifier, InvalidType, EmptyPayload: Before any statement
            BackendExecutionError: If the backend rejects the DDL
        """
        if not isinstance(entity_name, str) or not entity_name.strip():
            raise EmptyPayload("entity name is required")
        entity_name = entity_name.strip()
        table = sanitize_table_name(table_name)
        specs = validate_fields(fields)

        if self.catalog.exists(table):
            return self._extend(entity_name, table, specs)

        try:
            execute_statement(self.conn, build_create_table(table, specs))
        except BackendExecutionError as e:
            if e.sqlstate not in (DUPLICATE_TABLE, UNIQUE_VIOLATION):
                raise
            # another request created it after our existence check
            logger.info(f"Table {table} appeared concurrently, extending instead")
            return self._extend(entity_name, table, specs)

        logger.info(f"Created table {table} with columns {[s.name for s in specs]}")
        requested = {s.name: s.logical_type.value for s in specs}
        warnings = []
        try:
            self.catalog.register(entity_name, table, requested)
        except CatalogWriteError as e:
            warnings.append(self._catalog_warning(table, e))

        return SchemaChange(
            table=self._definition(entity_name, table, requested, warnings),
            created=True,
            added_columns=[s.name for s in specs],
            warnings=warnings,
        )

    def _extend(self, entity_name: str, table: str, specs: List[ColumnSpec]) -> SchemaChange:
        physical = self.catalog.column_types(table)
        added = []
        raced = False
        for spec in specs:
            if spec.name in physical:
                continue
            try:
                execute_statement(self.conn, build_add_column(table, spec))
            except BackendExecutionError as e:
                if e.sqlstate not in (DUPLICATE_COLUMN, UNIQUE_VIOLATION):
                    raise
                logger.info(f"Column {table}.{spec.name} was added concurrently")
                raced = True
                continue
            added.append(spec.name)

        if added:
            logger.info(f"Added columns {added} to table {table}")
        if raced:
            # the other caller chose the type of the columns it added
            physical = self.catalog.column_types(table)

        existing = self.catalog.get(table)
        new_fields, ignored = self._fields_to_record(
            specs, physical, existing.fields if existing else {}, added
        )
        if ignored:
            logger.warning(f"Ignoring type changes for existing columns {ignored} on table {table}")

        warnings = []
        try:
            if existing is None:
                # physical table nobody registered: adopt it
                self.catalog.register(entity_name, table, new_fields)
            elif new_fields and not self.catalog.merge_fields(table, new_fields):
                self.catalog.register(existing.entity_name, table, new_fields)
        except CatalogWriteError as e:
            warnings.append(self._catalog_warning(table, e))

        return SchemaChange(
            table=self._definition(entity_name, table, new_fields, warnings, existing),
            created=False,
            added_columns=added,
            ignored_columns=ignored,
            warnings=warnings,
        )

    @staticmethod
    def _fields_to_record(
        specs: List[ColumnSpec],
        physical: Dict[str, str],
        known: Dict[str, str],
        added: List[str],
    ) -> Tuple[Dict[str, str], List[str]]:
        """
        Decide which catalog entries an extend call writes.

        The catalog describes the table as it is: a column that already
        existed keeps its stored or physical type, whatever was requested.

        Returns:
            ({column: logical type} to record, columns whose request was ignored)
        """
        record: Dict[str, str] = {}
        ignored: List[str] = []
        for spec in specs:
            name, requested = spec.name, spec.logical_type.value
            if name in known:
                if known[name] != requested:
                    ignored.append(name)
                continue
            if name in added or name not in physical:
                record[name] = requested
                continue
            actual = logical_type_of(physical[name])
            if actual is None:
                # column exists with a type outside the whitelist: leave it out
                ignored.append(name)
                continue
            if actual.value != requested:
                ignored.append(name)
            record[name] = actual.value
        return record, ignored

    def _catalog_warning(self, table: str, error: CatalogWriteError) -> str:
        logger.warning(f"Catalog write failed for table {table}: {error.message}")
        return f"Table schema was updated but the catalog write failed: {error.message}"

    def _definition(
        self,
        entity_name: str,
        table: str,
        requested: Dict[str, str],
        warnings: List[str],
        existing: Optional[TableDefinition] = None,
    ) -> TableDefinition:
        if not warnings:
            stored = self.catalog.get(table)
            if stored is not None:
                return stored
        # catalog unavailable: describe what was requested on top of what we knew
        fields = dict(existing.fields) if existing else {}
        for name, logical in requested.items():
            fields.setdefault(name, logical)
        return TableDefinition(
            entity_name=existing.entity_name if existing else entity_name,
            table_name=table,
            fields=fields,
            created_on=existing.created_on if existing else None,
        )
