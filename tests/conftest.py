"""
Shared fixtures.

``FakeConnection`` stands in for a pooled SQLAlchemy connection. It records
every statement and simulates just enough of PostgreSQL's catalog (tables,
columns, the registration/metadata/report tables) for the schema engine and
the catalog to run without a server. DML statements get canned results from
``queue_result``.
"""

import json
import os
import re
import time
from datetime import datetime

import pytest

# Settings are read once at import time of the app module
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("JWT_ISSUER", None)
os.environ.pop("JWT_AUDIENCE", None)
os.environ["ALLOW_RAW_SQL"] = "false"
os.environ["RATE_LIMIT"] = "1000/minute"

from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import exc  # noqa: E402

from eform_gateway.config import (  # noqa: E402
    CATALOG_TABLE,
    METADATA_TABLE,
    REPORT_TABLE,
    get_settings,
)

get_settings.cache_clear()

_CREATE = re.compile(r'^CREATE TABLE "(\w+)" \((.*)\)$', re.S)
_ALTER = re.compile(r'^ALTER TABLE "(\w+)" ADD COLUMN IF NOT EXISTS "(\w+)" (\w+)$')
_COLUMN = re.compile(r'^"(\w+)" (\w+)')

# information_schema.columns.data_type for the native types the engine emits
DATA_TYPES = {
    "TEXT": "text",
    "INTEGER": "integer",
    "SERIAL": "integer",
    "NUMERIC": "numeric",
    "DATE": "date",
    "TIMESTAMP": "timestamp without time zone",
    "UUID": "uuid",
    "BYTEA": "bytea",
}


def backend_error(code: str, message: str) -> exc.ProgrammingError:
    """A SQLAlchemy error wrapping a pg8000-style driver error."""
    return exc.ProgrammingError("statement", {}, Exception({"C": code, "M": message}))


class FakeResult:
    def __init__(self, rows=None, scalar=None, rowcount=None):
        self._rows = [dict(r) for r in (rows or [])]
        self._scalar = scalar
        self.rowcount = len(self._rows) if rowcount is None else rowcount
        self.returns_rows = True

    def scalar(self):
        return self._scalar

    def mappings(self):
        return _Mappings(self._rows)


class _Mappings:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None


class FakeConnection:
    def __init__(self):
        self.statements = []
        self.tables = {}
        # {table: {column: data_type}}; columns missing here read as "text"
        self.column_types = {}
        self.registry = {}
        self.metadata = {}
        self.reports = {}
        self._queued = []
        self._failures = []
        self.race_create = None

    # -- test helpers -------------------------------------------------------

    def queue_result(self, rows=None, rowcount=None):
        self._queued.append(FakeResult(rows=rows, rowcount=rowcount))

    def fail_on(self, fragment: str, error: Exception):
        """Raise ``error`` the next time a statement contains ``fragment``."""
        self._failures.append((fragment, error))

    def sql_log(self):
        return [sql for sql, _ in self.statements]

    def count(self, prefix: str) -> int:
        return sum(1 for sql in self.sql_log() if sql.startswith(prefix))

    # -- connection API -----------------------------------------------------

    def execute(self, clause, params=None):
        sql = getattr(clause, "text", str(clause)).strip()
        params = dict(params or {})
        self.statements.append((sql, params))

        for i, (fragment, error) in enumerate(self._failures):
            if fragment in sql:
                del self._failures[i]
                raise error

        if sql.startswith("SELECT to_regclass"):
            return FakeResult(scalar=params["name"].strip('"') in self.tables)
        if "FROM information_schema.columns" in sql:
            columns = self.tables.get(params["table"], [])
            types = self.column_types.get(params["table"], {})
            return FakeResult(
                rows=[{"column_name": c, "data_type": types.get(c, "text")} for c in columns]
            )
        if sql.startswith("CREATE TABLE IF NOT EXISTS"):
            return FakeResult()
        if sql.startswith("CREATE TABLE"):
            return self._create(sql)
        if sql.startswith("ALTER TABLE"):
            table, column, native = _ALTER.match(sql).groups()
            if column not in self.tables[table]:
                self.tables[table].append(column)
                self.column_types.setdefault(table, {})[column] = DATA_TYPES[native]
            return FakeResult()
        if sql.startswith(f"INSERT INTO {CATALOG_TABLE}"):
            self.registry.setdefault(
                params["table"],
                {"entity_name": params["entity"], "created_on": datetime(2026, 1, 1, 12, 0)},
            )
            return FakeResult(rowcount=1)
        if sql.startswith(f"INSERT INTO {METADATA_TABLE}"):
            self.metadata.setdefault(
                params["table"],
                {"entity_name": params["entity"], "fields": json.loads(params["fields"])},
            )
            return FakeResult(rowcount=1)
        if sql.startswith(f"UPDATE {METADATA_TABLE}"):
            entry = self.metadata.get(params["table"])
            if entry is None:
                return FakeResult(rowcount=0)
            entry["fields"] = {**json.loads(params["fields"]), **entry["fields"]}
            return FakeResult(rowcount=1)
        if f"FROM {CATALOG_TABLE} r" in sql:
            return FakeResult(rows=self._definitions(params.get("table")))
        if f"FROM {REPORT_TABLE}" in sql:
            stored = self.reports.get(params["slug"])
            return FakeResult(rows=[{"sql": stored}] if stored is not None else [])

        if self._queued:
            return self._queued.pop(0)
        return FakeResult()

    def _create(self, sql):
        table, body = _CREATE.match(sql).groups()
        if self.race_create:
            # another caller wins the race between the existence check and CREATE
            self.tables[table] = list(self.race_create)
            self.race_create = None
        if table in self.tables:
            raise backend_error("42P07", f'relation "{table}" already exists')
        columns = [_COLUMN.match(part.strip()).groups() for part in body.split(", ")]
        self.tables[table] = [name for name, _ in columns]
        self.column_types[table] = {name: DATA_TYPES[native] for name, native in columns}
        return FakeResult()

    def _definitions(self, table=None):
        rows = []
        for name, entry in self.registry.items():
            if table is not None and name != table:
                continue
            meta = self.metadata.get(name)
            rows.append(
                {
                    "entity_name": entry["entity_name"],
                    "table_name": name,
                    "created_on": entry["created_on"],
                    "fields": dict(meta["fields"]) if meta else None,
                }
            )
        return rows


def make_token(sub: str = "tester", secret: str = "test-secret", expires_in: int = 3600, **claims) -> str:
    payload = {"sub": sub, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture()
def fake_conn():
    return FakeConnection()


@pytest.fixture(scope="session")
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture()
def app_module():
    from eform_gateway import main

    return main


@pytest.fixture()
def client(app_module, fake_conn, auth_headers):
    from eform_gateway.database import get_connection

    app_module.app.dependency_overrides[get_connection] = lambda: fake_conn
    try:
        yield TestClient(app_module.app, headers=auth_headers)
    finally:
        app_module.app.dependency_overrides.clear()


@pytest.fixture()
def raw_sql_enabled(app_module, monkeypatch):
    monkeypatch.setattr(app_module.settings, "allow_raw_sql", True)
