"""
Fixtures for tests that need a real PostgreSQL server.

Point ``EFORM_TEST_DATABASE_URL`` at a disposable database to run them;
otherwise every test in this directory is skipped.
"""

import os
import uuid
from typing import Generator

import pytest
from sqlalchemy import text
from sqlalchemy.engine import Engine

from eform_gateway.catalog import SchemaCatalog
from eform_gateway.config import CATALOG_TABLE, METADATA_TABLE, REPORT_TABLE, Settings
from eform_gateway.database import dispose_db_engine, init_db_engine

TEST_DSN_ENV = "EFORM_TEST_DATABASE_URL"


def pytest_collection_modifyitems(items):
    for item in items:
        if "/integration/" in str(item.fspath).replace(os.sep, "/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def pg_engine() -> Generator[Engine, None, None]:
    """Session-scoped pooled engine, with the catalog tables in place."""
    dsn = os.environ.get(TEST_DSN_ENV)
    if not dsn:
        pytest.skip(f"{TEST_DSN_ENV} not set; skipping database integration tests")

    dispose_db_engine()
    engine = init_db_engine(Settings(database_url=dsn, pool_size=5, max_overflow=5))
    with engine.connect() as conn:
        SchemaCatalog(conn).ensure_schema()
    try:
        yield engine
    finally:
        dispose_db_engine()


@pytest.fixture()
def table_name(pg_engine: Engine) -> Generator[str, None, None]:
    """A unique table name, dropped together with its catalog rows afterwards."""
    name = f"it_{uuid.uuid4().hex[:12]}"
    yield name
    with pg_engine.connect() as conn:
        conn.execute(text(f'DROP TABLE IF EXISTS "{name}"'))
        conn.execute(text(f"DELETE FROM {CATALOG_TABLE} WHERE table_name = :t"), {"t": name})
        conn.execute(text(f"DELETE FROM {METADATA_TABLE} WHERE table_name = :t"), {"t": name})


@pytest.fixture()
def report_slug(pg_engine: Engine) -> Generator[str, None, None]:
    slug = f"it_report_{uuid.uuid4().hex[:8]}"
    yield slug
    with pg_engine.connect() as conn:
        conn.execute(text(f"DELETE FROM {REPORT_TABLE} WHERE slug = :s"), {"s": slug})
