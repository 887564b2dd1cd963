import logging
from typing import Any, Dict, Generator, List, Optional

import sqlalchemy
from sqlalchemy import event, exc, text
from sqlalchemy.engine import Connection, Engine

from eform_gateway.config import Settings, get_settings
from eform_gateway.errors import BackendExecutionError
from eform_gateway.models import Statement

logger = logging.getLogger(__name__)

# SQLSTATE codes the engine reacts to
DUPLICATE_TABLE = "42P07"
DUPLICATE_COLUMN = "42701"
# concurrent DDL on the same name can also trip the system catalog unique indexes
UNIQUE_VIOLATION = "23505"

# SINGLETON ENGINE: owned by the process bootstrap, never read by the engine modules
_engine: Optional[Engine] = None


def _database_url(settings: Settings) -> sqlalchemy.engine.URL:
    if settings.database_url:
        url = sqlalchemy.engine.make_url(settings.database_url)
        if url.drivername in ("postgres", "postgresql"):
            url = url.set(drivername="postgresql+pg8000")
        return url

    if not (settings.db_host or settings.db_socket_path):
        raise RuntimeError("DATABASE_URL, DB_HOST or DB_SOCKET_PATH must be set")

    return sqlalchemy.engine.url.URL.create(
        drivername="postgresql+pg8000",
        host=settings.db_host,
        port=settings.db_port if settings.db_host else None,
        username=settings.db_user,
        password=settings.db_password,
        database=settings.db_name,
    )


def init_db_engine(settings: Optional[Settings] = None) -> Engine:
    """
    Initialize the pooled engine ONCE at application startup.

    Every connection runs in autocommit mode, so a request is atomic exactly
    at the granularity of one statement, and carries a statement_timeout so
    no statement outlives the request deadline.
    """
    global _engine
    if _engine is not None:
        return _engine

    settings = settings or get_settings()

    logger.info(
        f"Initializing DB pool with size={settings.pool_size}, "
        f"overflow={settings.max_overflow}, pre_ping=True, "
        f"statement_timeout={settings.statement_timeout_ms}ms"
    )

    connect_args: Dict[str, Any] = {"timeout": settings.pool_timeout}
    if settings.db_socket_path and not settings.database_url:
        connect_args["unix_sock"] = f"{settings.db_socket_path.rstrip('/')}/.s.PGSQL.5432"

    engine = sqlalchemy.create_engine(
        _database_url(settings),
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
        pool_pre_ping=True,
        isolation_level="AUTOCOMMIT",
        connect_args=connect_args,
    )

    timeout_ms = int(settings.statement_timeout_ms)

    @event.listens_for(engine, "connect")
    def _set_statement_timeout(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"SET statement_timeout = {timeout_ms}")
        cursor.close()
        dbapi_connection.commit()

    _engine = engine
    return _engine


def get_db_engine() -> Engine:
    """Get initialized engine. Must be called AFTER init_db_engine()."""
    if _engine is None:
        raise RuntimeError(
            "DB engine not initialized. "
            "Call init_db_engine() in a startup event first."
        )
    return _engine


def dispose_db_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def get_connection() -> Generator[Connection, None, None]:
    """
    FastAPI dependency: one pooled connection per request.

    The connection goes back to the pool on every exit path, including
    exceptions raised mid-statement.
    """
    engine = get_db_engine()
    with engine.connect() as conn:
        yield conn


def backend_sqlstate(error: exc.SQLAlchemyError) -> Optional[str]:
    """Extract the SQLSTATE from a wrapped driver error (pg8000 or psycopg)."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code:
        return code
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], dict):
        return args[0].get("C")
    return None


def backend_message(error: exc.SQLAlchemyError) -> str:
    """The driver's own message, without SQLAlchemy's statement dump."""
    orig = getattr(error, "orig", None)
    if orig is None:
        return str(error)
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], dict):
        return args[0].get("M", str(orig))
    return str(orig)


def execute_statement(conn: Connection, statement: Statement):
    """
    Run one Statement, binding every value as a parameter.

    Raises:
        BackendExecutionError: If the database rejects the statement
    """
    try:
        return conn.execute(text(statement.sql), statement.bind_params())
    except exc.SQLAlchemyError as e:
        message = backend_message(e)
        logger.error(f"Statement failed: {message} | sql={statement.sql}")
        raise BackendExecutionError(message, sqlstate=backend_sqlstate(e)) from e


def fetch_rows(result) -> List[Dict[str, Any]]:
    """Normalize a result into a list of plain dicts."""
    if not getattr(result, "returns_rows", True):
        return []
    return [dict(row) for row in result.mappings().all()]
