import base64
import logging
from typing import Any, Dict, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.engine import Connection

from eform_gateway import __version__
from eform_gateway.catalog import SchemaCatalog
from eform_gateway.config import get_settings
from eform_gateway.crud import CrudExecutor
from eform_gateway.database import (
    dispose_db_engine,
    get_connection,
    init_db_engine,
)
from eform_gateway.errors import GatewayError, NotFound, RawSqlNotAllowed
from eform_gateway.models import QueryFilter, RawQuery, is_raw, to_query_filter
from eform_gateway.schema_engine import SchemaEngine
from eform_gateway.security import (
    get_current_user,
    get_user_id_from_token,
    token_from_request,
)

API_PREFIX = "/api"

settings = get_settings()

# Initialize the API App
app = FastAPI(
    title="eForm Gateway",
    description="Runtime-defined tables with parameterized CRUD",
    version=__version__,
)
logger = logging.getLogger("uvicorn")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Rate Limiter
def get_user_identifier(request: Request) -> str:
    """Key requests by verified user id, falling back to client address."""
    token = token_from_request(request)
    if token:
        user_id = get_user_id_from_token(token)
        if user_id != "invalid_user":
            return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=get_user_identifier, default_limits=[settings.rate_limit])
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed or incomplete bodies are client errors: 400, not 422."""
    errors = exc.errors()
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in errors]
    logger.warning(f"Rejected request body on {request.url.path}: {fields}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(errors)},
    )


# Lifecycle Events
@app.on_event("startup")
async def startup_event():
    """Build the pool and make sure the catalog tables exist."""
    engine = init_db_engine(settings)
    with engine.connect() as conn:
        SchemaCatalog(conn).ensure_schema()
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Release pooled connections."""
    dispose_db_engine()
    logger.info("Clean shutdown complete")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _encode_bytes(value) -> str:
    return base64.b64encode(bytes(value)).decode("ascii")


def _json(content: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            content, custom_encoder={bytes: _encode_bytes, memoryview: _encode_bytes}
        ),
    )


def _http_error(e: GatewayError, action: str) -> HTTPException:
    if e.status_code >= 500:
        logger.error(f"{action} failed: {e.message}")
    else:
        logger.warning(f"{action} rejected: {e.message}")
    return HTTPException(status_code=e.status_code, detail=e.message)


def _filter(value, allow_raw: bool) -> Optional[QueryFilter]:
    query_filter = to_query_filter(value)
    if is_raw(query_filter) and not allow_raw:
        raise RawSqlNotAllowed("Raw SQL conditions are disabled on this server")
    return query_filter


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TableRequest(BaseModel):
    entity_name: str = Field(
        ...,
        validation_alias=AliasChoices("entityName", "entity_name", "eform_name"),
        description="Logical form/entity that owns the table",
    )
    table_name: str = Field(
        ...,
        validation_alias=AliasChoices("tableName", "table_name", "table"),
        description="Requested physical table name",
    )
    fields: Dict[str, str] = Field(..., description="Mapping of column name to type")


class InsertRequest(BaseModel):
    table: str
    data: Dict[str, Any]


class ReadRequest(BaseModel):
    table: Optional[str] = None
    filter: Union[Dict[str, Any], str, None] = None
    query: Optional[str] = Field(default=None, description="Trusted raw SELECT statement")


class UpdateRequest(BaseModel):
    table: str
    data: Dict[str, Any]
    where: Union[Dict[str, Any], str]


class DeleteRequest(BaseModel):
    table: str
    where: Union[Dict[str, Any], str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

# Health Check Endpoint
@app.get("/")
@limiter.limit(settings.rate_limit)
async def health_check(request: Request):
    """Liveness check endpoint."""
    return {
        "status": "healthy",
        "service": "eform-gateway",
        "version": __version__,
        "features": ["dynamic_tables", "crud", "reports", "jwt_auth", "rate_limiting"],
    }


@app.post(f"{API_PREFIX}/tables", status_code=201)
@limiter.limit(settings.rate_limit)
def define_table(
    request: Request,
    body: TableRequest,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    """Create a table from a field map, or add the missing fields to it."""
    logger.info(
        f"Define table by user={current_user.get('sub', 'unknown')} | "
        f"entity={body.entity_name} | table={body.table_name}"
    )
    try:
        change = SchemaEngine(conn).define_or_extend(body.entity_name, body.table_name, body.fields)
    except GatewayError as e:
        raise _http_error(e, "Define table")
    except Exception as e:
        logger.error(f"Unexpected define table error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error while defining table")

    table = change.table.table_name
    message = (
        f"Table '{table}' created successfully"
        if change.created
        else f"Fields added to existing table '{table}'"
    )
    return _json({"success": True, "message": message, **change.model_dump()}, status_code=201)


# List Tables Endpoint
@app.get(f"{API_PREFIX}/tables")
@limiter.limit(settings.rate_limit)
def list_tables(
    request: Request,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    """List every table registered in the catalog."""
    try:
        tables = SchemaCatalog(conn).list_tables()
    except GatewayError as e:
        raise _http_error(e, "List tables")
    return _json({"tables": [t.model_dump() for t in tables], "count": len(tables)})


@app.get(f"{API_PREFIX}/tables/{{table_name}}")
@limiter.limit(settings.rate_limit)
def get_table(
    request: Request,
    table_name: str,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    try:
        definition = SchemaCatalog(conn).get(table_name)
        if definition is None:
            raise NotFound(f"Table '{table_name}' not found")
    except GatewayError as e:
        raise _http_error(e, "Get table")
    return _json(definition.model_dump())


@app.post(f"{API_PREFIX}/rows", status_code=201)
@limiter.limit(settings.rate_limit)
def insert_row(
    request: Request,
    body: InsertRequest,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    """Insert one row. Values for binary columns are sent base64 encoded."""
    try:
        row = CrudExecutor(conn).insert(body.table, body.data, binary_as_base64=True)
    except GatewayError as e:
        raise _http_error(e, "Insert")
    except Exception as e:
        logger.error(f"Unexpected insert error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error during insert")
    return _json({"message": "Row inserted", "data": row}, status_code=201)


@app.post(f"{API_PREFIX}/rows/read")
@limiter.limit(settings.rate_limit)
def read_rows(
    request: Request,
    body: ReadRequest,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    """
    Read rows with an optional equality filter.

    ``{"query": "SELECT ..."}`` runs a trusted raw statement instead; it is
    only accepted when raw SQL is enabled and must be a SELECT.
    """
    try:
        if body.query is not None:
            query_filter = _filter({"raw": body.query}, settings.allow_raw_sql)
            rows = CrudExecutor(conn).read(None, query_filter)
        elif body.table:
            query_filter = _filter(body.filter, settings.allow_raw_sql)
            rows = CrudExecutor(conn).read(body.table, query_filter)
        else:
            raise HTTPException(status_code=400, detail="Table or query is required")
    except GatewayError as e:
        raise _http_error(e, "Read")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected read error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error during read")
    return _json(rows)


@app.put(f"{API_PREFIX}/rows")
@limiter.limit(settings.rate_limit)
def update_rows(
    request: Request,
    body: UpdateRequest,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    try:
        query_filter = _filter(body.where, settings.allow_raw_sql)
        if isinstance(query_filter, RawQuery):
            query_filter = None
        rows = CrudExecutor(conn).update(
            body.table, body.data, query_filter, binary_as_base64=True
        )
    except GatewayError as e:
        raise _http_error(e, "Update")
    except Exception as e:
        logger.error(f"Unexpected update error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error during update")
    return _json({"message": "Rows updated successfully", "data": rows, "count": len(rows)})


@app.delete(f"{API_PREFIX}/rows")
@limiter.limit(settings.rate_limit)
def delete_rows(
    request: Request,
    body: DeleteRequest,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    try:
        query_filter = _filter(body.where, settings.allow_raw_sql)
        if isinstance(query_filter, RawQuery):
            query_filter = None
        rows = CrudExecutor(conn).delete(body.table, query_filter)
    except GatewayError as e:
        raise _http_error(e, "Delete")
    except Exception as e:
        logger.error(f"Unexpected delete error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error during delete")
    return _json({"message": "Rows deleted successfully", "data": rows, "count": len(rows)})


# Stored Report Endpoint
@app.get(f"{API_PREFIX}/reports/{{slug}}")
@limiter.limit(settings.rate_limit)
def run_report(
    request: Request,
    slug: str,
    current_user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_connection),
):
    """Run a pre-registered SELECT by its slug. Takes no caller parameters."""
    logger.info(f"Report run by user={current_user.get('sub', 'unknown')} | slug={slug}")
    try:
        result = CrudExecutor(conn).run_named_query(slug)
    except GatewayError as e:
        raise _http_error(e, "Report")
    except Exception as e:
        logger.error(f"Unexpected report error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database execution error")
    return _json(result.model_dump())
