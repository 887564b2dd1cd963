"""
Error taxonomy for the dynamic schema and query engine.

Every error knows the HTTP status it maps to, so the API layer can translate
it without a lookup table. Validation errors are raised before any statement
executes; backend errors wrap the native driver error.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all errors raised by the engine."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidIdentifier(GatewayError):
    status_code = 400


class InvalidType(GatewayError):
    status_code = 400


class EmptyPayload(GatewayError):
    status_code = 400


class InvalidValue(GatewayError):
    status_code = 400


class MissingFilter(GatewayError):
    status_code = 400


class NonSelectStatementRejected(GatewayError):
    status_code = 400


class RawSqlNotAllowed(GatewayError):
    status_code = 403


class AuthRejected(GatewayError):
    status_code = 401


class NotFound(GatewayError):
    status_code = 404


class DuplicateTable(GatewayError):
    status_code = 409


class BackendExecutionError(GatewayError):
    """A statement was rejected by the database."""

    status_code = 500

    def __init__(self, message: str, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.sqlstate = sqlstate


class CatalogWriteError(BackendExecutionError):
    """The physical DDL succeeded but the catalog bookkeeping did not."""
