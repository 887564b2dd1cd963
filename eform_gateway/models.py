"""
Typed structures passed between the API boundary and the engine.

Request bodies arrive as arbitrary JSON; they are converted into these
types before anything reaches the query builder or the schema engine.
"""

from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

from pydantic import BaseModel, Field

from eform_gateway.column_types import LogicalType, native_type


class ColumnSpec(BaseModel):
    """One requested column: sanitized name and whitelisted type."""

    name: str
    logical_type: LogicalType

    @property
    def native_type(self) -> str:
        return native_type(self.logical_type)


class TableDefinition(BaseModel):
    """Catalog entry for a dynamically created table."""

    entity_name: str
    table_name: str
    fields: Dict[str, str] = Field(default_factory=dict)
    created_on: Optional[datetime] = None


class SchemaChange(BaseModel):
    """Outcome of a define-or-extend call."""

    table: TableDefinition
    created: bool
    added_columns: List[str] = Field(default_factory=list)
    ignored_columns: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class NamedQueryResult(BaseModel):
    slug: str
    rows: List[Dict[str, Any]]
    count: int


class EqualityFilter(BaseModel):
    """``column = value`` pairs joined with AND; every value is bound."""

    values: Dict[str, Any]


class RawCondition(BaseModel):
    """Trusted WHERE text, placed into the statement verbatim."""

    sql: str


class RawQuery(BaseModel):
    """Trusted complete SELECT statement."""

    sql: str


QueryFilter = Union[EqualityFilter, RawCondition, RawQuery]


def to_query_filter(value) -> Optional[QueryFilter]:
    """
    Convert a parsed JSON filter into a typed filter.

    - ``None``, ``{}`` or a blank string: no filter
    - a string: RawCondition
    - ``{"raw": "select ..."}``: RawQuery
    - any other mapping: EqualityFilter
    """
    if value is None:
        return None
    if isinstance(value, (EqualityFilter, RawCondition, RawQuery)):
        return value
    if isinstance(value, str):
        return RawCondition(sql=value) if value.strip() else None
    if isinstance(value, dict):
        if not value:
            return None
        if set(value) == {"raw"} and isinstance(value["raw"], str):
            return RawQuery(sql=value["raw"])
        return EqualityFilter(values=value)
    raise TypeError(f"Unsupported filter type: {type(value).__name__}")


def is_raw(query_filter: Optional[QueryFilter]) -> bool:
    return isinstance(query_filter, (RawCondition, RawQuery))


class Statement(NamedTuple):
    """
    SQL text in SQLAlchemy ``text()`` syntax plus its values.

    ``params`` is either the ordered sequence behind ``:p1, :p2, ...`` or, for
    the fixed catalog queries, a mapping of bind names.
    """

    sql: str
    params: Union[Sequence[Any], Dict[str, Any]] = ()

    def bind_params(self) -> Dict[str, Any]:
        if isinstance(self.params, dict):
            return dict(self.params)
        return {f"p{i}": value for i, value in enumerate(self.params, start=1)}
