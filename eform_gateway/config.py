from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Catalog tables managed by this service
CATALOG_TABLE = "dynamic_tables"
METADATA_TABLE = "dynamic_table_fields"
REPORT_TABLE = "report_queries"

# Never reachable through the generic table and row endpoints
PROTECTED_TABLES = (CATALOG_TABLE, METADATA_TABLE, REPORT_TABLE)

# Columns every dynamic table gets, in addition to the requested fields
PRIMARY_KEY_COLUMN = "id"
SYSTEM_COLUMNS = ("created_on", "modified_on", "versionid")
RESERVED_COLUMNS = (PRIMARY_KEY_COLUMN,) + SYSTEM_COLUMNS

MAX_ALLOWED_POOL = 50


class Settings(BaseSettings):
    # Database
    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    db_host: Optional[str] = Field(None, alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_socket_path: Optional[str] = Field(None, alias="DB_SOCKET_PATH")
    db_user: Optional[str] = Field(None, alias="DB_USER")
    db_password: Optional[str] = Field(None, alias="DB_PASS")
    db_name: Optional[str] = Field(None, alias="DB_NAME")

    # Pool
    pool_size: int = Field(10, alias="DB_POOL_SIZE")
    max_overflow: int = Field(5, alias="DB_MAX_OVERFLOW")
    pool_timeout: int = Field(10, alias="DB_POOL_TIMEOUT")
    pool_recycle: int = Field(1800, alias="DB_POOL_RECYCLE")
    statement_timeout_ms: int = Field(30_000, alias="DB_STATEMENT_TIMEOUT_MS")

    # Auth
    jwt_secret: Optional[str] = Field(None, alias="JWT_SECRET")
    jwt_issuer: Optional[str] = Field(None, alias="JWT_ISSUER")
    jwt_audience: Optional[str] = Field(None, alias="JWT_AUDIENCE")

    # HTTP
    cors_origins: Annotated[List[str], NoDecode] = Field(
        ["http://localhost:3000", "http://localhost:8000"], alias="CORS_ORIGINS"
    )
    rate_limit: str = Field("100/minute", alias="RATE_LIMIT")
    allow_raw_sql: bool = Field(False, alias="ALLOW_RAW_SQL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("pool_size", "max_overflow")
    @classmethod
    def cap_pool(cls, value: int) -> int:
        return min(value, MAX_ALLOWED_POOL)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value):
        # CORS_ORIGINS is a comma separated list
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings from the environment once; tests call cache_clear()."""
    return Settings()

##WHY HERE?
##Catalog table names live in one file so operators can audit what the
##service owns; everything else comes from the environment.
