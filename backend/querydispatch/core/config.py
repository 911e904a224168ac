"""
Engine configuration.

Everything (pool sizes, timeouts, retry policy, per-kind backend connection
parameters) is read from one Settings object. It can be built from the
environment (``QUERY_DISPATCH_*``, nested with ``__``) or constructed directly
with keyword arguments and handed to the Dispatcher.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SqlDialectEnum(str, Enum):
    """SQL products a relational connector can talk to."""

    POSTGRES = "postgres"
    MYSQL = "mysql"


class DatabaseSettings(BaseModel):
    """Connection parameters for a relational backend."""

    dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES
    host: str = Field(..., min_length=1)
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = ""
    use_ssl: bool = False

    @property
    def effective_port(self) -> int:
        if self.port:
            return self.port
        if self.dialect == SqlDialectEnum.MYSQL:
            return 3306
        return 5432


class DocumentStoreSettings(BaseModel):
    """MongoDB connection URI and the database queries run against."""

    uri: str = Field(default="mongodb://localhost:27017", min_length=1)
    database: str = Field(..., min_length=1)


class HttpApiSettings(BaseModel):
    """Base URL, credentials and outbound guard for the HTTP-API connector."""

    base_url: str = ""
    api_key: str | None = None
    api_key_header: str = "Authorization"
    headers: dict[str, str] = Field(default_factory=dict)
    allowed_hosts: list[str] = Field(default_factory=lambda: ["*"])
    block_private_addresses: bool = False

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, v: object) -> object:
        if isinstance(v, str):
            return [h.strip() for h in v.split(",") if h.strip()]
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUERY_DISPATCH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Pool
    MAX_POOL_SIZE_PER_KEY: int = Field(default=5, ge=1)
    MIN_IDLE_PER_KEY: int = Field(default=1, ge=0)
    IDLE_EVICTION_PERIOD: float = Field(default=300.0, gt=0)
    POOL_MAX_AGE_SEC: float = Field(default=600.0, gt=0)
    PING_IDLE_THRESHOLD: float = Field(default=30.0, ge=0)

    # Request policy
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)
    RETRY_COUNT: int = Field(default=2, ge=0)
    RETRY_BACKOFF: float = Field(default=0.5, ge=0)
    CONNECT_TIMEOUT: int = Field(default=10, ge=1)
    MAX_WORKERS: int = Field(default=32, ge=1)
    MAX_ROWS: int = Field(default=10000, ge=1)
    ALLOW_ADMIN_SQL: bool = False
    DEFAULT_TENANT: str = "default"

    # Backends; a kind is registered only when its block is present.
    SQL: DatabaseSettings | None = None
    POSTGRESQL: DatabaseSettings | None = None
    MYSQL: DatabaseSettings | None = None
    DOCUMENT_STORE: DocumentStoreSettings | None = None
    HTTP_API: HttpApiSettings = Field(default_factory=HttpApiSettings)

    @property
    def statement_timeout(self) -> float:
        """Backend-side execution limit; never longer than the request deadline."""
        return self.REQUEST_TIMEOUT
