"""
Request/result contract of the dispatch engine.

QueryRequest comes in from an upstream HTTP handler as decoded JSON; QueryResult
goes back out and is re-encoded by that handler. Both use camelCase on the wire.
"""

from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from querydispatch.core.params import validate_params


class DataSourceKindEnum(str, Enum):
    """Data-source kinds a request can target."""

    SQL = "sql"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    DOCUMENT_STORE = "document-store"
    HTTP_API = "http-api"


# Names used by older dashboard widgets.
LEGACY_KIND_ALIASES = {
    "firestore": DataSourceKindEnum.DOCUMENT_STORE.value,
    "api": DataSourceKindEnum.HTTP_API.value,
}

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    ser_json_bytes="base64",
)


class QueryRequest(BaseModel):
    model_config = _WIRE_CONFIG

    # Kept as a plain string: an unknown kind is a dispatch-time rejection,
    # not a parse error, so the caller still gets a well-formed result.
    data_source_kind: str = Field(
        validation_alias=AliasChoices(
            "dataSourceKind", "data_source_kind", "dataSourceType"
        ),
    )
    query: str
    params: dict[str, Any] = Field(default_factory=dict)
    widget_id: str | None = None
    tenant_id: str | None = None

    @field_validator("data_source_kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            v = v.value
        if isinstance(v, str):
            v = v.strip().lower()
            return LEGACY_KIND_ALIASES.get(v, v)
        return v

    @field_validator("query")
    @classmethod
    def _query_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be empty")
        return v

    @field_validator("params", mode="before")
    @classmethod
    def _check_params(cls, v: Any) -> dict[str, Any]:
        return validate_params(v)


class QueryMetadata(BaseModel):
    """Echo of the originating request, for audit/debugging."""

    model_config = _WIRE_CONFIG

    data_source: str
    query: str
    params: dict[str, Any] = Field(default_factory=dict)
    widget_id: str | None = None
    tenant_id: str | None = None


class QueryResult(BaseModel):
    model_config = _WIRE_CONFIG

    success: bool
    data: list[dict[str, Any]] | None = None
    columns: list[str] | None = None
    row_count: int | None = None
    execution_time: float | None = None
    error: str | None = None
    metadata: QueryMetadata

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "QueryResult":
        if self.success:
            if self.data is None or self.columns is None or self.error is not None:
                raise ValueError("successful result needs data and columns, and no error")
            if self.row_count != len(self.data):
                raise ValueError("row_count must equal len(data)")
            if self.execution_time is None:
                raise ValueError("successful result needs execution_time")
        else:
            if not self.error or self.data is not None or self.columns is not None:
                raise ValueError("failed result needs an error, and no data/columns")
            if self.row_count is not None or self.execution_time is not None:
                raise ValueError("failed result carries no row_count/execution_time")
        return self

    @classmethod
    def ok(
        cls,
        *,
        data: list[dict[str, Any]],
        columns: list[str],
        execution_time: float,
        metadata: QueryMetadata,
    ) -> "QueryResult":
        return cls(
            success=True,
            data=data,
            columns=columns,
            row_count=len(data),
            execution_time=execution_time,
            metadata=metadata,
        )

    @classmethod
    def fail(cls, error: str, *, metadata: QueryMetadata) -> "QueryResult":
        return cls(success=False, error=error, metadata=metadata)

    def to_wire(self) -> dict[str, Any]:
        """JSON-safe camelCase dict; absent top-level fields omitted, row nulls kept.

        Binary values are base64 encoded; values of types pydantic does not know
        (driver-specific scalars) fall back to their string form.
        """
        out = self.model_dump(mode="json", by_alias=True, fallback=str)
        return {k: v for k, v in out.items() if v is not None}
