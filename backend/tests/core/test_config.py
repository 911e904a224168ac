"""Unit tests for core.config.Settings."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from querydispatch.core.config import (
    DatabaseSettings,
    HttpApiSettings,
    Settings,
    SqlDialectEnum,
)


def test_defaults() -> None:
    s = Settings(_env_file=None)
    assert s.MAX_POOL_SIZE_PER_KEY == 5
    assert s.IDLE_EVICTION_PERIOD == 300
    assert s.REQUEST_TIMEOUT == 30
    assert s.RETRY_COUNT == 2
    assert s.RETRY_BACKOFF == 0.5
    assert s.SQL is None and s.DOCUMENT_STORE is None
    assert s.HTTP_API.allowed_hosts == ["*"]
    assert s.statement_timeout == s.REQUEST_TIMEOUT


def test_reads_prefixed_and_nested_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUERY_DISPATCH_MAX_POOL_SIZE_PER_KEY", "9")
    monkeypatch.setenv("QUERY_DISPATCH_REQUEST_TIMEOUT", "4.5")
    monkeypatch.setenv("QUERY_DISPATCH_POSTGRESQL__HOST", "pg.internal")
    monkeypatch.setenv("QUERY_DISPATCH_POSTGRESQL__DATABASE", "ops")
    monkeypatch.setenv("QUERY_DISPATCH_POSTGRESQL__USERNAME", "reader")
    monkeypatch.setenv("QUERY_DISPATCH_HTTP_API__BASE_URL", "https://api.example.com")
    s = Settings(_env_file=None)
    assert s.MAX_POOL_SIZE_PER_KEY == 9
    assert s.REQUEST_TIMEOUT == 4.5
    assert s.POSTGRESQL is not None and s.POSTGRESQL.host == "pg.internal"
    assert s.HTTP_API.base_url == "https://api.example.com"


def test_invalid_values_rejected() -> None:
    with pytest.raises(PydanticValidationError):
        Settings(_env_file=None, MAX_POOL_SIZE_PER_KEY=0)
    with pytest.raises(PydanticValidationError):
        Settings(_env_file=None, REQUEST_TIMEOUT=0)


@pytest.mark.parametrize(
    "dialect,port",
    [(SqlDialectEnum.POSTGRES, 5432), (SqlDialectEnum.MYSQL, 3306)],
)
def test_effective_port_defaults(dialect: SqlDialectEnum, port: int) -> None:
    db = DatabaseSettings(dialect=dialect, host="h", database="d", username="u")
    assert db.effective_port == port
    assert db.model_copy(update={"port": 7000}).effective_port == 7000


def test_allowed_hosts_from_comma_string() -> None:
    cfg = HttpApiSettings(allowed_hosts="api.example.com, *.corp.example.com ,")
    assert cfg.allowed_hosts == ["api.example.com", "*.corp.example.com"]
