"""
Relational connector (sql / postgresql / mysql kinds).

Drivers: psycopg (PostgreSQL) and pymysql (MySQL). Values are always bound
through the driver; see binding.py.
"""

import logging
from typing import Any

import psycopg
import pymysql

from querydispatch.connectors.base import Connector, NativeResult
from querydispatch.core.config import DatabaseSettings, Settings, SqlDialectEnum
from querydispatch.core.errors import (
    DispatchError,
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
)
from querydispatch.core.pool.connect import connect, execute, fetch_native
from querydispatch.schemas import DataSourceKindEnum

from .binding import bind
from .safety import check_statement_policy

_log = logging.getLogger(__name__)

# MySQL server/client error codes worth retrying: can't connect, server gone
# away, lost connection, too many connections, lock wait timeout, deadlock.
_MYSQL_TRANSIENT_CODES = frozenset({1040, 1053, 1205, 1213, 2002, 2003, 2006, 2013, 2055})
_MYSQL_TIMEOUT_CODES = frozenset({3024})


def classify_error(e: Exception) -> DispatchError:
    """Map a native driver exception onto the engine's error taxonomy."""
    if isinstance(e, DispatchError):
        return e

    if isinstance(e, psycopg.errors.QueryCanceled):
        return QueryTimeoutError(f"Query canceled by statement timeout: {e}")
    if isinstance(e, psycopg.OperationalError):
        sqlstate = getattr(e, "sqlstate", None) or ""
        text = str(e).lower()
        if sqlstate.startswith("28") or sqlstate == "3D000" or "authentication failed" in text:
            return PermanentBackendError(f"PostgreSQL authentication/catalog error: {e}")
        return TransientBackendError(f"PostgreSQL unavailable: {e}")
    if isinstance(e, psycopg.InterfaceError):
        return TransientBackendError(f"PostgreSQL connection error: {e}")
    if isinstance(e, psycopg.Error):
        return PermanentBackendError(f"PostgreSQL error: {e}")

    if isinstance(e, pymysql.err.OperationalError):
        code = e.args[0] if e.args and isinstance(e.args[0], int) else None
        if code in _MYSQL_TIMEOUT_CODES:
            return QueryTimeoutError(f"Query exceeded max_execution_time: {e}")
        if code in _MYSQL_TRANSIENT_CODES:
            return TransientBackendError(f"MySQL unavailable: {e}")
        return PermanentBackendError(f"MySQL error: {e}")
    if isinstance(e, pymysql.err.InterfaceError):
        return TransientBackendError(f"MySQL connection error: {e}")
    if isinstance(e, pymysql.Error):
        return PermanentBackendError(f"MySQL error: {e}")

    if isinstance(e, (ConnectionError, OSError)):
        return TransientBackendError(f"Database connection failed: {e}")
    return PermanentBackendError(f"SQL execution failed: {e}")


class SqlConnector(Connector):
    """One relational backend; the dialect picks the driver."""

    def __init__(
        self,
        kind: DataSourceKindEnum,
        db: DatabaseSettings,
        *,
        connect_timeout: int = 10,
        statement_timeout: float | None = None,
        allow_admin: bool = False,
        max_rows: int | None = None,
    ) -> None:
        self.kind = kind
        self.db = db
        self.dialect = db.dialect
        self.connect_timeout = connect_timeout
        self.statement_timeout = statement_timeout
        self.allow_admin = allow_admin
        self.max_rows = max_rows

    @classmethod
    def from_settings(
        cls, kind: DataSourceKindEnum, db: DatabaseSettings, settings: Settings
    ) -> "SqlConnector":
        return cls(
            kind,
            db,
            connect_timeout=settings.CONNECT_TIMEOUT,
            statement_timeout=settings.statement_timeout,
            allow_admin=settings.ALLOW_ADMIN_SQL,
            max_rows=settings.MAX_ROWS,
        )

    def validate(self, query: str, params: dict[str, Any]) -> None:
        statements = check_statement_policy(
            query, dialect=self.dialect, allow_admin=self.allow_admin
        )
        for stmt in statements:
            bind(stmt, params, self.dialect)

    def connect(self) -> Any:
        try:
            return connect(self.db, connect_timeout=self.connect_timeout)
        except ValueError as e:
            raise PermanentBackendError(f"Invalid {self.dialect.value} configuration: {e}") from e
        except Exception as e:
            raise classify_error(e) from e

    def run(self, handle: Any, query: str, params: dict[str, Any]) -> NativeResult:
        statements = check_statement_policy(
            query, dialect=self.dialect, allow_admin=self.allow_admin
        )
        columns: list[str] = []
        rows: list[tuple[Any, ...]] = []
        try:
            # With admin access a batch may run; the last result set wins.
            for stmt in statements:
                bound = bind(stmt, params, self.dialect)
                _log.debug("Executing %s statement: %s", self.dialect.value, bound.sql[:200])
                cur = execute(
                    handle,
                    bound.sql,
                    bound.params,
                    dialect=self.dialect,
                    statement_timeout=self.statement_timeout,
                )
                try:
                    if cur.description:
                        columns, rows = fetch_native(cur, max_rows=self.max_rows)
                finally:
                    try:
                        cur.close()
                    except Exception:
                        pass
        except DispatchError:
            raise
        except Exception as e:
            raise classify_error(e) from e
        return NativeResult(rows=rows, columns=columns)

    def ping(self, handle: Any) -> bool:
        cur = handle.cursor()
        try:
            cur.execute("SELECT 1")
            cur.fetchall()
            return True
        finally:
            try:
                cur.close()
            except Exception:
                pass

    def reset(self, handle: Any) -> None:
        handle.rollback()

    def cancel(self, handle: Any) -> None:
        if self.dialect == SqlDialectEnum.POSTGRES:
            try:
                handle.cancel()
            except Exception as e:
                _log.debug("PostgreSQL cancel failed: %s", e)
        self.close(handle)
