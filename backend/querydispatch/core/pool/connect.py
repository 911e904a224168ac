"""
DB-API connection helpers for relational backends.

Uses psycopg (PostgreSQL) or pymysql (MySQL) based on dialect.
"""

import logging
from typing import Any

import psycopg
import pymysql

from querydispatch.core.config import DatabaseSettings, SqlDialectEnum

_log = logging.getLogger(__name__)


def connect(db: DatabaseSettings, *, connect_timeout: int) -> Any:
    """Open a connection to an external DB described by *db*."""
    if db.dialect == SqlDialectEnum.POSTGRES:
        return psycopg.connect(
            host=db.host,
            port=db.effective_port,
            dbname=db.database,
            user=db.username,
            password=db.password,
            connect_timeout=connect_timeout,
            application_name="querydispatch",
            sslmode="require" if db.use_ssl else "prefer",
        )
    if db.dialect == SqlDialectEnum.MYSQL:
        return pymysql.connect(
            host=db.host,
            port=db.effective_port,
            database=db.database,
            user=db.username,
            password=db.password,
            connect_timeout=connect_timeout,
            ssl_verify_cert=db.use_ssl,
            ssl_verify_identity=db.use_ssl,
        )
    raise ValueError(f"Unsupported dialect: {db.dialect}")


def _set_statement_timeout(conn: Any, dialect: SqlDialectEnum, timeout_sec: float) -> None:
    timeout_ms = int(timeout_sec * 1000)
    cur = conn.cursor()
    try:
        if dialect == SqlDialectEnum.POSTGRES:
            cur.execute("SELECT set_config('statement_timeout', %s, false)", (str(timeout_ms),))
        elif dialect == SqlDialectEnum.MYSQL:
            cur.execute("SET SESSION max_execution_time = %s", (timeout_ms,))
    finally:
        try:
            cur.close()
        except Exception:
            pass


def execute(
    conn: Any,
    sql: str,
    params: dict[str, Any] | None = None,
    *,
    dialect: SqlDialectEnum | None = None,
    statement_timeout: float | None = None,
) -> Any:
    """
    Execute one statement with driver-native binding and return the cursor.

    When *statement_timeout* and *dialect* are set, the backend-side limit is
    applied before the query (Postgres: statement_timeout, MySQL:
    max_execution_time) and reset after.
    """
    apply_timeout = (
        statement_timeout is not None
        and statement_timeout > 0
        and dialect is not None
    )
    if apply_timeout:
        _set_statement_timeout(conn, dialect, statement_timeout)

    cur = conn.cursor()
    try:
        if params is not None:
            cur.execute(sql, params)
        else:
            cur.execute(sql)
    finally:
        if apply_timeout:
            try:
                _set_statement_timeout(conn, dialect, 0)
            except Exception as e:
                _log.debug("Could not reset statement timeout: %s", e)
    return cur


def fetch_native(
    cursor: Any, *, max_rows: int | None = None
) -> tuple[list[str], list[tuple[Any, ...]]]:
    """Read (columns, rows) from a cursor. Works for psycopg and pymysql."""
    desc = cursor.description
    if not desc:
        return [], []
    columns = [d[0] for d in desc]
    raw = cursor.fetchmany(max_rows) if max_rows else cursor.fetchall()
    return columns, [tuple(row) for row in raw]
