"""
Named-parameter binding for relational queries.

Callers write ``:name`` placeholders. They are rewritten to the pyformat style
shared by psycopg and pymysql (``%(name)s``, literal ``%`` doubled) and the
values are handed to the driver separately, so parameter values never become
part of the SQL text.

Placeholders inside quoted literals and comments are left alone, as are
``::`` casts.
"""

import re
from typing import Any, NamedTuple

from querydispatch.core.config import SqlDialectEnum
from querydispatch.core.errors import ValidationError

from .safety import backslash_escapes_by_default, skip_literal_or_comment

_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class BoundStatement(NamedTuple):
    sql: str
    params: dict[str, Any] | None


def _tokens(sql: str, dialect: SqlDialectEnum):
    """Yield ("text", chunk) and ("param", name) tokens."""
    backslash_escapes = backslash_escapes_by_default(dialect)
    i = 0
    text_start = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        skipped = skip_literal_or_comment(sql, i, dialect, backslash_escapes=backslash_escapes)
        if skipped is not None:
            i = skipped
            continue
        if ch == ":":
            if sql.startswith("::", i):
                i += 2
                continue
            m = _NAME.match(sql, i + 1)
            if m:
                if i > text_start:
                    yield "text", sql[text_start:i]
                yield "param", m.group(0)
                i = text_start = m.end()
                continue
        i += 1
    if text_start < length:
        yield "text", sql[text_start:]


def find_placeholders(sql: str, dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES) -> list[str]:
    """Placeholder names in order of first appearance."""
    names: list[str] = []
    for kind, value in _tokens(sql, dialect):
        if kind == "param" and value not in names:
            names.append(value)
    return names


def bind(
    sql: str, params: dict[str, Any], dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES
) -> BoundStatement:
    """
    Rewrite ``:name`` placeholders to ``%(name)s`` and collect their values.

    Raises ValidationError when a placeholder has no value. Params that are not
    referenced are ignored. A query without placeholders is returned untouched
    with ``params=None`` so drivers do not reinterpret ``%``.
    """
    tokens = list(_tokens(sql, dialect))
    names = [value for kind, value in tokens if kind == "param"]
    if not names:
        return BoundStatement(sql, None)

    missing = sorted({n for n in names if n not in params})
    if missing:
        raise ValidationError(f"Missing value for parameter(s): {', '.join(missing)}")

    parts: list[str] = []
    named: dict[str, Any] = {}
    for kind, value in tokens:
        if kind == "param":
            parts.append(f"%({value})s")
            named[value] = params[value]
        else:
            parts.append(value.replace("%", "%%"))
    return BoundStatement("".join(parts), named)
