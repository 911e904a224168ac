"""
Statement policy for relational queries.

Dashboard queries run with the engine's own credentials, so by default only a
single non-DDL statement is accepted. Deployments that need schema changes or
batches turn on ALLOW_ADMIN_SQL.

The scanner follows the lexical rules of each dialect. PostgreSQL has nested
block comments, ``$tag$`` quoting and ``E'...'`` escape strings; MySQL has
``#`` comments, ``-- `` comments only when followed by whitespace, backquoted
identifiers and executable ``/*! ... */`` comments. Whether a backslash escapes
a quote inside a plain string depends on server settings
(standard_conforming_strings, NO_BACKSLASH_ESCAPES), so the policy is checked
under both readings.
"""

import re

from querydispatch.core.config import SqlDialectEnum
from querydispatch.core.errors import PermanentBackendError, ValidationError

DDL_KEYWORDS = frozenset(
    {"CREATE", "DROP", "ALTER", "TRUNCATE", "GRANT", "REVOKE", "RENAME", "COMMENT"}
)

_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_EXECUTABLE_COMMENT = ("/*!", "/*M!")


def _ident_char(c: str) -> bool:
    return c.isalnum() or c in "_$"


def _line_end(sql: str, i: int) -> int:
    for j in range(i, len(sql)):
        if sql[j] in "\r\n":
            return j + 1
    return len(sql)


def backslash_escapes_by_default(dialect: SqlDialectEnum) -> bool:
    return dialect == SqlDialectEnum.MYSQL


def skip_quoted(sql: str, i: int, *, backslash_escapes: bool = False) -> int:
    """Index just past the quoted literal or identifier starting at *i*.

    A doubled quote character always escapes; ``\\`` only with *backslash_escapes*.
    """
    quote = sql[i]
    i += 1
    length = len(sql)
    while i < length:
        c = sql[i]
        if c == quote:
            if i + 1 < length and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        if backslash_escapes and c == "\\" and i + 1 < length:
            i += 2
            continue
        i += 1
    return length


def skip_comment(sql: str, i: int, dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES) -> int | None:
    """Index past the comment starting at *i*, else None."""
    if dialect == SqlDialectEnum.MYSQL:
        if sql[i] == "#":
            return _line_end(sql, i)
        if sql.startswith("--", i):
            if i + 2 == len(sql) or sql[i + 2].isspace() or ord(sql[i + 2]) < 32:
                return _line_end(sql, i)
            return None
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            return len(sql) if end == -1 else end + 2
        return None

    if sql.startswith("--", i):
        return _line_end(sql, i)
    if sql.startswith("/*", i):
        depth = 0
        length = len(sql)
        while i < length:
            if sql.startswith("/*", i):
                depth += 1
                i += 2
            elif sql.startswith("*/", i):
                depth -= 1
                i += 2
                if depth == 0:
                    return i
            else:
                i += 1
        return length
    return None


def skip_dollar_quoted(sql: str, i: int) -> int | None:
    """Index past a PostgreSQL ``$$...$$`` or ``$tag$...$tag$`` literal at *i*, else None."""
    if i > 0 and _ident_char(sql[i - 1]):
        return None
    m = _DOLLAR_TAG.match(sql, i)
    if m is None:
        return None
    tag = m.group(0)
    end = sql.find(tag, m.end())
    return len(sql) if end == -1 else end + len(tag)


def skip_literal_or_comment(
    sql: str, i: int, dialect: SqlDialectEnum, *, backslash_escapes: bool
) -> int | None:
    """Index past the quoted literal, quoted identifier or comment at *i*, else None."""
    ch = sql[i]
    if dialect == SqlDialectEnum.MYSQL:
        if ch in ("'", '"'):
            return skip_quoted(sql, i, backslash_escapes=backslash_escapes)
        if ch == "`":
            return skip_quoted(sql, i)
        return skip_comment(sql, i, dialect)

    if ch == "'":
        escape_string = (
            i > 0 and sql[i - 1] in "eE" and (i == 1 or not _ident_char(sql[i - 2]))
        )
        return skip_quoted(sql, i, backslash_escapes=backslash_escapes or escape_string)
    if ch == '"':
        return skip_quoted(sql, i)
    if ch == "$":
        return skip_dollar_quoted(sql, i)
    return skip_comment(sql, i, dialect)


def _split(
    sql: str, dialect: SqlDialectEnum, backslash_escapes: bool
) -> tuple[list[str], bool]:
    """Statements plus whether a MySQL executable comment was seen."""
    stmts: list[str] = []
    executable = False
    start = 0
    i = 0
    length = len(sql)
    while i < length:
        if dialect == SqlDialectEnum.MYSQL and sql.startswith(_EXECUTABLE_COMMENT, i):
            executable = True
        skipped = skip_literal_or_comment(sql, i, dialect, backslash_escapes=backslash_escapes)
        if skipped is not None:
            i = skipped
            continue
        if sql[i] == ";":
            stmt = sql[start:i].strip()
            if stmt:
                stmts.append(stmt)
            start = i + 1
        i += 1
    tail = sql[start:].strip()
    if tail:
        stmts.append(tail)
    return stmts, executable


def split_statements(
    sql: str,
    dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES,
    *,
    backslash_escapes: bool | None = None,
) -> list[str]:
    """Split SQL into statements on ``;`` outside literals, identifiers and comments.

    *backslash_escapes* defaults to how the dialect's server reads plain
    string literals out of the box.
    """
    if backslash_escapes is None:
        backslash_escapes = backslash_escapes_by_default(dialect)
    return _split(sql, dialect, backslash_escapes)[0]


def first_keyword(stmt: str, dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES) -> str:
    """Upper-cased first keyword, ignoring leading comments and parentheses."""
    i = 0
    length = len(stmt)
    while i < length:
        if stmt[i].isspace() or stmt[i] == "(":
            i += 1
            continue
        skipped = skip_comment(stmt, i, dialect)
        if skipped is not None:
            i = skipped
            continue
        break
    word = []
    while i < length and (stmt[i].isalnum() or stmt[i] == "_"):
        word.append(stmt[i])
        i += 1
    return "".join(word).upper()


def check_statement_policy(
    sql: str,
    *,
    dialect: SqlDialectEnum = SqlDialectEnum.POSTGRES,
    allow_admin: bool = False,
) -> list[str]:
    """
    Return the statements in *sql*; raise when the policy forbids them.

    - no statement at all -> ValidationError
    - more than one statement without admin access -> PermanentBackendError
    - DDL (CREATE, DROP, ALTER, ...) without admin access -> PermanentBackendError
    - MySQL executable comments without admin access -> PermanentBackendError

    Without admin access the checks must pass whichever way the server reads
    backslashes in string literals.
    """
    default = backslash_escapes_by_default(dialect)
    statements, executable = _split(sql, dialect, default)
    statements = [s for s in statements if first_keyword(s, dialect)]
    if not statements:
        raise ValidationError("Query contains no SQL statement")
    if allow_admin:
        return statements

    alternate, alternate_executable = _split(sql, dialect, not default)
    alternate = [s for s in alternate if first_keyword(s, dialect)]
    if executable or alternate_executable:
        raise PermanentBackendError("Executable comments (/*! ... */) require administrative access")
    for found in (statements, alternate):
        if len(found) > 1:
            raise PermanentBackendError(
                f"Multiple statements are not allowed ({len(found)} found)"
            )
    for stmt in statements + alternate:
        keyword = first_keyword(stmt, dialect)
        if keyword in DDL_KEYWORDS:
            raise PermanentBackendError(f"{keyword} statements require administrative access")
    return statements
