"""
Relational connector: statement policy, named-parameter binding, execution.
"""

from .binding import BoundStatement, bind, find_placeholders
from .connector import SqlConnector, classify_error
from .safety import check_statement_policy, split_statements

__all__ = [
    "SqlConnector",
    "classify_error",
    "bind",
    "find_placeholders",
    "BoundStatement",
    "check_statement_policy",
    "split_statements",
]
