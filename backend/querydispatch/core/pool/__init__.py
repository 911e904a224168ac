"""
Backend connections and the per-(tenant, kind) connection pool.
"""

from .connect import connect, execute, fetch_native
from .health import health_check
from .manager import PoolEntry, PoolKey, PoolManager

__all__ = [
    "connect",
    "execute",
    "fetch_native",
    "health_check",
    "PoolEntry",
    "PoolKey",
    "PoolManager",
]
