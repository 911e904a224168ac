"""
Error taxonomy for query dispatch.

Connectors translate native driver exceptions into these types; the
Dispatcher is the only place they are caught and turned into a failed
QueryResult.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for every error the engine raises on purpose."""

    error_type = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(DispatchError, ValueError):
    """Request rejected before any backend I/O (unknown kind, empty query, bad params)."""

    error_type = "validation"


class CapacityError(DispatchError):
    """Pool exhausted: no handle became available within the caller's deadline."""

    error_type = "capacity"


class ConnectorError(DispatchError):
    """Failure reported by a backend. ``status_code`` is set for HTTP backends."""

    error_type = "backend"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientBackendError(ConnectorError):
    """Connection reset or backend temporarily unavailable. Safe to retry."""

    error_type = "transient"


class PermanentBackendError(ConnectorError):
    """Auth failure, syntax error, policy violation. Never retried."""

    error_type = "permanent"


class QueryTimeoutError(DispatchError, TimeoutError):
    """Deadline exceeded while acquiring a handle or waiting on the backend."""

    error_type = "timeout"
