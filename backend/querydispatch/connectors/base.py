"""
Connector capability: one backend kind, one way to open, run and close handles.

The pool owns handles; a connector only knows how to create, check, reset and
destroy them, and how to run one query on a handle it has been lent.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from querydispatch.engines.normalizer import NativeResult
from querydispatch.schemas import DataSourceKindEnum

_log = logging.getLogger(__name__)


class Connector(ABC):
    kind: DataSourceKindEnum

    def validate(self, query: str, params: dict[str, Any]) -> None:
        """Reject a request before any I/O. Raise ValidationError / PermanentBackendError."""
        return None

    @abstractmethod
    def connect(self) -> Any:
        """Open a new backend handle. Raise TransientBackendError / PermanentBackendError."""

    @abstractmethod
    def run(self, handle: Any, query: str, params: dict[str, Any]) -> NativeResult:
        """Execute one query on *handle*. Raise a ConnectorError subclass on failure."""

    def ping(self, handle: Any) -> bool:
        """Cheap liveness check used on checkout of long-idle handles."""
        return True

    def reset(self, handle: Any) -> None:
        """Bring a handle back to a clean state before it returns to the idle set."""
        return None

    def cancel(self, handle: Any) -> None:
        """Interrupt an in-flight call on *handle* from another thread."""
        self.close(handle)

    def close(self, handle: Any) -> None:
        try:
            handle.close()
        except Exception as e:
            _log.debug("Ignoring error while closing %s handle: %s", self.kind.value, e)
