"""
Multi-source query dispatch engine.

    from querydispatch import Dispatcher, Settings

    with Dispatcher(Settings(POSTGRESQL={...})) as dispatcher:
        result = dispatcher.execute({
            "dataSourceKind": "postgresql",
            "query": "SELECT branch, avg_cost FROM costs WHERE tenant = :t",
            "params": {"t": "acme"},
        })
"""

from querydispatch.core.config import (
    DatabaseSettings,
    DocumentStoreSettings,
    HttpApiSettings,
    Settings,
    SqlDialectEnum,
)
from querydispatch.core.errors import (
    CapacityError,
    ConnectorError,
    DispatchError,
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
    ValidationError,
)
from querydispatch.dispatcher import Dispatcher
from querydispatch.schemas import (
    DataSourceKindEnum,
    QueryMetadata,
    QueryRequest,
    QueryResult,
)

__all__ = [
    "Dispatcher",
    "QueryRequest",
    "QueryResult",
    "QueryMetadata",
    "DataSourceKindEnum",
    "Settings",
    "DatabaseSettings",
    "DocumentStoreSettings",
    "HttpApiSettings",
    "SqlDialectEnum",
    "DispatchError",
    "ValidationError",
    "CapacityError",
    "ConnectorError",
    "TransientBackendError",
    "PermanentBackendError",
    "QueryTimeoutError",
]
