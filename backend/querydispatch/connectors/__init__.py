"""
Connectors: one capability per backend kind, selected through a lookup table.

build_connectors() registers a connector for every kind whose backend
parameters are present in Settings.
"""

from querydispatch.core.config import SqlDialectEnum, Settings
from querydispatch.schemas import DataSourceKindEnum

from .base import Connector, NativeResult
from .document import DocumentStoreConnector
from .http import HttpApiConnector
from .sql import SqlConnector


def build_connectors(settings: Settings) -> dict[str, Connector]:
    """Map data-source kind value -> connector, from the configured backends."""
    connectors: dict[str, Connector] = {}

    if settings.SQL is not None:
        connectors[DataSourceKindEnum.SQL.value] = SqlConnector.from_settings(
            DataSourceKindEnum.SQL, settings.SQL, settings
        )
    if settings.POSTGRESQL is not None:
        db = settings.POSTGRESQL.model_copy(update={"dialect": SqlDialectEnum.POSTGRES})
        connectors[DataSourceKindEnum.POSTGRESQL.value] = SqlConnector.from_settings(
            DataSourceKindEnum.POSTGRESQL, db, settings
        )
    if settings.MYSQL is not None:
        db = settings.MYSQL.model_copy(update={"dialect": SqlDialectEnum.MYSQL})
        connectors[DataSourceKindEnum.MYSQL.value] = SqlConnector.from_settings(
            DataSourceKindEnum.MYSQL, db, settings
        )
    if settings.DOCUMENT_STORE is not None:
        connectors[DataSourceKindEnum.DOCUMENT_STORE.value] = (
            DocumentStoreConnector.from_settings(settings.DOCUMENT_STORE, settings)
        )
    connectors[DataSourceKindEnum.HTTP_API.value] = HttpApiConnector.from_settings(
        settings.HTTP_API, settings
    )
    return connectors


__all__ = [
    "Connector",
    "NativeResult",
    "SqlConnector",
    "DocumentStoreConnector",
    "HttpApiConnector",
    "build_connectors",
]
