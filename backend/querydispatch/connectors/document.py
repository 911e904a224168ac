"""
Document-store connector (MongoDB via pymongo).

The query is a JSON document in the collection's native query syntax:

    {"collection": "orders", "filter": {...}, "projection": {...},
     "sort": [["created_at", -1]], "limit": 100}

or an aggregation:

    {"collection": "orders", "pipeline": [{"$group": {...}}]}

Params are merged into ``filter`` (or prepended as a ``$match`` stage), and
returned documents are flattened to dotted column names.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from bson import Binary, DBRef, Decimal128, MaxKey, MinKey, ObjectId, Regex, Timestamp
from pymongo import MongoClient
from pymongo import errors as mongo_errors

from querydispatch.connectors.base import Connector, NativeResult
from querydispatch.core.config import DocumentStoreSettings, Settings
from querydispatch.core.errors import (
    DispatchError,
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
    ValidationError,
)
from querydispatch.engines.normalizer import flatten_document
from querydispatch.schemas import DataSourceKindEnum

_log = logging.getLogger(__name__)

# Operators that run JavaScript on the server.
_SERVER_SCRIPT_OPERATORS = frozenset({"$where", "$function", "$accumulator"})
# Pipeline stages that create or replace collections.
_WRITE_STAGES = frozenset({"$out", "$merge"})
_QUERY_KEYS = frozenset({"collection", "filter", "projection", "sort", "limit", "skip", "pipeline"})


def _find_operators(node: Any, names: frozenset[str], found: set[str]) -> set[str]:
    if isinstance(node, Mapping):
        for key, value in node.items():
            if key in names:
                found.add(key)
            _find_operators(value, names, found)
    elif isinstance(node, list):
        for item in node:
            _find_operators(item, names, found)
    return found


def parse_document_query(
    query: str, params: dict[str, Any], *, allow_admin: bool = False
) -> dict[str, Any]:
    """Parse and check a document query, merging *params* into its filter."""
    try:
        spec = json.loads(query)
    except ValueError as e:
        raise ValidationError(f"Document query is not valid JSON: {e}") from e
    if not isinstance(spec, dict):
        raise ValidationError("Document query must be a JSON object")

    unknown = set(spec) - _QUERY_KEYS
    if unknown:
        raise ValidationError(f"Unknown document query keys: {', '.join(sorted(unknown))}")
    collection = spec.get("collection")
    if not isinstance(collection, str) or not collection.strip():
        raise ValidationError("Document query needs a 'collection' name")
    if "pipeline" in spec and ("filter" in spec or "projection" in spec):
        raise ValidationError("Use either 'pipeline' or 'filter'/'projection', not both")

    for name in params:
        if name.startswith("$"):
            raise ValidationError(f"Parameter {name!r} may not be a query operator")

    filter_ = spec.get("filter", {})
    if filter_ is None:
        filter_ = {}
    if not isinstance(filter_, dict):
        raise ValidationError("'filter' must be an object")
    pipeline = spec.get("pipeline")
    if pipeline is not None and (
        not isinstance(pipeline, list) or not all(isinstance(s, dict) for s in pipeline)
    ):
        raise ValidationError("'pipeline' must be a list of stage objects")
    projection = spec.get("projection")
    if projection is not None and not isinstance(projection, dict):
        raise ValidationError("'projection' must be an object")
    sort = spec.get("sort")
    if sort is not None:
        if not isinstance(sort, list) or not all(
            isinstance(s, list) and len(s) == 2 and isinstance(s[0], str) and s[1] in (1, -1)
            for s in sort
        ):
            raise ValidationError("'sort' must be a list of [field, 1|-1] pairs")
    for key in ("limit", "skip"):
        value = spec.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ValidationError(f"'{key}' must be a non-negative integer")

    if not allow_admin:
        scripts = _find_operators(spec, _SERVER_SCRIPT_OPERATORS, set())
        if scripts:
            raise PermanentBackendError(
                f"Server-side script operators are not allowed: {', '.join(sorted(scripts))}"
            )
        writes = _find_operators(pipeline or [], _WRITE_STAGES, set())
        if writes:
            raise PermanentBackendError(
                f"Pipeline stages that write collections are not allowed: {', '.join(sorted(writes))}"
            )

    parsed = dict(spec)
    if pipeline is not None:
        parsed["pipeline"] = ([{"$match": dict(params)}] if params else []) + pipeline
    else:
        parsed["filter"] = {**filter_, **params}
    return parsed


def _plain(value: Any) -> Any:
    """BSON-specific values, at any depth, as plain Python values."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Binary):
        return bytes(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (DBRef, Regex, Timestamp, MinKey, MaxKey)):
        return str(value)
    return value


def _to_row(doc: Mapping[str, Any]) -> dict[str, Any]:
    return {name: _plain(value) for name, value in flatten_document(doc).items()}


def classify_error(e: Exception) -> DispatchError:
    if isinstance(e, DispatchError):
        return e
    if isinstance(e, mongo_errors.ExecutionTimeout):
        return QueryTimeoutError(f"Document query exceeded maxTimeMS: {e}")
    if isinstance(e, (mongo_errors.ConnectionFailure, mongo_errors.NetworkTimeout)):
        return TransientBackendError(f"Document store unavailable: {e}")
    if isinstance(e, mongo_errors.OperationFailure):
        return PermanentBackendError(f"Document store error: {e}")
    if isinstance(e, mongo_errors.ConfigurationError):
        return PermanentBackendError(f"Document store configuration error: {e}")
    return PermanentBackendError(f"Document query failed: {e}")


class DocumentStoreConnector(Connector):
    kind = DataSourceKindEnum.DOCUMENT_STORE

    def __init__(
        self,
        config: DocumentStoreSettings,
        *,
        connect_timeout: int = 10,
        statement_timeout: float | None = None,
        allow_admin: bool = False,
        max_rows: int = 10000,
    ) -> None:
        self.config = config
        self.connect_timeout = connect_timeout
        self.statement_timeout = statement_timeout
        self.allow_admin = allow_admin
        self.max_rows = max_rows

    @classmethod
    def from_settings(cls, config: DocumentStoreSettings, settings: Settings) -> "DocumentStoreConnector":
        return cls(
            config,
            connect_timeout=settings.CONNECT_TIMEOUT,
            statement_timeout=settings.statement_timeout,
            allow_admin=settings.ALLOW_ADMIN_SQL,
            max_rows=settings.MAX_ROWS,
        )

    def validate(self, query: str, params: dict[str, Any]) -> None:
        parse_document_query(query, params, allow_admin=self.allow_admin)

    def connect(self) -> Any:
        timeout_ms = self.connect_timeout * 1000
        try:
            return MongoClient(
                self.config.uri,
                appname="querydispatch",
                connectTimeoutMS=timeout_ms,
                serverSelectionTimeoutMS=timeout_ms,
                maxPoolSize=1,
            )
        except Exception as e:
            raise classify_error(e) from e

    def run(self, handle: Any, query: str, params: dict[str, Any]) -> NativeResult:
        parsed = parse_document_query(query, params, allow_admin=self.allow_admin)
        collection = handle[self.config.database][parsed["collection"]]
        limit = min(parsed.get("limit") or self.max_rows, self.max_rows)
        max_time_ms = int(self.statement_timeout * 1000) if self.statement_timeout else None
        try:
            if "pipeline" in parsed:
                pipeline = parsed["pipeline"]
                if not (pipeline and _WRITE_STAGES & set(pipeline[-1])):
                    pipeline = pipeline + [{"$limit": limit}]
                kwargs = {"maxTimeMS": max_time_ms} if max_time_ms else {}
                cursor = collection.aggregate(pipeline, **kwargs)
            else:
                cursor = collection.find(parsed["filter"], parsed.get("projection"))
                if parsed.get("sort"):
                    cursor = cursor.sort([tuple(s) for s in parsed["sort"]])
                if parsed.get("skip"):
                    cursor = cursor.skip(parsed["skip"])
                cursor = cursor.limit(limit)
                if max_time_ms:
                    cursor = cursor.max_time_ms(max_time_ms)
            rows = [_to_row(doc) for doc in cursor]
        except Exception as e:
            raise classify_error(e) from e
        _log.debug("Document query on %s returned %d documents", parsed["collection"], len(rows))
        return NativeResult(rows=rows)

    def ping(self, handle: Any) -> bool:
        handle.admin.command("ping")
        return True
