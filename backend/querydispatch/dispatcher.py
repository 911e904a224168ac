"""
Query dispatcher: QueryRequest in, QueryResult out, never an exception.

Resolves the connector for the request's data-source kind, checks a handle out
of the (tenant, kind) pool, runs the query under the request deadline, retries
transient failures on a fresh handle, and normalizes the native result.
"""

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from querydispatch.connectors import Connector, NativeResult, build_connectors
from querydispatch.core.config import Settings
from querydispatch.core.errors import (
    DispatchError,
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
    ValidationError,
)
from querydispatch.core.pool import PoolEntry, PoolKey, PoolManager, health_check
from querydispatch.engines.normalizer import NormalizedResult, normalize
from querydispatch.schemas import QueryMetadata, QueryRequest, QueryResult

_log = logging.getLogger(__name__)


def _pydantic_message(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "request"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts) or str(e)


def _metadata_from_raw(raw: Any) -> QueryMetadata:
    """Best-effort metadata echo for a request that failed to parse."""
    if not isinstance(raw, Mapping):
        return QueryMetadata(data_source="", query="")
    kind = raw.get("dataSourceKind", raw.get("data_source_kind", raw.get("dataSourceType")))
    params = raw.get("params")
    tenant = raw.get("tenantId", raw.get("tenant_id"))
    widget = raw.get("widgetId", raw.get("widget_id"))
    return QueryMetadata(
        data_source=str(getattr(kind, "value", kind) or ""),
        query=str(raw.get("query") or ""),
        params={str(k): v for k, v in params.items()} if isinstance(params, Mapping) else {},
        widget_id=str(widget) if widget is not None else None,
        tenant_id=str(tenant) if tenant is not None else None,
    )


class Dispatcher:
    """
    execute(request) -> QueryResult

    Owns its connectors, its PoolManager and a worker pool used to bound each
    backend call by the request deadline. Use as a context manager, or call
    close() to release every pooled handle.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        connectors: Mapping[str, Connector] | None = None,
        pool: PoolManager | None = None,
    ) -> None:
        self.settings = settings if settings is not None else Settings()
        self._connectors: dict[str, Connector] = (
            dict(connectors) if connectors is not None else build_connectors(self.settings)
        )
        self._pool = pool if pool is not None else PoolManager(self.settings, self._connectors)
        self._workers = ThreadPoolExecutor(
            max_workers=self.settings.MAX_WORKERS, thread_name_prefix="query-dispatch"
        )

    @property
    def pool(self) -> PoolManager:
        return self._pool

    def available_kinds(self) -> list[str]:
        return list(self._connectors)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def execute(self, request: QueryRequest | Mapping[str, Any]) -> QueryResult:
        """Run *request* and return a QueryResult. Every error becomes success=False."""
        try:
            req = self._parse(request)
        except ValidationError as e:
            _log.warning("Rejected query request: %s", e)
            return QueryResult.fail(self._error_text(e), metadata=_metadata_from_raw(request))

        metadata = QueryMetadata(
            data_source=req.data_source_kind,
            query=req.query,
            params=dict(req.params),
            widget_id=req.widget_id,
            tenant_id=req.tenant_id,
        )
        _log.debug(
            "Executing %s query (tenant=%s widget=%s): %s",
            req.data_source_kind,
            req.tenant_id or self.settings.DEFAULT_TENANT,
            req.widget_id,
            req.query[:100],
        )
        try:
            connector = self._resolve(req)
            connector.validate(req.query, req.params)
            started = time.monotonic()
            result = self._run_with_retry(req, connector, started + self.settings.REQUEST_TIMEOUT)
            elapsed_ms = round((time.monotonic() - started) * 1000, 3)
        except DispatchError as e:
            _log.warning("%s query failed (%s): %s", req.data_source_kind, e.error_type, e)
            return QueryResult.fail(self._error_text(e), metadata=metadata)
        except Exception as e:
            _log.error("Unexpected error executing %s query: %s", req.data_source_kind, e, exc_info=True)
            return QueryResult.fail(f"internal: {e}", metadata=metadata)

        return QueryResult.ok(
            data=result.data,
            columns=result.columns,
            execution_time=elapsed_ms,
            metadata=metadata,
        )

    def test_connections(self) -> dict[str, bool]:
        """Open (or reuse) one handle per registered kind on the default tenant and ping it."""
        key_tenant = self.settings.DEFAULT_TENANT
        results: dict[str, bool] = {}
        for kind, connector in self._connectors.items():
            try:
                entry = self._pool.acquire(PoolKey(key_tenant, kind), self.settings.REQUEST_TIMEOUT)
            except Exception as e:
                _log.info("[%s] Connection test failed: %s", kind, e)
                results[kind] = False
                continue
            ok = health_check(connector, entry.conn)
            if ok:
                self._pool.release(entry)
            else:
                self._pool.discard(entry)
            results[kind] = ok
        _log.info("Connection test results: %s", results)
        return results

    def close(self) -> None:
        self._pool.dispose()
        self._workers.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _error_text(e: DispatchError) -> str:
        return f"{e.error_type}: {e}"

    @staticmethod
    def _parse(request: QueryRequest | Mapping[str, Any]) -> QueryRequest:
        if isinstance(request, QueryRequest):
            return request
        if not isinstance(request, Mapping):
            raise ValidationError(
                f"Request must be an object, got {type(request).__name__}"
            )
        try:
            return QueryRequest.model_validate(dict(request))
        except PydanticValidationError as e:
            raise ValidationError(_pydantic_message(e)) from e

    def _resolve(self, req: QueryRequest) -> Connector:
        connector = self._connectors.get(req.data_source_kind)
        if connector is None:
            raise ValidationError(
                f"Unsupported data source kind: {req.data_source_kind!r} "
                f"(available: {', '.join(self._connectors) or 'none'})"
            )
        return connector

    def _run_with_retry(
        self, req: QueryRequest, connector: Connector, deadline: float
    ) -> NormalizedResult:
        key = PoolKey(req.tenant_id or self.settings.DEFAULT_TENANT, req.data_source_kind)
        attempts = self.settings.RETRY_COUNT + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._attempt(key, req, connector, deadline)
            except TransientBackendError as e:
                backoff = self.settings.RETRY_BACKOFF * attempt
                remaining = deadline - time.monotonic()
                if attempt == attempts or remaining <= backoff:
                    raise
                _log.warning(
                    "Transient %s failure for tenant %s (attempt %d/%d), retrying in %.2fs: %s",
                    key.kind,
                    key.tenant_id,
                    attempt,
                    attempts,
                    backoff,
                    e,
                )
                time.sleep(backoff)
        raise AssertionError("unreachable")

    def _attempt(
        self, key: PoolKey, req: QueryRequest, connector: Connector, deadline: float
    ) -> NormalizedResult:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise QueryTimeoutError(
                f"Request timed out after {self.settings.REQUEST_TIMEOUT:.1f}s"
            )
        # waiting for a slot stays on this thread; connect, ping and run share the deadline
        entry = self._pool.checkout(key, remaining)
        future = self._workers.submit(self._prepare_and_run, entry, connector, req, deadline)
        try:
            native = future.result(timeout=max(deadline - time.monotonic(), 0.0))
        except DispatchError:
            self._pool.discard(entry)
            raise
        except FutureTimeoutError:
            future.cancel()
            conn = entry.conn
            if conn is not None:
                connector.cancel(conn)
            self._pool.discard(entry)
            raise QueryTimeoutError(
                f"Query exceeded request timeout of {self.settings.REQUEST_TIMEOUT:.1f}s"
            ) from None
        except Exception as e:
            self._pool.discard(entry)
            raise PermanentBackendError(f"{key.kind} connector failed: {e}") from e

        self._pool.release(entry)
        return normalize(native)

    def _prepare_and_run(
        self, entry: PoolEntry, connector: Connector, req: QueryRequest, deadline: float
    ) -> NativeResult:
        self._pool.prepare(entry)
        if time.monotonic() >= deadline:
            raise QueryTimeoutError(
                f"No usable {entry.key.kind} connection within request timeout "
                f"of {self.settings.REQUEST_TIMEOUT:.1f}s"
            )
        return connector.run(entry.conn, req.query, req.params)
