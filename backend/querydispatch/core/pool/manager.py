"""
Connection pool partitioned by (tenant, data-source kind).

Every key gets its own bounded pool, so one tenant's load or backend outage
cannot eat into another tenant's capacity. Handles are opened lazily, reused
across requests, health-checked on checkout, and evicted once idle for too
long (down to a minimum watermark) by a background sweep. Waiters queue FIFO
and are served by direct hand-off when a handle is released or a slot frees up.

acquire() is checkout() followed by prepare(). Callers that must bound the
network part of acquisition (connect, checkout ping) by a deadline run
prepare() on a worker of their own and discard the entry if it overruns.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Mapping
from typing import Any, NamedTuple

from querydispatch.connectors.base import Connector
from querydispatch.core.config import Settings
from querydispatch.core.errors import CapacityError, ValidationError

from .health import health_check

_log = logging.getLogger(__name__)


class PoolKey(NamedTuple):
    tenant_id: str
    kind: str


class PoolEntry:
    """A pool slot and its backend handle, owned by exactly one request while checked out.

    conn is None between checkout() of a free slot and prepare().
    """

    __slots__ = ("key", "conn", "created_at", "last_used", "uses")

    def __init__(self, key: PoolKey, conn: Any = None) -> None:
        now = time.monotonic()
        self.key = key
        self.conn = conn
        self.created_at = now
        self.last_used = now
        self.uses = 0

    def __repr__(self) -> str:
        return (
            f"PoolEntry(tenant={self.key.tenant_id!r}, kind={self.key.kind!r}, "
            f"uses={self.uses})"
        )


class _Waiter:
    __slots__ = ("event", "entry", "slot")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.entry: PoolEntry | None = None
        self.slot = False


class _KeyPool:
    __slots__ = ("idle", "open_count", "waiters")

    def __init__(self) -> None:
        self.idle: list[PoolEntry] = []  # oldest first, most recently released last
        self.open_count = 0  # idle + checked out + being opened
        self.waiters: deque[_Waiter] = deque()


class PoolManager:
    """Per-(tenant, kind) bounded connection pool with FIFO waiting and idle eviction."""

    def __init__(self, settings: Settings, connectors: Mapping[str, Connector]) -> None:
        self._connectors: dict[str, Connector] = dict(connectors)
        self._pools: dict[PoolKey, _KeyPool] = {}
        self._in_use: set[PoolEntry] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._max_size: int = settings.MAX_POOL_SIZE_PER_KEY
        self._min_idle: int = settings.MIN_IDLE_PER_KEY
        self._idle_period: float = settings.IDLE_EVICTION_PERIOD
        self._max_age: float = settings.POOL_MAX_AGE_SEC
        self._ping_threshold: float = settings.PING_IDLE_THRESHOLD
        self._stop = threading.Event()
        self._reaper = threading.Thread(
            target=self._reap, name="query-dispatch-pool-reaper", daemon=True
        )
        self._reaper.start()

    @property
    def max_size(self) -> int:
        return self._max_size

    def acquire(self, key: PoolKey, timeout: float) -> PoolEntry:
        """
        Check out a ready-to-use handle for *key*, opening one if the pool has room.

        At capacity, waits in arrival order for up to *timeout* seconds and then
        raises CapacityError. Errors from opening a new handle propagate as-is
        (the reserved slot is given back first).
        """
        return self.prepare(self.checkout(key, timeout))

    def checkout(self, key: PoolKey, timeout: float) -> PoolEntry:
        """
        Claim an idle handle or a free slot for *key* without any backend I/O.

        The entry is exclusively owned by the caller and must go through
        prepare() before use, then back through release() or discard().
        """
        if key.kind not in self._connectors:
            raise ValidationError(f"No connector registered for {key.kind!r}")
        deadline = time.monotonic() + max(timeout, 0.0)
        return self._checkout_or_reserve(key, deadline, timeout)

    def prepare(self, entry: PoolEntry) -> PoolEntry:
        """
        Make a checked-out entry usable.

        Opens the connection of a reserved slot, and pings a handle that sat idle
        past PING_IDLE_THRESHOLD, reopening it in place when it is dead or older
        than POOL_MAX_AGE_SEC. If opening fails the entry is discarded and the
        error propagates.
        """
        key = entry.key
        connector = self._connectors[key.kind]
        if entry.conn is not None:
            if self._usable(connector, entry):
                entry.uses += 1
                return entry
            _log.debug("Replacing stale %s connection for tenant %s", key.kind, key.tenant_id)
            stale, entry.conn = entry.conn, None
            connector.close(stale)

        try:
            conn = connector.connect()
        except BaseException:
            self.discard(entry)
            raise
        with self._lock:
            attached = entry in self._in_use
            if attached:
                entry.conn = conn
                entry.created_at = entry.last_used = time.monotonic()
                entry.uses = 1
        if not attached:
            # discarded by its owner while the connection was being opened
            connector.close(conn)
            raise CapacityError(
                f"{key.kind} connection for tenant {key.tenant_id!r} was discarded while opening"
            )
        _log.debug("Opened %s connection for tenant %s", key.kind, key.tenant_id)
        return entry

    def release(self, entry: PoolEntry) -> None:
        """Return a healthy handle to its pool (or hand it to the next waiter)."""
        connector = self._connectors[entry.key.kind]
        with self._lock:
            if entry not in self._in_use:
                _log.warning("Ignoring release of a connection that is not checked out: %r", entry)
                return
        try:
            connector.reset(entry.conn)
        except Exception as e:
            _log.debug("Reset failed, discarding connection: %s", e)
            self.discard(entry)
            return

        with self._lock:
            if entry not in self._in_use:
                return
            kp = self._pools.get(entry.key)
            if not self._closed and kp is not None:
                entry.last_used = time.monotonic()
                if kp.waiters:
                    waiter = kp.waiters.popleft()
                    waiter.entry = entry
                    waiter.event.set()
                else:
                    self._in_use.discard(entry)
                    kp.idle.append(entry)
                return
            self._in_use.discard(entry)
        connector.close(entry.conn)

    def discard(self, entry: PoolEntry) -> None:
        """Destroy a handle whose state is unknown or bad; its slot becomes free."""
        with self._lock:
            if entry not in self._in_use:
                return
            self._in_use.discard(entry)
            kp = self._pools.get(entry.key)
            if not self._closed and kp is not None:
                self._free_slot_locked(kp)
        conn = entry.conn
        if conn is None:
            return
        _log.debug(
            "Discarding %s connection for tenant %s", entry.key.kind, entry.key.tenant_id
        )
        self._connectors[entry.key.kind].close(conn)

    def evict_idle(self) -> int:
        """Close handles idle past the eviction period, keeping MIN_IDLE_PER_KEY. Returns count.

        Runs every IDLE_EVICTION_PERIOD seconds on the reaper thread; keys left
        with no handles and no waiters are forgotten.
        """
        now = time.monotonic()
        with self._lock:
            evicted = [e for kp in self._pools.values() for e in self._evict_locked(kp, now)]
            for key in [k for k, kp in self._pools.items() if self._empty_locked(kp)]:
                del self._pools[key]
        self._close_all(evicted)
        return len(evicted)

    def dispose(self) -> None:
        """Close every idle handle and refuse further acquisition.

        Checked-out handles are closed when they come back.
        """
        self._stop.set()
        with self._lock:
            self._closed = True
            entries = [e for kp in self._pools.values() for e in kp.idle]
            for kp in self._pools.values():
                kp.idle.clear()
                while kp.waiters:
                    kp.waiters.popleft().event.set()
            self._pools.clear()
        self._close_all(entries)

    def stats(self) -> dict[str, Any]:
        """Return pool statistics for monitoring."""
        with self._lock:
            per_key = {
                f"{key.tenant_id}/{key.kind}": {
                    "open": kp.open_count,
                    "idle": len(kp.idle),
                    "in_use": kp.open_count - len(kp.idle),
                    "waiting": len(kp.waiters),
                }
                for key, kp in self._pools.items()
            }
            return {
                "pools": len(self._pools),
                "idle_connections": sum(len(kp.idle) for kp in self._pools.values()),
                "in_use_connections": len(self._in_use),
                "waiting": sum(len(kp.waiters) for kp in self._pools.values()),
                "per_key": per_key,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _checkout_or_reserve(self, key: PoolKey, deadline: float, timeout: float) -> PoolEntry:
        """Idle entry, or a new connection-less entry holding a reserved slot."""
        waiter: _Waiter | None = None
        entry: PoolEntry | None = None
        with self._lock:
            if self._closed:
                raise CapacityError("Connection pool is closed")
            kp = self._pools.get(key)
            if kp is None:
                kp = self._pools[key] = _KeyPool()
            evicted = self._evict_locked(kp, time.monotonic())
            if kp.idle:
                entry = kp.idle.pop()
            elif kp.open_count < self._max_size:
                kp.open_count += 1
                entry = PoolEntry(key)
            else:
                waiter = _Waiter()
                kp.waiters.append(waiter)
            if entry is not None:
                self._in_use.add(entry)
        self._close_all(evicted)
        if waiter is None:
            return entry

        waiter.event.wait(max(deadline - time.monotonic(), 0.0))
        with self._lock:
            if waiter.entry is not None:
                return waiter.entry
            if waiter.slot:
                entry = PoolEntry(key)
                self._in_use.add(entry)
                return entry
            try:
                kp.waiters.remove(waiter)
            except ValueError:
                pass
            closed = self._closed
        if closed:
            raise CapacityError("Connection pool is closed")
        raise CapacityError(
            f"No {key.kind} connection available for tenant {key.tenant_id!r} "
            f"within {timeout:.1f}s (pool size {self._max_size})"
        )

    def _usable(self, connector: Connector, entry: PoolEntry) -> bool:
        now = time.monotonic()
        if now - entry.created_at > self._max_age:
            return False
        if now - entry.last_used > self._ping_threshold:
            return health_check(connector, entry.conn)
        return True

    def _reap(self) -> None:
        while not self._stop.wait(self._idle_period):
            try:
                self.evict_idle()
            except Exception as e:
                _log.warning("Idle connection sweep failed: %s", e)

    @staticmethod
    def _empty_locked(kp: _KeyPool) -> bool:
        return kp.open_count == 0 and not kp.idle and not kp.waiters

    def _free_slot_locked(self, kp: _KeyPool) -> None:
        if kp.waiters:
            waiter = kp.waiters.popleft()
            waiter.slot = True
            waiter.event.set()
        else:
            kp.open_count -= 1

    def _evict_locked(self, kp: _KeyPool, now: float) -> list[PoolEntry]:
        excess = len(kp.idle) - self._min_idle
        if excess <= 0:
            return []
        evicted: list[PoolEntry] = []
        for entry in list(kp.idle):
            if excess <= 0:
                break
            if now - entry.last_used > self._idle_period or now - entry.created_at > self._max_age:
                kp.idle.remove(entry)
                kp.open_count -= 1
                evicted.append(entry)
                excess -= 1
        return evicted

    def _close_all(self, entries: list[PoolEntry]) -> None:
        for entry in entries:
            _log.debug("Evicting idle %s connection for tenant %s", entry.key.kind, entry.key.tenant_id)
            self._connectors[entry.key.kind].close(entry.conn)
