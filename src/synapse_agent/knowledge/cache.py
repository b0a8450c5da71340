"""Session and catalog caches shared by concurrent requests.

Both caches publish immutable entries by replacing a dict slot, so readers
never observe a half-written value. Refreshes are single-flight per key: the
first caller runs the loader, later callers wait on the same future.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from typing import Any, TypeVar

from synapse_agent.config import CacheConfig
from synapse_agent.types import CachedCollection, CachedSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Collapses concurrent loads of the same key into one call."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, Future[Any]] = {}

    def do(self, key: str, loader: Callable[[], T]) -> T:
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            return future.result()

        try:
            result = loader()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)


class SessionCache:
    """Per-adapter authenticated session cache with expiry."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._sessions: dict[str, CachedSession] = {}
        self._lock = threading.Lock()
        self._flight = SingleFlight()

    def peek(self, adapter: str) -> CachedSession | None:
        with self._lock:
            return self._sessions.get(adapter)

    def acquire(
        self,
        adapter: str,
        authenticate: Callable[[], str],
        *,
        ttl_seconds: float | None = None,
    ) -> CachedSession:
        """Return a valid cached session, authenticating once if needed."""
        session = self.peek(adapter)
        if session is not None and session.is_valid(self._clock()):
            return session

        def _refresh() -> CachedSession:
            with self._lock:
                current = self._sessions.get(adapter)
                if current is not None and current.is_valid(self._clock()):
                    return current
                if current is not None:
                    self._sessions.pop(adapter, None)
            logger.info("Authenticating session for %s", adapter)
            token = authenticate()
            ttl = ttl_seconds if ttl_seconds is not None else self.config.session_ttl_seconds
            fresh = CachedSession(
                adapter=adapter, token=token, expires_at=self._clock() + ttl
            )
            with self._lock:
                self._sessions[adapter] = fresh
            return fresh

        return self._flight.do(adapter, _refresh)

    def invalidate(self, adapter: str, token: str | None = None) -> None:
        """Discard the cached session; with `token`, only if it is still current."""
        with self._lock:
            current = self._sessions.get(adapter)
            if current is None:
                return
            if token is not None and current.token != token:
                return
            del self._sessions[adapter]
        logger.info("Discarded session for %s", adapter)


class CatalogCache:
    """Read-through cache for enumerable catalogs fetched in one request."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._collections: dict[str, CachedCollection] = {}
        self._flight = SingleFlight()

    def get(self, adapter: str, fetch: Callable[[], Iterable[Any]]) -> CachedCollection:
        cached = self._collections.get(adapter)
        if cached is not None and not self._expired(cached):
            return cached

        def _populate() -> CachedCollection:
            current = self._collections.get(adapter)
            if current is not None and not self._expired(current):
                return current
            logger.info("Fetching full catalog for %s", adapter)
            entries = tuple(fetch())
            collection = CachedCollection(
                adapter=adapter, entries=entries, fetched_at=self._clock()
            )
            self._collections[adapter] = collection
            return collection

        return self._flight.do(adapter, _populate)

    def _expired(self, collection: CachedCollection) -> bool:
        ttl = self.config.catalog_ttl_seconds
        if ttl is None:
            return False
        return self._clock() - collection.fetched_at >= ttl
