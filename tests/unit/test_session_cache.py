import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from synapse_agent.config import CacheConfig
from synapse_agent.knowledge.cache import CatalogCache, SessionCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_concurrent_acquire_authenticates_once() -> None:
    cache = SessionCache(CacheConfig(session_ttl_seconds=60))
    calls: list[int] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def _authenticate() -> str:
        with lock:
            calls.append(1)
        time.sleep(0.05)
        return "token-1"

    def _worker() -> str:
        barrier.wait()
        return cache.acquire("xnat", _authenticate).token

    with ThreadPoolExecutor(max_workers=8) as pool:
        tokens = list(pool.map(lambda _: _worker(), range(8)))

    assert tokens == ["token-1"] * 8
    assert len(calls) == 1


def test_valid_session_is_reused() -> None:
    clock = FakeClock()
    cache = SessionCache(CacheConfig(session_ttl_seconds=60), clock=clock)
    tokens = iter(["first", "second"])

    assert cache.acquire("xnat", lambda: next(tokens)).token == "first"
    clock.now += 59
    assert cache.acquire("xnat", lambda: next(tokens)).token == "first"


def test_expired_session_is_never_reused() -> None:
    clock = FakeClock()
    cache = SessionCache(CacheConfig(session_ttl_seconds=60), clock=clock)
    tokens = iter(["first", "second"])

    cache.acquire("xnat", lambda: next(tokens))
    clock.now += 60

    session = cache.acquire("xnat", lambda: next(tokens))
    assert session.token == "second"
    assert session.expires_at == clock.now + 60


def test_invalidate_only_discards_matching_token() -> None:
    cache = SessionCache()
    cache.acquire("xnat", lambda: "current")

    cache.invalidate("xnat", "stale")
    assert cache.peek("xnat") is not None

    cache.invalidate("xnat", "current")
    assert cache.peek("xnat") is None


def test_stale_invalidation_never_discards_refreshed_session() -> None:
    cache = SessionCache()
    tokens = iter(["first", "second"])
    cache.acquire("xnat", lambda: next(tokens))
    cache.invalidate("xnat", "first")
    cache.acquire("xnat", lambda: next(tokens))
    barrier = threading.Barrier(16)

    def _late_rejection() -> None:
        barrier.wait()
        cache.invalidate("xnat", "first")

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda _: _late_rejection(), range(16)))

    session = cache.peek("xnat")
    assert session is not None
    assert session.token == "second"


def test_failed_authentication_leaves_previous_slot_and_propagates() -> None:
    clock = FakeClock()
    cache = SessionCache(CacheConfig(session_ttl_seconds=10), clock=clock)

    def _reject() -> str:
        raise RuntimeError("auth server down")

    with pytest.raises(RuntimeError):
        cache.acquire("xnat", _reject)
    assert cache.peek("xnat") is None

    assert cache.acquire("xnat", lambda: "recovered").token == "recovered"


def test_catalog_fetched_once_across_lookups() -> None:
    cache = CatalogCache()
    fetches: list[int] = []

    def _fetch() -> list[str]:
        fetches.append(1)
        return ["LIDC-IDRI", "TCGA-GBM"]

    for _ in range(5):
        collection = cache.get("tcia", _fetch)

    assert collection.entries == ("LIDC-IDRI", "TCGA-GBM")
    assert len(fetches) == 1


def test_concurrent_catalog_population_is_single_flight() -> None:
    cache = CatalogCache()
    fetches: list[int] = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def _fetch() -> list[str]:
        with lock:
            fetches.append(1)
        time.sleep(0.05)
        return ["NSCLC-Radiomics"]

    def _worker() -> tuple[str, ...]:
        barrier.wait()
        return cache.get("tcia", _fetch).entries

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: _worker(), range(6)))

    assert results == [("NSCLC-Radiomics",)] * 6
    assert len(fetches) == 1


def test_failed_catalog_fetch_is_not_cached() -> None:
    cache = CatalogCache()

    def _broken() -> list[str]:
        raise ConnectionError("unreachable")

    with pytest.raises(ConnectionError):
        cache.get("tcia", _broken)

    assert cache.get("tcia", lambda: ["CPTAC-LUAD"]).entries == ("CPTAC-LUAD",)


def test_catalog_ttl_triggers_refetch() -> None:
    clock = FakeClock()
    cache = CatalogCache(CacheConfig(catalog_ttl_seconds=300), clock=clock)
    versions = iter([["v1"], ["v2"]])

    assert cache.get("tcia", lambda: next(versions)).entries == ("v1",)
    clock.now += 299
    assert cache.get("tcia", lambda: next(versions)).entries == ("v1",)
    clock.now += 1
    assert cache.get("tcia", lambda: next(versions)).entries == ("v2",)
