from __future__ import annotations

import threading

from app.cache_backend import InMemoryCacheBackend
from app.coordination import ConcurrencySemaphore, DistributedLock, FailPolicy, RateLimiter
from app.errors import CacheUnavailableError


class _DownCache:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise CacheUnavailableError(f"{name} unavailable")

        return _fail


def test_lock_only_one_concurrent_winner():
    lock = DistributedLock(InMemoryCacheBackend())
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _contend():
        barrier.wait()
        won = lock.try_acquire("recover", 60)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=_contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_lock_release_allows_reacquire_and_uses_cron_prefix():
    cache = InMemoryCacheBackend()
    lock = DistributedLock(cache)
    assert lock.try_acquire("recover", 60) is True
    assert cache.get("cron:lock:recover") is not None
    lock.release("recover")
    assert lock.try_acquire("recover", 60) is True


def test_lock_fails_closed_and_release_is_swallowed():
    lock = DistributedLock(_DownCache())
    assert lock.try_acquire("recover", 60) is False
    lock.release("recover")
    with lock.held("recover", 60) as acquired:
        assert acquired is False


def test_held_releases_on_exit():
    cache = InMemoryCacheBackend()
    lock = DistributedLock(cache)
    with lock.held("job", 60) as acquired:
        assert acquired is True
        assert lock.try_acquire("job", 60) is False
    assert lock.try_acquire("job", 60) is True


def test_semaphore_limits_live_tokens():
    sem = ConcurrencySemaphore(InMemoryCacheBackend())
    key = ConcurrencySemaphore.site_provider_key("tenant_a", "sync_worker")
    first = sem.acquire(key, 1, 60_000)
    assert first is not None
    assert sem.acquire(key, 1, 60_000) is None
    sem.release(key, first)
    sem.release(key, first)
    assert sem.acquire(key, 1, 60_000) is not None


def test_semaphore_zero_limit_is_disabled():
    sem = ConcurrencySemaphore(InMemoryCacheBackend())
    assert sem.acquire("k", 0, 1000) is None


def test_semaphore_fails_open():
    sem = ConcurrencySemaphore(_DownCache())
    assert sem.acquire("k", 1, 1000) is not None
    sem.release("k", "token")
    closed = ConcurrencySemaphore(_DownCache(), fail_policy=FailPolicy.CLOSED)
    assert closed.acquire("k", 1, 1000) is None


def test_rate_limiter_window():
    limiter = RateLimiter(InMemoryCacheBackend())
    decisions = [limiter.check("1.2.3.4", limit=2, window_ms=60_000, namespace="ingest") for _ in range(3)]
    assert [d.allowed for d in decisions] == [True, True, False]
    assert decisions[0].remaining == 1
    assert decisions[2].reset_after_ms > 0


def test_rate_limiter_fails_open_and_reports_degraded():
    decision = RateLimiter(_DownCache()).check("c", limit=1, window_ms=1000)
    assert decision.allowed is True
    assert decision.degraded is True
