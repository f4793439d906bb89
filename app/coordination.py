"""Cache-backed coordination primitives.

Each primitive carries an explicit ``FailPolicy`` that decides what it
reports when the shared cache is unreachable:

* ``DistributedLock`` fails closed: skipping one scheduled run is cheaper
  than running a job twice.
* ``ConcurrencySemaphore`` and ``RateLimiter`` fail open: they are cost
  controls, and availability wins over strict limiting.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from app.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


class FailPolicy(str, Enum):
    OPEN = "open"
    CLOSED = "closed"

    @property
    def allows(self) -> bool:
        return self is FailPolicy.OPEN


class DistributedLock:
    def __init__(
        self,
        cache: Any,
        *,
        fail_policy: FailPolicy = FailPolicy.CLOSED,
        key_prefix: str = "cron:lock:",
    ) -> None:
        self.cache = cache
        self.fail_policy = fail_policy
        self.key_prefix = key_prefix

    def key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    def try_acquire(self, name: str, ttl_seconds: int) -> bool:
        acquired_at = str(int(time.time() * 1000))
        try:
            return bool(self.cache.set_if_absent(self.key(name), acquired_at, ttl_seconds=ttl_seconds))
        except CacheUnavailableError as exc:
            logger.warning(
                "lock_acquire_cache_unavailable name=%s policy=%s error=%s",
                name,
                self.fail_policy.value,
                exc,
            )
            return self.fail_policy.allows

    def release(self, name: str) -> None:
        try:
            self.cache.delete(self.key(name))
        except CacheUnavailableError as exc:
            # TTL expiry frees the key eventually.
            logger.warning("lock_release_failed name=%s error=%s", name, exc)

    @contextmanager
    def held(self, name: str, ttl_seconds: int) -> Iterator[bool]:
        acquired = self.try_acquire(name, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)


class ConcurrencySemaphore:
    def __init__(
        self,
        cache: Any,
        *,
        fail_policy: FailPolicy = FailPolicy.OPEN,
        key_prefix: str = "conc:",
    ) -> None:
        self.cache = cache
        self.fail_policy = fail_policy
        self.key_prefix = key_prefix

    @staticmethod
    def site_provider_key(tenant_id: str, provider_key: str) -> str:
        return f"{tenant_id}:{provider_key}"

    @staticmethod
    def global_provider_key(provider_key: str) -> str:
        return f"global:{provider_key}"

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def acquire(self, key: str, limit: int, ttl_ms: int) -> str | None:
        if limit < 1:
            return None
        token = uuid.uuid4().hex
        try:
            granted = self.cache.semaphore_acquire(self._full_key(key), token=token, limit=limit, ttl_ms=ttl_ms)
        except CacheUnavailableError as exc:
            logger.warning(
                "semaphore_acquire_cache_unavailable key=%s policy=%s error=%s",
                key,
                self.fail_policy.value,
                exc,
            )
            return token if self.fail_policy.allows else None
        return token if granted else None

    def release(self, key: str, token: str | None) -> None:
        if not token:
            return
        try:
            self.cache.semaphore_release(self._full_key(key), token)
        except CacheUnavailableError as exc:
            logger.warning("semaphore_release_failed key=%s error=%s", key, exc)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_after_ms: int
    degraded: bool = False


class RateLimiter:
    def __init__(
        self,
        cache: Any,
        *,
        fail_policy: FailPolicy = FailPolicy.OPEN,
        key_prefix: str = "ratelimit:",
    ) -> None:
        self.cache = cache
        self.fail_policy = fail_policy
        self.key_prefix = key_prefix

    def check(self, client_id: str, *, limit: int, window_ms: int, namespace: str = "") -> RateLimitDecision:
        key = f"{self.key_prefix}{namespace}:{client_id}" if namespace else f"{self.key_prefix}{client_id}"
        try:
            count, ttl_ms = self.cache.incr_window(key, window_ms=window_ms)
        except CacheUnavailableError as exc:
            logger.warning(
                "rate_limit_cache_unavailable client=%s policy=%s error=%s",
                client_id,
                self.fail_policy.value,
                exc,
            )
            return RateLimitDecision(
                allowed=self.fail_policy.allows,
                remaining=0,
                reset_after_ms=window_ms,
                degraded=True,
            )
        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_after_ms=ttl_ms,
        )
