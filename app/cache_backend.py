from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from app.errors import CacheUnavailableError

INCR_WITH_TTL_SCRIPT = """
local n = redis.call('INCR', KEYS[1])
if n == 1 and tonumber(ARGV[1]) > 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return n
"""

INCR_WINDOW_SCRIPT = """
local n = redis.call('INCR', KEYS[1])
if n == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
return {n, ttl}
"""

SEMAPHORE_ACQUIRE_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local n = redis.call('ZCARD', KEYS[1])
if n < tonumber(ARGV[2]) then
  redis.call('ZADD', KEYS[1], ARGV[3], ARGV[4])
  redis.call('PEXPIRE', KEYS[1], ARGV[5])
  return 1
end
return 0
"""


class InMemoryCacheBackend:
    """Process-local stand-in for the shared cache; every primitive runs under one lock."""

    def __init__(self, *, namespace: str = "", clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._namespace = namespace.strip()
        self._clock = clock
        self._values: dict[str, tuple[str, float | None]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _live_value(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at_ms = entry
        if expires_at_ms is not None and expires_at_ms <= self._now_ms():
            self._values.pop(key, None)
            return None
        return value

    def set_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        with self._lock:
            full = self._key(key)
            if self._live_value(full) is not None:
                return False
            self._values[full] = (str(value), self._now_ms() + max(1, int(ttl_seconds)) * 1000.0)
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(self._key(key))

    def delete(self, key: str) -> None:
        with self._lock:
            full = self._key(key)
            self._values.pop(full, None)
            self._zsets.pop(full, None)

    def incr(self, key: str, *, ttl_seconds: int = 0) -> int:
        with self._lock:
            full = self._key(key)
            current = self._live_value(full)
            count = int(current or 0) + 1
            expires_at_ms = self._values[full][1] if current is not None else None
            if count == 1 and ttl_seconds > 0:
                expires_at_ms = self._now_ms() + int(ttl_seconds) * 1000.0
            self._values[full] = (str(count), expires_at_ms)
            return count

    def incr_window(self, key: str, *, window_ms: int) -> tuple[int, int]:
        with self._lock:
            full = self._key(key)
            current = self._live_value(full)
            now_ms = self._now_ms()
            if current is None:
                expires_at_ms = now_ms + max(1, int(window_ms))
                count = 1
            else:
                expires_at_ms = self._values[full][1] or now_ms + max(1, int(window_ms))
                count = int(current) + 1
            self._values[full] = (str(count), expires_at_ms)
            return count, int(max(0.0, expires_at_ms - now_ms))

    def semaphore_acquire(self, key: str, *, token: str, limit: int, ttl_ms: int) -> bool:
        with self._lock:
            full = self._key(key)
            now_ms = self._now_ms()
            members = self._zsets.setdefault(full, {})
            for member, expires_at_ms in list(members.items()):
                if expires_at_ms <= now_ms:
                    members.pop(member, None)
            if len(members) >= limit:
                return False
            members[token] = now_ms + max(1, int(ttl_ms))
            return True

    def semaphore_release(self, key: str, token: str) -> None:
        with self._lock:
            members = self._zsets.get(self._key(key))
            if members is not None:
                members.pop(token, None)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
            self._zsets.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for ATTR_CACHE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisCacheBackend:
    """Redis-backed cache; multi-step primitives run as server-side Lua scripts."""

    def __init__(self, *, dsn: str, namespace: str = "", socket_timeout_s: float = 2.0) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis cache backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip()
        redis = _import_redis()
        self._errors: tuple[type[BaseException], ...] = (redis.exceptions.RedisError,)
        self._client = redis.Redis.from_url(
            self._dsn,
            decode_responses=True,
            socket_timeout=socket_timeout_s,
            socket_connect_timeout=socket_timeout_s,
        )
        self._incr_with_ttl = self._client.register_script(INCR_WITH_TTL_SCRIPT)
        self._incr_window = self._client.register_script(INCR_WINDOW_SCRIPT)
        self._semaphore_acquire = self._client.register_script(SEMAPHORE_ACQUIRE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except self._errors as exc:
            raise CacheUnavailableError(f"redis {op} failed: {exc}") from exc

    def set_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        result = self._call(
            "set_nx",
            self._client.set,
            self._key(key),
            str(value),
            nx=True,
            ex=max(1, int(ttl_seconds)),
        )
        return bool(result)

    def get(self, key: str) -> str | None:
        raw = self._call("get", self._client.get, self._key(key))
        return raw if isinstance(raw, str) else None

    def delete(self, key: str) -> None:
        self._call("delete", self._client.delete, self._key(key))

    def incr(self, key: str, *, ttl_seconds: int = 0) -> int:
        result = self._call(
            "incr",
            self._incr_with_ttl,
            keys=[self._key(key)],
            args=[max(0, int(ttl_seconds))],
        )
        return int(result)

    def incr_window(self, key: str, *, window_ms: int) -> tuple[int, int]:
        result = self._call(
            "incr_window",
            self._incr_window,
            keys=[self._key(key)],
            args=[max(1, int(window_ms))],
        )
        count, ttl_ms = int(result[0]), int(result[1])
        return count, max(0, ttl_ms)

    def semaphore_acquire(self, key: str, *, token: str, limit: int, ttl_ms: int) -> bool:
        now_ms = int(time.time() * 1000)
        ttl = max(1, int(ttl_ms))
        result = self._call(
            "semaphore_acquire",
            self._semaphore_acquire,
            keys=[self._key(key)],
            args=[now_ms, int(limit), now_ms + ttl, token, ttl],
        )
        return int(result or 0) == 1

    def semaphore_release(self, key: str, token: str) -> None:
        self._call("semaphore_release", self._client.zrem, self._key(key), token)


def create_cache_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryCacheBackend | RedisCacheBackend:
    env = os.environ if environ is None else environ
    backend = env.get("ATTR_CACHE_BACKEND", "memory").strip().lower()
    namespace = env.get("ATTR_CACHE_KEY_PREFIX", "")
    if backend == "memory":
        return InMemoryCacheBackend(namespace=namespace)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when ATTR_CACHE_BACKEND=redis")
        return RedisCacheBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported cache backend: {backend}")
