from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from app.errors import CacheUnavailableError

logger = logging.getLogger(__name__)

BILLING_COUNTER_TTL_S = 365 * 24 * 3600
STATS_COUNTER_TTL_S = 90 * 24 * 3600

INGEST_ALLOWED = "billing_ingest_allowed_total"
INGEST_DUPLICATE = "billing_ingest_duplicate_total"
INGEST_DEGRADED = "billing_ingest_degraded_total"
INGEST_RATE_LIMITED = "billing_ingest_rate_limited_total"


def _day(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).strftime("%Y-%m-%d")


class PipelineMetrics:
    """Best-effort counters in the shared cache. Failures never reach the caller."""

    def __init__(self, cache: Any) -> None:
        self.cache = cache

    def _incr(self, key: str, *, ttl_seconds: int) -> None:
        try:
            self.cache.incr(key, ttl_seconds=ttl_seconds)
        except CacheUnavailableError as exc:
            logger.warning("metrics_incr_failed key=%s error=%s", key, exc)

    def billing(self, counter: str, *, tenant_id: str) -> None:
        self._incr(f"billing:{tenant_id}:{_day()}:{counter}", ttl_seconds=BILLING_COUNTER_TTL_S)

    def captured(self, *, tenant_id: str, has_click_id: bool, now: datetime | None = None) -> None:
        prefix = f"stats:{tenant_id}:{_day(now)}"
        self._incr(f"{prefix}:captured", ttl_seconds=STATS_COUNTER_TTL_S)
        if has_click_id:
            self._incr(f"{prefix}:click_id", ttl_seconds=STATS_COUNTER_TTL_S)

    def read(self, key: str) -> int:
        try:
            raw = self.cache.get(key)
        except CacheUnavailableError as exc:
            logger.warning("metrics_read_failed key=%s error=%s", key, exc)
            return 0
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            return 0
