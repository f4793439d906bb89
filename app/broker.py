from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib import parse, request
from urllib.error import HTTPError, URLError

from app.errors import BrokerPublishError

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_S = 600
REDELIVER_STATUSES = frozenset({429})


@dataclass(frozen=True)
class PublishReceipt:
    message_id: str
    deduplicated: bool = False


@dataclass
class BrokerDelivery:
    message_id: str
    destination: str
    body: dict[str, Any]
    retries: int
    retried: int = 0


@dataclass
class DrainStats:
    processed: int = 0
    acked: int = 0
    redelivered: int = 0
    exhausted: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "acked": self.acked,
            "redelivered": self.redelivered,
            "exhausted": self.exhausted,
        }


class InMemoryBroker:
    """At-least-once broker used locally: dedup window on publish, explicit drain for delivery."""

    def __init__(
        self,
        *,
        dedup_window_s: int = DEFAULT_DEDUP_WINDOW_S,
        max_dedup_entries: int = 100_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self.dedup_window_s = max(1, int(dedup_window_s))
        self.max_dedup_entries = max(1, int(max_dedup_entries))
        self._clock = clock
        self._seen: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._pending: deque[BrokerDelivery] = deque()

    def _evict_expired(self, now: float) -> None:
        cutoff = now - self.dedup_window_s
        while self._seen:
            dedup_id, (_, published_at) = next(iter(self._seen.items()))
            if published_at > cutoff and len(self._seen) <= self.max_dedup_entries:
                break
            self._seen.pop(dedup_id, None)

    def publish(
        self,
        *,
        destination: str,
        body: dict[str, Any],
        dedup_id: str | None,
        retries: int,
    ) -> PublishReceipt:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            if dedup_id:
                seen = self._seen.get(dedup_id)
                if seen is not None:
                    return PublishReceipt(message_id=seen[0], deduplicated=True)
            message_id = f"msg_{uuid.uuid4().hex[:16]}"
            if dedup_id:
                self._seen[dedup_id] = (message_id, now)
            self._pending.append(
                BrokerDelivery(
                    message_id=message_id,
                    destination=destination,
                    body=json.loads(json.dumps(body)),
                    retries=max(0, int(retries)),
                )
            )
            return PublishReceipt(message_id=message_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _next(self) -> BrokerDelivery | None:
        with self._lock:
            return self._pending.popleft() if self._pending else None

    def drain(self, handler: Callable[[BrokerDelivery], int], *, max_messages: int = 100) -> DrainStats:
        """Deliver pending messages; 5xx and 429 results are redelivered while retries remain."""
        stats = DrainStats()
        while stats.processed < max(1, int(max_messages)):
            delivery = self._next()
            if delivery is None:
                break
            stats.processed += 1
            status = int(handler(delivery))
            if status < 500 and status not in REDELIVER_STATUSES:
                stats.acked += 1
                continue
            if delivery.retried >= delivery.retries:
                logger.warning(
                    "broker_delivery_exhausted message_id=%s status=%s retried=%s",
                    delivery.message_id,
                    status,
                    delivery.retried,
                )
                stats.exhausted += 1
                continue
            delivery.retried += 1
            with self._lock:
                self._pending.append(delivery)
            stats.redelivered += 1
        return stats

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
            self._pending.clear()


class HttpBrokerClient:
    """Publishes JSON bodies through an HTTP message broker (QStash-compatible publish API)."""

    def __init__(self, *, base_url: str, token: str, timeout_s: float = 5.0) -> None:
        if not base_url.strip():
            raise ValueError("ATTR_BROKER_URL must not be empty")
        self._base_url = base_url.strip().rstrip("/")
        self._token = token.strip()
        self._timeout_s = timeout_s

    def publish(
        self,
        *,
        destination: str,
        body: dict[str, Any],
        dedup_id: str | None,
        retries: int,
    ) -> PublishReceipt:
        url = f"{self._base_url}/v2/publish/{parse.quote(destination, safe=':/')}"
        headers = {
            "Content-Type": "application/json",
            "Upstash-Retries": str(max(0, int(retries))),
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if dedup_id:
            headers["Upstash-Deduplication-Id"] = dedup_id
        req = request.Request(
            url,
            data=json.dumps(body, ensure_ascii=True, separators=(",", ":")).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:200]
            raise BrokerPublishError(f"broker HTTP {e.code}: {detail}", status=e.code) from e
        except (URLError, OSError) as e:
            raise BrokerPublishError(f"broker unavailable: {e}") from e
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, list):
            data = data[0] if data and isinstance(data[0], dict) else {}
        return PublishReceipt(
            message_id=str(data.get("messageId") or ""),
            deduplicated=bool(data.get("deduplicated", False)),
        )


def create_broker_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    dedup_window_s: int = DEFAULT_DEDUP_WINDOW_S,
) -> InMemoryBroker | HttpBrokerClient:
    env = os.environ if environ is None else environ
    backend = env.get("ATTR_BROKER_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryBroker(dedup_window_s=dedup_window_s)
    if backend == "http":
        base_url = env.get("ATTR_BROKER_URL", "").strip()
        if not base_url:
            raise ValueError("ATTR_BROKER_URL must be set when ATTR_BROKER_BACKEND=http")
        return HttpBrokerClient(base_url=base_url, token=env.get("ATTR_BROKER_TOKEN", ""))
    raise RuntimeError(f"unsupported broker backend: {backend}")
