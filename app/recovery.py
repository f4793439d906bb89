from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from app.coordination import DistributedLock
from app.errors import BrokerPublishError
from app.repositories.fallback_buffer import PENDING

logger = logging.getLogger(__name__)

RECOVERY_LOCK_NAME = "recover"


class FallbackRecoveryJob:
    """Re-publishes PENDING fallback rows; one sweep at a time across the fleet."""

    def __init__(
        self,
        *,
        store: Any,
        publisher: Any,
        lock: DistributedLock,
        batch_size: int = 100,
        concurrency: int = 3,
        lock_ttl_s: int = 660,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.lock = lock
        self.batch_size = max(1, int(batch_size))
        self.concurrency = max(1, int(concurrency))
        self.lock_ttl_s = max(1, int(lock_ttl_s))

    def _recover_one(self, row: dict[str, Any]) -> bool:
        payload = dict(row.get("payload") or {})
        dedup_id = str(payload.get("dedup_id") or "") or None
        fallback_id = str(row["fallback_id"])
        try:
            self.publisher.publish_strict(body=payload, dedup_id=dedup_id)
        except BrokerPublishError as exc:
            logger.warning("fallback_recover_failed fallback_id=%s error=%s", fallback_id, exc)
            self.store.fallback_repository.mark_failed_attempt(fallback_id=fallback_id, error_reason=str(exc))
            return False
        self.store.fallback_repository.mark_recovered(fallback_id=fallback_id)
        return True

    def run_once(self) -> dict[str, Any]:
        with self.lock.held(RECOVERY_LOCK_NAME, self.lock_ttl_s) as acquired:
            if not acquired:
                logger.info("fallback_recover_skipped reason=lock_held")
                return {"ok": True, "skipped": True, "reason": "lock_held"}
            rows = self.store.fallback_repository.list_by_status(status=PENDING, limit=self.batch_size)
            if not rows:
                return {"ok": True, "claimed": 0, "recovered": 0, "failed": 0}
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="attr-recover") as pool:
                results = list(pool.map(self._recover_one, rows))
        recovered = sum(1 for x in results if x)
        logger.info("fallback_recover_done claimed=%s recovered=%s", len(rows), recovered)
        return {
            "ok": True,
            "claimed": len(rows),
            "recovered": recovered,
            "failed": len(rows) - recovered,
        }
