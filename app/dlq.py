from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.errors import BrokerPublishError
from app.timeouts import run_with_timeout

logger = logging.getLogger(__name__)

NOT_FOUND_ERROR = "dlq_item_not_found"
STATS_SCAN_LIMIT = 10_000


@dataclass(frozen=True)
class ReplayActor:
    user_id: str
    email: str | None = None


@dataclass(frozen=True)
class ReplayResult:
    ok: bool
    dlq_id: str
    replay_count: int
    found: bool = True
    error: str | None = None
    audit_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, "dlq_id": self.dlq_id, "replay_count": self.replay_count}
        if self.error is not None:
            data["error"] = self.error
        return data


class DeadLetterService:
    """Dead-letter writes, admin views and audited manual replay."""

    def __init__(self, *, store: Any, publisher: Any, report_timeout_s: float = 5.0) -> None:
        self.store = store
        self.publisher = publisher
        self.report_timeout_s = report_timeout_s

    def record(
        self,
        *,
        tenant_id: str,
        stage: str,
        error: str,
        payload: dict[str, Any],
        broker_message_id: str | None,
        dedup_event_id: str | None,
    ) -> dict[str, Any]:
        item = {
            "dlq_id": self.store.new_dlq_id(),
            "tenant_id": tenant_id,
            "received_at": datetime.now(UTC).isoformat(),
            "stage": stage,
            "error": error,
            "broker_message_id": broker_message_id,
            "dedup_event_id": dedup_event_id,
            "payload": payload,
        }
        return self.store.dlq_repository.insert(item=item)

    def list(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return self.store.dlq_repository.list(tenant_id=tenant_id, limit=limit)

    def get(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any] | None:
        return self.store.dlq_repository.get(tenant_id=tenant_id, dlq_id=dlq_id)

    def replays(self, *, tenant_id: str, dlq_id: str) -> list[dict[str, Any]]:
        return self.store.replay_audit_repository.list_for_dlq(tenant_id=tenant_id, dlq_id=dlq_id)

    def replay(self, *, tenant_id: str, dlq_id: str, actor: ReplayActor) -> ReplayResult:
        """Re-publish one entry. Every call appends exactly one audit row.

        The publish goes out without a dedup id so a deliberate replay is
        never swallowed by the broker's dedup window.
        """
        item = self.get(tenant_id=tenant_id, dlq_id=dlq_id)
        if item is None:
            audit = self._audit(
                tenant_id=tenant_id,
                dlq_id=dlq_id,
                actor=actor,
                replay_count=0,
                error=NOT_FOUND_ERROR,
            )
            return ReplayResult(
                ok=False,
                dlq_id=dlq_id,
                replay_count=0,
                found=False,
                error=NOT_FOUND_ERROR,
                audit_id=audit["audit_id"],
            )

        error: str | None = None
        try:
            self.publisher.publish_strict(body=dict(item.get("payload") or {}), dedup_id=None)
        except BrokerPublishError as exc:
            error = str(exc)
            logger.warning("dlq_replay_publish_failed dlq_id=%s error=%s", dlq_id, error)

        replay_count = int(item.get("replay_count") or 0)
        try:
            updated = self.store.dlq_repository.record_replay(
                tenant_id=tenant_id,
                dlq_id=dlq_id,
                error=error,
                replayed_at=datetime.now(UTC).isoformat(),
            )
        except Exception as exc:
            logger.exception("dlq_record_replay_failed dlq_id=%s", dlq_id)
            note = f"record_replay_failed: {exc}"
            error = f"{error}; {note}" if error else note
        else:
            if updated is not None:
                replay_count = int(updated["replay_count"])

        audit = self._audit(
            tenant_id=tenant_id,
            dlq_id=dlq_id,
            actor=actor,
            replay_count=replay_count,
            error=error,
        )
        logger.info(
            "dlq_replayed dlq_id=%s actor=%s replay_count=%s ok=%s",
            dlq_id,
            actor.user_id,
            replay_count,
            error is None,
        )
        return ReplayResult(
            ok=error is None,
            dlq_id=dlq_id,
            replay_count=replay_count,
            error=error,
            audit_id=audit["audit_id"],
        )

    def _audit(
        self,
        *,
        tenant_id: str,
        dlq_id: str,
        actor: ReplayActor,
        replay_count: int,
        error: str | None,
    ) -> dict[str, Any]:
        return self.store.append_replay_audit(
            row={
                "tenant_id": tenant_id,
                "dlq_id": dlq_id,
                "replayed_by_user_id": actor.user_id,
                "replayed_by_email": actor.email,
                "replay_count_after": replay_count,
                "error_if_failed": error,
            }
        )

    def stats(self, *, tenant_id: str) -> dict[str, Any]:
        def _collect() -> dict[str, Any]:
            items = self.list(tenant_id=tenant_id, limit=STATS_SCAN_LIMIT)
            by_stage = Counter(str(x.get("stage") or "unknown") for x in items)
            return {
                "total": len(items),
                "by_stage": dict(sorted(by_stage.items())),
                "total_replays": sum(int(x.get("replay_count") or 0) for x in items),
                "with_last_replay_error": sum(1 for x in items if x.get("last_replay_error")),
            }

        return run_with_timeout(_collect, timeout_s=self.report_timeout_s, label="dlq_stats")
