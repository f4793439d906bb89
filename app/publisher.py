from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.broker import PublishReceipt
from app.errors import BrokerPublishError
from app.repositories.fallback_buffer import PENDING

logger = logging.getLogger(__name__)

QUEUED = "queued"
DEDUPLICATED = "deduplicated"
DEGRADED = "degraded"


@dataclass(frozen=True)
class PublishOutcome:
    status: str
    message_id: str | None = None
    fallback_id: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message_id": self.message_id,
            "fallback_id": self.fallback_id,
            "error": self.error,
        }


def build_fallback_row(*, tenant_id: str, payload: dict[str, Any], error_reason: str | None) -> dict[str, Any]:
    return {
        "fallback_id": f"fb_{uuid.uuid4().hex[:12]}",
        "tenant_id": tenant_id,
        "payload": dict(payload),
        "error_reason": error_reason,
        "status": PENDING,
        "attempts": 0,
        "created_at": datetime.now(UTC).isoformat(),
    }


class QueuePublisher:
    """Hands events to the broker; publish failures degrade to the fallback buffer."""

    def __init__(self, *, broker: Any, fallback_repository: Any, destination: str, retries: int = 3) -> None:
        self.broker = broker
        self.fallback_repository = fallback_repository
        self.destination = destination
        self.retries = max(0, int(retries))

    def publish_strict(self, *, body: dict[str, Any], dedup_id: str | None) -> PublishReceipt:
        return self.broker.publish(
            destination=self.destination,
            body=body,
            dedup_id=dedup_id,
            retries=self.retries,
        )

    def publish(self, *, body: dict[str, Any], dedup_id: str | None) -> PublishOutcome:
        tenant_id = str(body.get("tenant_id") or "")
        try:
            receipt = self.publish_strict(body=body, dedup_id=dedup_id)
        except BrokerPublishError as exc:
            error = str(exc)
            logger.warning(
                "publish_failed tenant_id=%s dedup_id=%s status=%s error=%s",
                tenant_id,
                dedup_id,
                exc.status,
                error,
            )
            return PublishOutcome(status=DEGRADED, fallback_id=self._buffer(tenant_id, body, error), error=error)
        status = DEDUPLICATED if receipt.deduplicated else QUEUED
        return PublishOutcome(status=status, message_id=receipt.message_id or None)

    def _buffer(self, tenant_id: str, body: dict[str, Any], error: str) -> str | None:
        row = build_fallback_row(tenant_id=tenant_id, payload=body, error_reason=error)
        try:
            self.fallback_repository.insert(row=row)
        except Exception:
            # Ingest still answers 200.
            logger.exception("fallback_buffer_write_failed tenant_id=%s", tenant_id)
            return None
        return str(row["fallback_id"])
