"""Sync worker: turns one broker delivery into a persisted, classified signal.

Per message the worker walks ``RECEIVED -> MATCHING -> CLASSIFIED ->
PERSISTED``. A failure on that path ends in ``FAILED``. The message is then
either handed back to the broker for a bounded number of redeliveries or
written to the dead-letter store and acknowledged (``DLQ_ENTERED``).
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.billing import classify
from app.coordination import ConcurrencySemaphore
from app.db.postgres import is_unique_violation
from app.dedup import build_dedup_id, ledger_event_id
from app.errors import CacheUnavailableError, OperationTimeoutError
from app.events import (
    ConversionEvent,
    InboundEvent,
    InteractionEvent,
    InvalidEventPayload,
    parse_inbound_event,
    parse_timestamp,
    validate_delivery,
)
from app.repositories.processed_signals import FAILED, PROCESSED
from app.scoring import action_bonus, compute_score
from app.settings import PipelineSettings
from app.url_normalizer import extract_click_id, normalize_landing_url
from app.valuation import lead_value, value_signal

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
_RETRYABLE_MESSAGE = re.compile(
    r"timeout|timed out|etimedout|econnreset|epipe|connection reset|network|temporarily unavailable"
    r"|rate limit|too many requests",
    re.IGNORECASE,
)
HEARTBEAT_ACTION = "heartbeat"
SLOT_PROVIDER = "sync_worker"


class SyncState(str, Enum):
    RECEIVED = "RECEIVED"
    MATCHING = "MATCHING"
    CLASSIFIED = "CLASSIFIED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"
    DLQ_ENTERED = "DLQ_ENTERED"


PERSISTED = "persisted"
DEDUPLICATED = "deduplicated"
DLQ = "dlq"
IGNORED = "ignored"
RETRY = "retry"
THROTTLED = "throttled"

OUTCOME_HTTP_STATUS: dict[str, int] = {
    PERSISTED: 200,
    DEDUPLICATED: 200,
    DLQ: 200,
    IGNORED: 200,
    RETRY: 500,
    THROTTLED: 429,
}


@dataclass
class SyncOutcome:
    status: str
    transitions: list[SyncState] = field(default_factory=list)
    tenant_id: str = ""
    dedup_id: str = ""
    event_id: str = ""
    dlq_id: str | None = None
    error: str | None = None
    record: dict[str, Any] | None = None

    @property
    def http_status(self) -> int:
        return OUTCOME_HTTP_STATUS[self.status]

    @property
    def state(self) -> SyncState | None:
        return self.transitions[-1] if self.transitions else None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "state": self.state.value if self.state else None,
            "transitions": [x.value for x in self.transitions],
            "tenant_id": self.tenant_id,
            "dedup_id": self.dedup_id,
            "event_id": self.event_id,
            "dlq_id": self.dlq_id,
            "error": self.error,
        }


@dataclass
class WorkerRunStats:
    processed: int = 0
    persisted: int = 0
    deduplicated: int = 0
    dlq: int = 0
    retry: int = 0
    throttled: int = 0
    ignored: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "persisted": self.persisted,
            "deduplicated": self.deduplicated,
            "dlq": self.dlq,
            "retry": self.retry,
            "throttled": self.throttled,
            "ignored": self.ignored,
        }


def is_retryable_error(exc: BaseException) -> bool:
    if is_unique_violation(exc):
        return False
    if isinstance(exc, (CacheUnavailableError, OperationTimeoutError)):
        return True
    status = getattr(exc, "status", None)
    if isinstance(status, int) and status in RETRYABLE_STATUSES:
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(exc)))


def _iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat()


def _new_session(*, tenant_id: str, session_id: str) -> dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "session_id": session_id,
        "landing_url": "",
        "click_id": None,
        "fingerprint": session_id,
        "first_seen_at": None,
        "last_seen_at": None,
        "event_count": 0,
        "conversion_count": 0,
        "interaction_count": 0,
        "bonus_points": 0,
        "lead_score": 0,
        "last_dedup_id": None,
    }


def merge_session(session: dict[str, Any], event: InboundEvent, *, dedup_id: str) -> dict[str, Any]:
    """Fold one event into a session; order-independent for times and counters."""
    merged = dict(session)
    signal_at = event.signal_time
    first = parse_timestamp(merged.get("first_seen_at"))
    last = parse_timestamp(merged.get("last_seen_at"))
    if first is None or signal_at < first:
        merged["first_seen_at"] = _iso(signal_at)
        if event.url:
            merged["landing_url"] = normalize_landing_url(event.url)
    if last is None or signal_at > last:
        merged["last_seen_at"] = _iso(signal_at)
    if not merged.get("landing_url") and event.url:
        merged["landing_url"] = normalize_landing_url(event.url)
    click_id = extract_click_id(event.url, dict(event.meta))
    if click_id and not merged.get("click_id"):
        merged["click_id"] = click_id
    fp = event.meta.get("fp")
    if isinstance(fp, str) and fp.strip():
        merged["fingerprint"] = fp.strip()
    merged["event_count"] = int(merged.get("event_count") or 0) + 1
    if isinstance(event, ConversionEvent):
        merged["conversion_count"] = int(merged.get("conversion_count") or 0) + 1
    if isinstance(event, InteractionEvent):
        merged["interaction_count"] = int(merged.get("interaction_count") or 0) + 1
    merged["bonus_points"] = int(merged.get("bonus_points") or 0) + action_bonus(event.action)
    merged["last_dedup_id"] = dedup_id
    return merged


class SyncWorker:
    def __init__(
        self,
        *,
        store: Any,
        dead_letters: Any,
        semaphore: ConcurrencySemaphore,
        metrics: Any,
        settings: PipelineSettings,
    ) -> None:
        self.store = store
        self.dead_letters = dead_letters
        self.semaphore = semaphore
        self.metrics = metrics
        self.settings = settings
        self.stats = WorkerRunStats()
        self._stats_lock = threading.Lock()

    def reset_stats(self) -> None:
        with self._stats_lock:
            self.stats = WorkerRunStats()

    def _count(self, outcome: SyncOutcome) -> SyncOutcome:
        with self._stats_lock:
            self.stats.processed += 1
            setattr(self.stats, outcome.status, getattr(self.stats, outcome.status) + 1)
        return outcome

    def handle(self, body: Any, *, message_id: str | None = None, retried: int = 0) -> SyncOutcome:
        transitions = [SyncState.RECEIVED]
        try:
            validate_delivery(body)
        except InvalidEventPayload as exc:
            logger.warning("sync_delivery_ignored message_id=%s error=%s", message_id, exc)
            return self._count(SyncOutcome(status=IGNORED, transitions=transitions, error=str(exc)))

        event = parse_inbound_event(body)
        dedup_id = event.dedup_id or build_dedup_id(
            tenant_id=event.tenant_id,
            session_id=event.session_id,
            url=event.url,
            category=event.category_name,
            action=event.action,
            label=event.label,
            meta=event.meta,
            client_ts=body.get("client_ts"),
        )
        event_id = ledger_event_id(message_id=message_id, dedup_id=dedup_id)
        outcome = SyncOutcome(
            status=PERSISTED,
            transitions=transitions,
            tenant_id=event.tenant_id,
            dedup_id=dedup_id,
            event_id=event_id,
        )

        slot_key = ConcurrencySemaphore.site_provider_key(event.tenant_id, SLOT_PROVIDER)
        limit = self.settings.worker_concurrency_limit
        token = None
        if limit > 0:
            token = self.semaphore.acquire(slot_key, limit, self.settings.worker_slot_ttl_ms)
            if token is None:
                logger.info("sync_worker_throttled tenant_id=%s limit=%s", event.tenant_id, limit)
                outcome.status = THROTTLED
                return self._count(outcome)
        try:
            return self._count(self._process(event, body, outcome, message_id=message_id, retried=retried))
        finally:
            self.semaphore.release(slot_key, token)

    def _process(
        self,
        event: InboundEvent,
        body: Mapping[str, Any],
        outcome: SyncOutcome,
        *,
        message_id: str | None,
        retried: int,
    ) -> SyncOutcome:
        tenant_id = event.tenant_id
        stage = SyncState.MATCHING
        claimed = False
        try:
            outcome.transitions.append(SyncState.MATCHING)
            claimed = self.store.processed_signals_repository.claim(tenant_id=tenant_id, event_id=outcome.event_id)
            if not claimed:
                outcome.status = DEDUPLICATED
                return outcome
            existing = self.store.sessions_repository.get(tenant_id=tenant_id, session_id=event.session_id)
            session = merge_session(
                existing or _new_session(tenant_id=tenant_id, session_id=event.session_id),
                event,
                dedup_id=outcome.dedup_id,
            )

            stage = SyncState.CLASSIFIED
            outcome.transitions.append(SyncState.CLASSIFIED)
            record = self._classify(event, session, dedup_id=outcome.dedup_id, message_id=message_id)

            stage = SyncState.PERSISTED
            inserted = self.store.persist_signal(record=record, session=session)
            self.store.processed_signals_repository.mark(
                tenant_id=tenant_id,
                event_id=outcome.event_id,
                status=PROCESSED,
            )
            outcome.transitions.append(SyncState.PERSISTED)
            outcome.record = record
            if not inserted:
                outcome.status = DEDUPLICATED
                return outcome
        except Exception as exc:
            return self._fail(exc, event, body, outcome, stage=stage, claimed=claimed, message_id=message_id, retried=retried)

        self._record_stats(event, has_click_id=bool(session.get("click_id")))
        return outcome

    def _classify(
        self,
        event: InboundEvent,
        session: dict[str, Any],
        *,
        dedup_id: str,
        message_id: str | None,
    ) -> dict[str, Any]:
        decision = classify(event)
        first_seen = parse_timestamp(session.get("first_seen_at")) or event.signal_time
        last_seen = parse_timestamp(session.get("last_seen_at")) or event.signal_time
        breakdown = compute_score(
            conversion_count=int(session["conversion_count"]),
            interaction_count=int(session["interaction_count"]),
            bonus_points=int(session["bonus_points"]),
            has_click_id=bool(session.get("click_id")),
            elapsed_seconds=max(0.0, (last_seen - first_seen).total_seconds()),
            event_count=int(session["event_count"]),
        )
        session["lead_score"] = breakdown.lead_score
        entered_price = event.value if isinstance(event, ConversionEvent) else None
        base_value = lead_value(breakdown.lead_score, entered_price, self.settings.deal_value_for(event.tenant_id))
        valuation = value_signal(base_value, first_seen, event.signal_time)
        return {
            "tenant_id": event.tenant_id,
            "dedup_id": dedup_id,
            "session_id": event.session_id,
            "category": event.category_name,
            "action": event.action,
            "label": event.label,
            "landing_url": normalize_landing_url(event.url),
            "click_id": session.get("click_id"),
            "signal_at": _iso(event.signal_time),
            "click_at": _iso(first_seen),
            "billable": decision.billable,
            "billing_reason": decision.reason,
            "lead_score": breakdown.lead_score,
            "score": breakdown.as_dict(),
            "lead_value": base_value,
            "decayed_value": valuation.value,
            "valuation": valuation.as_dict(),
            "broker_message_id": message_id,
            "persisted_at": datetime.now(UTC).isoformat(),
        }

    def _fail(
        self,
        exc: Exception,
        event: InboundEvent,
        body: Mapping[str, Any],
        outcome: SyncOutcome,
        *,
        stage: SyncState,
        claimed: bool,
        message_id: str | None,
        retried: int,
    ) -> SyncOutcome:
        tenant_id = event.tenant_id
        outcome.error = str(exc)
        if is_unique_violation(exc):
            logger.info("sync_unique_violation tenant_id=%s dedup_id=%s", tenant_id, outcome.dedup_id)
            self._mark_ledger(tenant_id, outcome.event_id, PROCESSED, claimed=claimed)
            outcome.status = DEDUPLICATED
            return outcome

        outcome.transitions.append(SyncState.FAILED)
        self._mark_ledger(tenant_id, outcome.event_id, FAILED, claimed=claimed)
        if is_retryable_error(exc) and retried < self.settings.worker_retry_budget:
            logger.warning(
                "sync_retry tenant_id=%s stage=%s retried=%s error=%s",
                tenant_id,
                stage.value,
                retried,
                exc,
            )
            outcome.status = RETRY
            return outcome

        logger.error(
            "sync_failed tenant_id=%s stage=%s message_id=%s dedup_id=%s",
            tenant_id,
            stage.value,
            message_id,
            outcome.dedup_id,
            exc_info=exc,
        )
        try:
            item = self.dead_letters.record(
                tenant_id=tenant_id,
                stage=stage.value,
                error=str(exc),
                payload=dict(body),
                broker_message_id=message_id,
                dedup_event_id=outcome.event_id,
            )
        except Exception:
            # Nothing durable was written; let the broker redeliver.
            logger.exception("dlq_write_failed tenant_id=%s message_id=%s", tenant_id, message_id)
            outcome.status = RETRY
            return outcome
        outcome.transitions.append(SyncState.DLQ_ENTERED)
        outcome.dlq_id = str(item["dlq_id"])
        outcome.status = DLQ
        return outcome

    def _mark_ledger(self, tenant_id: str, event_id: str, status: str, *, claimed: bool) -> None:
        if not claimed:
            return
        try:
            self.store.processed_signals_repository.mark(tenant_id=tenant_id, event_id=event_id, status=status)
        except Exception as exc:
            logger.warning("ledger_mark_failed event_id=%s status=%s error=%s", event_id, status, exc)

    def _record_stats(self, event: InboundEvent, *, has_click_id: bool) -> None:
        if event.action.strip().lower() == HEARTBEAT_ACTION:
            return
        try:
            self.metrics.captured(tenant_id=event.tenant_id, has_click_id=has_click_id)
        except Exception as exc:
            logger.warning("sync_stats_failed tenant_id=%s error=%s", event.tenant_id, exc)
