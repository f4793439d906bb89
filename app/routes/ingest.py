from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Request

from app.dedup import build_dedup_id
from app.errors import ApiError
from app.metrics import INGEST_ALLOWED, INGEST_DEGRADED, INGEST_DUPLICATE, INGEST_RATE_LIMITED
from app.publisher import DEDUPLICATED, DEGRADED
from app.routes._deps import client_id_from_request, runtime_from_request, trace_id_from_request
from app.schemas import IngestRequest, success_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["ingest"])

_BILLING_COUNTERS = {
    DEDUPLICATED: INGEST_DUPLICATE,
    DEGRADED: INGEST_DEGRADED,
}


@router.post("/ingest")
def ingest_event(payload: IngestRequest, request: Request):
    runtime = runtime_from_request(request)
    settings = runtime.settings
    tenant_id = (payload.tenant_id or "").strip()
    decision = runtime.rate_limiter.check(
        client_id_from_request(request),
        limit=settings.rate_limit_requests,
        window_ms=settings.rate_limit_window_ms,
        namespace="ingest",
    )
    if not decision.allowed:
        if tenant_id:
            runtime.metrics.billing(INGEST_RATE_LIMITED, tenant_id=tenant_id)
        raise ApiError(
            code="RATE_LIMITED",
            message="too many requests",
            error_class="transient",
            retryable=True,
            http_status=429,
            details={"reset_after_ms": decision.reset_after_ms},
        )

    url = (payload.url or "").strip()
    if not tenant_id or not url:
        return success_envelope({"status": "skipped"}, trace_id_from_request(request))

    body = payload.model_dump()
    body.pop("fingerprint", None)
    body["tenant_id"] = tenant_id
    body["url"] = url
    body["ingest_id"] = uuid.uuid4().hex
    body["received_at"] = datetime.now(UTC).isoformat()
    body["dedup_id"] = build_dedup_id(
        tenant_id=tenant_id,
        session_id=payload.session_id,
        url=url,
        category=payload.category,
        action=payload.action,
        label=payload.label,
        fingerprint=payload.fingerprint,
        meta=payload.meta,
        client_ts=payload.client_ts,
    )
    outcome = runtime.publisher.publish(body=body, dedup_id=body["dedup_id"])
    runtime.metrics.billing(_BILLING_COUNTERS.get(outcome.status, INGEST_ALLOWED), tenant_id=tenant_id)
    logger.debug("ingest_accepted tenant_id=%s status=%s", tenant_id, outcome.status)
    data = {"status": outcome.status, "ingest_id": body["ingest_id"], "dedup_id": body["dedup_id"]}
    return success_envelope(data, trace_id_from_request(request))
