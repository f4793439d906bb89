from __future__ import annotations

from fastapi import APIRouter, Body, Header, Query, Request

from app.errors import ApiError
from app.recovery import FallbackRecoveryJob
from app.repositories.fallback_buffer import PENDING
from app.routes._deps import require_internal_debug, runtime_from_request, trace_id_from_request
from app.schemas import BrokerDrainRequest, RecoveryRunRequest, success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/fallback/recover")
def run_fallback_recovery(
    request: Request,
    payload: RecoveryRunRequest | None = Body(default=None),
    x_internal_debug: str | None = Header(default=None),
):
    require_internal_debug(x_internal_debug)
    runtime = runtime_from_request(request)
    job = runtime.recovery
    if payload is not None and payload.batch_size is not None:
        job = FallbackRecoveryJob(
            store=job.store,
            publisher=job.publisher,
            lock=job.lock,
            batch_size=payload.batch_size,
            concurrency=job.concurrency,
            lock_ttl_s=job.lock_ttl_s,
        )
    return success_envelope(job.run_once(), trace_id_from_request(request))


@router.get("/fallback")
def list_fallback_rows(
    request: Request,
    status: str = Query(default=PENDING),
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None),
):
    require_internal_debug(x_internal_debug)
    runtime = runtime_from_request(request)
    items = runtime.store.fallback_repository.list_by_status(status=status.upper(), limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/broker/drain")
def drain_broker(
    request: Request,
    payload: BrokerDrainRequest | None = Body(default=None),
    x_internal_debug: str | None = Header(default=None),
):
    require_internal_debug(x_internal_debug)
    runtime = runtime_from_request(request)
    max_messages = payload.max_messages if payload is not None else 100
    try:
        data = runtime.drain_broker(max_messages=max_messages)
    except RuntimeError as exc:
        raise ApiError(
            code="BROKER_DRAIN_UNSUPPORTED",
            message=str(exc),
            error_class="business_rule",
            retryable=False,
            http_status=409,
        ) from exc
    return success_envelope(data, trace_id_from_request(request))
