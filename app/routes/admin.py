from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app.errors import ApiError, OperationTimeoutError
from app.routes._deps import (
    error_response,
    require_admin,
    runtime_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from app.schemas import success_envelope

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def _dlq_not_found(dlq_id: str) -> ApiError:
    return ApiError(
        code="DLQ_NOT_FOUND",
        message=f"dlq item not found: {dlq_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


@router.get("/dlq")
def list_dlq_items(request: Request, limit: int = Query(default=100, ge=1, le=1000)):
    require_admin(request)
    runtime = runtime_from_request(request)
    items = runtime.dead_letters.list(tenant_id=tenant_id_from_request(request), limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/dlq/stats")
def dlq_stats(request: Request):
    require_admin(request)
    runtime = runtime_from_request(request)
    try:
        data = runtime.dead_letters.stats(tenant_id=tenant_id_from_request(request))
    except OperationTimeoutError as exc:
        raise ApiError(
            code="REPORT_TIMEOUT",
            message=str(exc),
            error_class="transient",
            retryable=True,
            http_status=504,
        ) from exc
    return success_envelope(data, trace_id_from_request(request))


@router.get("/dlq/audit/verify")
def verify_replay_audit(request: Request):
    require_admin(request)
    runtime = runtime_from_request(request)
    data = runtime.store.verify_replay_audit_integrity(tenant_id=tenant_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.get("/dlq/{dlq_id}")
def get_dlq_item(dlq_id: str, request: Request):
    require_admin(request)
    runtime = runtime_from_request(request)
    item = runtime.dead_letters.get(tenant_id=tenant_id_from_request(request), dlq_id=dlq_id)
    if item is None:
        raise _dlq_not_found(dlq_id)
    return success_envelope(item, trace_id_from_request(request))


@router.get("/dlq/{dlq_id}/replays")
def list_dlq_replays(dlq_id: str, request: Request):
    require_admin(request)
    runtime = runtime_from_request(request)
    items = runtime.dead_letters.replays(tenant_id=tenant_id_from_request(request), dlq_id=dlq_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/dlq/{dlq_id}/replay")
def replay_dlq_item(dlq_id: str, request: Request):
    actor = require_admin(request)
    runtime = runtime_from_request(request)
    result = runtime.dead_letters.replay(
        tenant_id=tenant_id_from_request(request),
        dlq_id=dlq_id,
        actor=actor,
    )
    if not result.found:
        raise _dlq_not_found(dlq_id)
    if not result.ok:
        return error_response(
            request,
            code="DLQ_REPLAY_FAILED",
            message="dlq replay publish failed",
            error_class="upstream_unavailable",
            retryable=True,
            status_code=502,
            details={"replay_count": result.replay_count, "error": result.error},
        )
    return JSONResponse(status_code=200, content=success_envelope(result.as_dict(), trace_id_from_request(request)))
