from __future__ import annotations

import json

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.reconciler import RETRY, THROTTLED
from app.routes._deps import error_response, runtime_from_request, trace_id_from_request
from app.schemas import success_envelope
from app.security import verify_broker_signature

router = APIRouter(prefix="/api/v1/workers", tags=["workers"])

_REDELIVER_CODES = {
    RETRY: ("SYNC_RETRY", "transient failure, redeliver"),
    THROTTLED: ("SYNC_THROTTLED", "worker concurrency limit reached"),
}


@router.post("/sync")
async def sync_worker(
    request: Request,
    upstash_message_id: str | None = Header(default=None, alias="Upstash-Message-Id"),
    upstash_retried: str | None = Header(default=None, alias="Upstash-Retried"),
    upstash_signature: str | None = Header(default=None, alias="Upstash-Signature"),
):
    runtime = runtime_from_request(request)
    raw = await request.body()
    verify_broker_signature(signature=upstash_signature, body=raw, cfg=runtime.signature_config)
    try:
        body = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        body = None
    retried = int(upstash_retried) if (upstash_retried or "").strip().isdigit() else 0
    outcome = await run_in_threadpool(runtime.worker.handle, body, message_id=upstash_message_id, retried=retried)
    if outcome.status in _REDELIVER_CODES:
        code, message = _REDELIVER_CODES[outcome.status]
        return error_response(
            request,
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            status_code=outcome.http_status,
            details=outcome.as_dict(),
        )
    return JSONResponse(
        status_code=outcome.http_status,
        content=success_envelope(outcome.as_dict(), trace_id_from_request(request)),
    )
