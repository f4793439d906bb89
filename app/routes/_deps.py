from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from app.dlq import ReplayActor
from app.errors import ApiError
from app.runtime import PipelineRuntime
from app.schemas import error_envelope
from app.security import redact_sensitive, require_admin_role

logger = logging.getLogger(__name__)


def runtime_from_request(request: Request) -> PipelineRuntime:
    return request.app.state.runtime


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "tenant_default"


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def client_id_from_request(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, object] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def log_security_block(*, request: Request, code: str, detail: str) -> None:
    headers_obj = dict(request.headers.items())
    runtime = runtime_from_request(request)
    headers_payload = redact_sensitive(headers_obj) if runtime.jwt_config.log_redaction_enabled else headers_obj
    logger.warning(
        "security_blocked path=%s code=%s detail=%s trace_id=%s headers=%s",
        request.url.path,
        code,
        detail,
        trace_id_from_request(request),
        headers_payload,
    )


def require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def require_admin(request: Request) -> ReplayActor:
    runtime = runtime_from_request(request)
    auth = getattr(request.state, "auth", None)
    if not runtime.jwt_config.enabled or auth is None:
        # Security disabled: dev mode, actor taken from headers.
        return ReplayActor(user_id=request.headers.get("x-actor-id", "anonymous"), email=None)
    require_admin_role(auth, runtime.jwt_config)
    return ReplayActor(user_id=auth.subject, email=auth.email)
