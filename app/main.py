from __future__ import annotations

import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.errors import ApiError
from app.routes import admin, ingest, internal, workers
from app.routes._deps import (
    error_response,
    log_security_block,
    request_id_from_request,
    trace_id_from_request,
)
from app.runtime import PipelineRuntime, build_runtime
from app.schemas import success_envelope
from app.security import parse_and_validate_bearer_token

# Callers authenticate with something other than the admin bearer token here.
PUBLIC_PATH_PREFIXES = (
    "/api/v1/ingest",
    "/api/v1/workers/",
    "/api/v1/internal/",
    "/api/v1/health",
)

SECURITY_AUDITED_CODES = {
    "AUTH_UNAUTHORIZED",
    "AUTH_FORBIDDEN",
    "TENANT_SCOPE_VIOLATION",
    "BROKER_SIGNATURE_MISSING",
    "BROKER_SIGNATURE_INVALID",
}


def _requires_bearer(path: str) -> bool:
    return path.startswith("/api/v1/") and not path.startswith(PUBLIC_PATH_PREFIXES)


def create_app(runtime: PipelineRuntime | None = None) -> FastAPI:
    app = FastAPI(title="Attribution Pipeline API", version="0.1.0")
    app.state.runtime = runtime or build_runtime()
    security_cfg = app.state.runtime.jwt_config
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth = None
        path = request.url.path
        if (
            security_cfg.trace_id_strict_required
            and path.startswith("/api/v1/")
            and path != "/api/v1/health"
            and not incoming_trace_id
        ):
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and _requires_bearer(path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth = auth_ctx
                request.state.tenant_id = auth_ctx.tenant_id
                if header_tenant_explicit and header_tenant_explicit != auth_ctx.tenant_id:
                    raise ApiError(
                        code="TENANT_SCOPE_VIOLATION",
                        message="tenant mismatch",
                        error_class="security_sensitive",
                        retryable=False,
                        http_status=403,
                    )
            else:
                request.state.tenant_id = header_tenant_explicit or "tenant_default"
            response = await call_next(request)
        except ApiError as exc:
            log_security_block(request=request, code=exc.code, detail=exc.message)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
                details=exc.details,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_AUDITED_CODES:
            log_security_block(request=request, code=exc.code, detail=exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        rt = request.app.state.runtime
        data = {
            "status": "ok",
            "cache": type(rt.cache).__name__,
            "broker": type(rt.broker).__name__,
            "store": rt.store.backend_name,
        }
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(ingest.router)
    app.include_router(workers.router)
    app.include_router(admin.router)
    app.include_router(internal.router)
    return app


app = create_app()
