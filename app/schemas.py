from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IngestRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    tenant_id: str | None = None
    session_id: str = ""
    category: str = ""
    action: str = ""
    url: str | None = None
    label: str = ""
    value: float | str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    client_ts: str | None = None
    fingerprint: str | None = None


class RecoveryRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=1000)


class BrokerDrainRequest(BaseModel):
    max_messages: int = Field(default=100, ge=1, le=1000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
