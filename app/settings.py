from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_WORKER_URL = "http://127.0.0.1:8000/api/v1/workers/sync"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("ATTR_REQUIRE_TRUESTACK", "false"))


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value != value:
        return default
    return max(minimum, value)


def _parse_tenant_values(raw: str) -> dict[str, float]:
    out: dict[str, float] = {}
    for chunk in raw.split(","):
        tenant, sep, value = chunk.partition("=")
        if not sep or not tenant.strip():
            continue
        try:
            out[tenant.strip()] = max(0.0, float(value.strip()))
        except ValueError:
            continue
    return out


@dataclass(frozen=True)
class PipelineSettings:
    worker_url: str = DEFAULT_WORKER_URL
    publish_retries: int = 3
    dedup_window_s: int = 600
    worker_retry_budget: int = 3
    worker_concurrency_limit: int = 0
    worker_slot_ttl_ms: int = 60_000
    rate_limit_requests: int = 100
    rate_limit_window_ms: int = 60_000
    default_deal_value: float = 1000.0
    tenant_deal_values: Mapping[str, float] = field(default_factory=dict)
    recovery_batch_size: int = 100
    recovery_concurrency: int = 3
    recovery_lock_ttl_s: int = 660
    report_timeout_ms: int = 5000
    require_true_stack: bool = False

    def deal_value_for(self, tenant_id: str) -> float:
        return float(self.tenant_deal_values.get(tenant_id, self.default_deal_value))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineSettings:
        env = os.environ if environ is None else environ
        return cls(
            worker_url=str(env.get("ATTR_WORKER_URL", "")).strip() or DEFAULT_WORKER_URL,
            publish_retries=_env_int(env, "ATTR_PUBLISH_RETRIES", default=3),
            dedup_window_s=_env_int(env, "ATTR_DEDUP_WINDOW_S", default=600, minimum=1),
            worker_retry_budget=_env_int(env, "ATTR_WORKER_RETRY_BUDGET", default=3),
            worker_concurrency_limit=_env_int(env, "ATTR_WORKER_CONCURRENCY_LIMIT", default=0),
            worker_slot_ttl_ms=_env_int(env, "ATTR_WORKER_SLOT_TTL_MS", default=60_000, minimum=1),
            rate_limit_requests=_env_int(env, "ATTR_RATE_LIMIT_REQUESTS", default=100, minimum=1),
            rate_limit_window_ms=_env_int(env, "ATTR_RATE_LIMIT_WINDOW_MS", default=60_000, minimum=1),
            default_deal_value=_env_float(env, "ATTR_DEFAULT_DEAL_VALUE", default=1000.0),
            tenant_deal_values=_parse_tenant_values(str(env.get("ATTR_TENANT_DEAL_VALUES", ""))),
            recovery_batch_size=_env_int(env, "ATTR_RECOVERY_BATCH_SIZE", default=100, minimum=1),
            recovery_concurrency=_env_int(env, "ATTR_RECOVERY_CONCURRENCY", default=3, minimum=1),
            recovery_lock_ttl_s=_env_int(env, "ATTR_RECOVERY_LOCK_TTL_S", default=660, minimum=1),
            report_timeout_ms=_env_int(env, "ATTR_REPORT_TIMEOUT_MS", default=5000, minimum=1),
            require_true_stack=true_stack_required(env),
        )
