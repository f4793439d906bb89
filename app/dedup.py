from __future__ import annotations

import hashlib
import math
import time
from collections.abc import Mapping
from typing import Any

from app.events import parse_timestamp
from app.url_normalizer import normalize_landing_url

CLIENT_TS_MAX_SKEW_MS = 5 * 60 * 1000
HEARTBEAT_BUCKET_MS = 10_000
DEFAULT_BUCKET_MS = 2_000

HEARTBEAT = "heartbeat"
PAGE_VIEW = "page_view"
OTHER = "other"


def server_now_ms() -> int:
    return int(time.time() * 1000)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def event_kind(*, category: str, action: str) -> str:
    category = category.strip().lower()
    action = action.strip().lower()
    if action == HEARTBEAT:
        return HEARTBEAT
    if category == "page" or action in (PAGE_VIEW, "view"):
        return PAGE_VIEW
    return OTHER


def _client_ts_ms(client_ts: Any, meta: Mapping[str, Any] | None) -> int | None:
    raw = client_ts if client_ts not in (None, "") else (meta or {}).get("ts")
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return None
        ms = float(raw) * 1000 if raw < 1e12 else float(raw)
        return int(ms)
    dt = parse_timestamp(raw)
    return int(dt.timestamp() * 1000) if dt is not None else None


def time_component(
    *,
    category: str,
    action: str,
    client_ts: Any = None,
    meta: Mapping[str, Any] | None = None,
    now_ms: int | None = None,
) -> int:
    """Bucketed time mixed into the dedup id.

    Heartbeats and page views trust the client timestamp when it lies within
    five minutes of server time. Clicks, calls and conversions always use
    server time.
    """
    server_ms = server_now_ms() if now_ms is None else int(now_ms)
    kind = event_kind(category=category, action=action)
    ts_ms = server_ms
    if kind in (HEARTBEAT, PAGE_VIEW):
        payload_ms = _client_ts_ms(client_ts, meta)
        if payload_ms is not None and abs(payload_ms - server_ms) <= CLIENT_TS_MAX_SKEW_MS:
            ts_ms = payload_ms
    bucket = HEARTBEAT_BUCKET_MS if kind == HEARTBEAT else DEFAULT_BUCKET_MS
    return (ts_ms // bucket) * bucket


def resolve_fingerprint(*, session_id: str, meta: Mapping[str, Any] | None = None, fingerprint: str | None = None) -> str:
    if fingerprint and fingerprint.strip():
        return fingerprint.strip()
    fp = (meta or {}).get("fp")
    if isinstance(fp, str) and fp.strip():
        return fp.strip()
    return session_id


def build_dedup_id(
    *,
    tenant_id: str,
    session_id: str,
    url: str,
    category: str,
    action: str,
    label: str = "",
    fingerprint: str | None = None,
    meta: Mapping[str, Any] | None = None,
    client_ts: Any = None,
    now_ms: int | None = None,
) -> str:
    """Idempotency key for one logical client event.

    Client retries of the same event inside one time bucket hash to the same
    id, which the broker uses to drop duplicate publishes. A repeat of the
    event in a later bucket is a new event.
    """
    fp = resolve_fingerprint(session_id=session_id, meta=meta, fingerprint=fingerprint)
    bucket = time_component(category=category, action=action, client_ts=client_ts, meta=meta, now_ms=now_ms)
    seed = (
        f"{tenant_id}:{category.strip().lower()}|{action.strip()}|{label.strip()}"
        f":{normalize_landing_url(url)}:{fp}:{bucket}"
    )
    return _sha256_hex(seed)


def deterministic_uuid(text: str) -> str:
    raw = _sha256_hex(text)[:32]
    raw = raw[:12] + "5" + raw[13:16] + "a" + raw[17:]
    return f"{raw[:8]}-{raw[8:12]}-{raw[12:16]}-{raw[16:20]}-{raw[20:32]}"


def ledger_event_id(*, message_id: str | None, dedup_id: str) -> str:
    if message_id and message_id.strip():
        return deterministic_uuid(f"broker:{message_id.strip()}")
    return deterministic_uuid(f"fallback:{dedup_id}")
