from __future__ import annotations

from datetime import UTC, datetime

from fastapi.testclient import TestClient

from app.errors import BrokerPublishError
from app.main import create_app
from app.metrics import INGEST_ALLOWED, INGEST_DEGRADED, INGEST_DUPLICATE
from app.repositories.fallback_buffer import PENDING
from app.runtime import build_runtime
from conftest import BASE_ENV


def _event(**overrides):
    data = {
        "tenant_id": "tenant_a",
        "session_id": "sess_1",
        "category": "interaction",
        "action": "view",
        "url": "https://shop.example.com/lp?utm_source=ads#top",
        "meta": {"fp": "device_1"},
        "client_ts": "2026-03-01T10:00:00Z",
    }
    data.update(overrides)
    return data


def _billing(runtime, counter):
    day = datetime.now(UTC).strftime("%Y-%m-%d")
    return runtime.metrics.read(f"billing:tenant_a:{day}:{counter}")


class _DownBroker:
    def publish(self, **kwargs):
        raise BrokerPublishError("broker unavailable: connection refused")


def test_ingest_queues_event_with_dedup_id(client, runtime):
    resp = client.post("/api/v1/ingest", json=_event(fingerprint="fp_override"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["status"] == "queued"
    assert len(body["data"]["dedup_id"]) == 64
    assert runtime.broker.pending_count() == 1
    queued = runtime.broker._pending[0].body
    assert queued["dedup_id"] == body["data"]["dedup_id"]
    assert queued["ingest_id"] == body["data"]["ingest_id"]
    assert "fingerprint" not in queued
    assert _billing(runtime, INGEST_ALLOWED) == 1


def test_duplicate_ingest_is_swallowed_by_broker(client, runtime):
    first = client.post("/api/v1/ingest", json=_event()).json()["data"]
    second = client.post("/api/v1/ingest", json=_event(url="https://shop.example.com/lp?gclid=zzz")).json()["data"]
    assert second["status"] == "deduplicated"
    assert second["dedup_id"] == first["dedup_id"]
    assert runtime.broker.pending_count() == 1
    assert _billing(runtime, INGEST_DUPLICATE) == 1


def test_ingest_without_tenant_or_url_is_skipped(client, runtime):
    for payload in (_event(tenant_id=None), _event(url="  ")):
        resp = client.post("/api/v1/ingest", json=payload)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"status": "skipped"}
    assert runtime.broker.pending_count() == 0


def test_broker_outage_still_acknowledges_and_buffers(client, runtime, monkeypatch):
    monkeypatch.setattr(runtime.publisher, "broker", _DownBroker())
    resp = client.post("/api/v1/ingest", json=_event())
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "degraded"
    rows = runtime.store.fallback_repository.list_by_status(status=PENDING)
    assert len(rows) == 1
    assert rows[0]["payload"]["dedup_id"] == resp.json()["data"]["dedup_id"]
    assert _billing(runtime, INGEST_DEGRADED) == 1


def test_ingest_rate_limit_returns_429():
    rt = build_runtime(dict(BASE_ENV, ATTR_RATE_LIMIT_REQUESTS="2"))
    client = TestClient(create_app(rt))
    codes = [client.post("/api/v1/ingest", json=_event(action=f"a{i}")).status_code for i in range(3)]
    assert codes == [200, 200, 429]
    resp = client.post("/api/v1/ingest", json=_event(), headers={"x-forwarded-for": "10.0.0.9"})
    assert resp.status_code == 200
    limited = client.post("/api/v1/ingest", json=_event())
    error = limited.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["retryable"] is True
    assert error["details"]["reset_after_ms"] > 0


def test_ingest_rejects_malformed_body(client):
    resp = client.post("/api/v1/ingest", json=["not", "an", "object"])
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
