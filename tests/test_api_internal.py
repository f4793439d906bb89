from __future__ import annotations

from app.errors import BrokerPublishError

DEBUG = {"x-internal-debug": "true"}


class _DownBroker:
    def publish(self, **kwargs):
        raise BrokerPublishError("broker unavailable: connection refused")


def test_internal_endpoints_require_debug_header(client):
    for method, path in (
        ("POST", "/api/v1/internal/fallback/recover"),
        ("GET", "/api/v1/internal/fallback"),
        ("POST", "/api/v1/internal/broker/drain"),
    ):
        resp = client.request(method, path)
        assert resp.status_code == 403, path
        assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_fallback_list_and_recover(client, runtime, monkeypatch):
    real = runtime.publisher.broker
    monkeypatch.setattr(runtime.publisher, "broker", _DownBroker())
    client.post("/api/v1/ingest", json={"tenant_id": "tenant_a", "session_id": "s", "url": "https://e.com/"})
    monkeypatch.setattr(runtime.publisher, "broker", real)

    listed = client.get("/api/v1/internal/fallback", headers=DEBUG)
    assert listed.json()["data"]["total"] == 1

    recovered = client.post("/api/v1/internal/fallback/recover", headers=DEBUG, json={"batch_size": 10})
    assert recovered.status_code == 200
    assert recovered.json()["data"] == {"ok": True, "claimed": 1, "recovered": 1, "failed": 0}
    assert client.get("/api/v1/internal/fallback?status=recovered", headers=DEBUG).json()["data"]["total"] == 1
    assert runtime.broker.pending_count() == 1


def test_broker_drain_delivers_to_worker(client, runtime):
    client.post("/api/v1/ingest", json={"tenant_id": "tenant_a", "session_id": "s", "url": "https://e.com/"})
    resp = client.post("/api/v1/internal/broker/drain", headers=DEBUG, json={"max_messages": 10})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["drain"]["acked"] == 1
    assert data["pending"] == 0
    assert data["worker"]["persisted"] == 1


def test_broker_drain_conflicts_for_remote_broker(client, runtime, monkeypatch):
    monkeypatch.setattr(runtime, "broker", object())
    resp = client.post("/api/v1/internal/broker/drain", headers=DEBUG)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "BROKER_DRAIN_UNSUPPORTED"
