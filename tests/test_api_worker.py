from __future__ import annotations

import json

from fastapi.testclient import TestClient

from app.main import create_app
from app.runtime import build_runtime
from app.security import sign_broker_body
from conftest import BASE_ENV, BROKER_SIGNING_KEY


def _raw(**overrides) -> bytes:
    data = {
        "tenant_id": "tenant_a",
        "session_id": "sess_1",
        "category": "conversion",
        "action": "purchase",
        "url": "https://shop.example.com/lp",
        "dedup_id": "dedup_1",
    }
    data.update(overrides)
    return json.dumps(data).encode("utf-8")


def _deliver(client, raw: bytes, *, key: str | None = BROKER_SIGNING_KEY, message_id="msg_1", retried=None):
    headers = {"Content-Type": "application/json", "Upstash-Message-Id": message_id}
    if key is not None:
        headers["Upstash-Signature"] = sign_broker_body(body=raw, key=key)
    if retried is not None:
        headers["Upstash-Retried"] = str(retried)
    return client.post("/api/v1/workers/sync", content=raw, headers=headers)


def test_signed_delivery_is_persisted(client, runtime):
    resp = _deliver(client, _raw())
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "persisted"
    assert data["state"] == "PERSISTED"
    assert runtime.store.signals_repository.get(tenant_id="tenant_a", dedup_id="dedup_1") is not None


def test_missing_signature_is_forbidden(client, runtime):
    resp = _deliver(client, _raw(), key=None)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "BROKER_SIGNATURE_MISSING"
    assert runtime.store.signals == {}


def test_wrong_key_is_forbidden(client):
    resp = _deliver(client, _raw(), key="attacker")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "BROKER_SIGNATURE_INVALID"


def test_unconfigured_signing_keys_return_503():
    env = {k: v for k, v in BASE_ENV.items() if "SIGNING_KEY" not in k}
    client = TestClient(create_app(build_runtime(env)))
    resp = _deliver(client, _raw(), key=None)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "BROKER_SIGNING_NOT_CONFIGURED"


def test_unsigned_worker_allowed_in_dev_mode():
    env = {k: v for k, v in BASE_ENV.items() if "SIGNING_KEY" not in k}
    env["ATTR_ALLOW_UNSIGNED_WORKER"] = "true"
    client = TestClient(create_app(build_runtime(env)))
    assert _deliver(client, _raw(), key=None).status_code == 200


def test_invalid_json_body_is_acknowledged_as_ignored(client):
    resp = _deliver(client, b"{not json")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "ignored"


def test_transient_failure_returns_500_for_redelivery(client, runtime, monkeypatch):
    def _boom(**_kwargs):
        raise RuntimeError("connection reset by peer")

    monkeypatch.setattr(runtime.store.signals_repository, "insert_if_absent", _boom)
    resp = _deliver(client, _raw(), retried=0)
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "SYNC_RETRY"
    assert error["retryable"] is True

    exhausted = _deliver(client, _raw(), retried=3)
    assert exhausted.status_code == 200
    assert exhausted.json()["data"]["status"] == "dlq"
    assert len(runtime.store.dlq_items) == 1
