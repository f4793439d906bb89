import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.runtime import build_runtime

# 2026-03-01T10:00:00Z, aligned to every dedup time bucket.
FROZEN_NOW_MS = 1_772_359_200_000

JWT_SECRET = "jwt_test_secret"
BROKER_SIGNING_KEY = "broker_current_key"

BASE_ENV = {
    "JWT_SHARED_SECRET": JWT_SECRET,
    "JWT_ISSUER": "test-issuer",
    "JWT_AUDIENCE": "test-audience",
    "JWT_REQUIRED_CLAIMS": "tenant_id,sub,exp",
    "ATTR_BROKER_CURRENT_SIGNING_KEY": BROKER_SIGNING_KEY,
    "ATTR_BROKER_NEXT_SIGNING_KEY": "broker_next_key",
    "ATTR_STORE_BACKEND": "memory",
    "ATTR_CACHE_BACKEND": "memory",
    "ATTR_BROKER_BACKEND": "memory",
}


def issue_token(*, tenant_id: str, role: str | None = "admin", secret: str = JWT_SECRET) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "email": f"ops@{tenant_id}.example",
        "tenant_id": tenant_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/admin/"):
            if "Authorization" not in headers:
                tenant_id = headers.get("x-tenant-id") or "tenant_default"
                token = issue_token(secret=self._jwt_secret, tenant_id=str(tenant_id))
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def security_env(monkeypatch: pytest.MonkeyPatch):
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("ATTR_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("ATTR_WORKER_CONCURRENCY_LIMIT", raising=False)
    yield


@pytest.fixture(autouse=True)
def frozen_dedup_clock(monkeypatch: pytest.MonkeyPatch):
    clock = {"now_ms": FROZEN_NOW_MS}
    monkeypatch.setattr("app.dedup.server_now_ms", lambda: clock["now_ms"])
    return clock


@pytest.fixture
def runtime():
    return build_runtime(dict(BASE_ENV))


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)
