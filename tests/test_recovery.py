from __future__ import annotations

from app.errors import BrokerPublishError
from app.publisher import DEGRADED
from app.recovery import RECOVERY_LOCK_NAME
from app.repositories.fallback_buffer import PENDING, RECOVERED


class _DownBroker:
    def publish(self, **kwargs):
        raise BrokerPublishError("broker unavailable: connection refused")


class _FlakyBroker:
    """Fails every publish whose body carries ``fail: true``."""

    def __init__(self, inner):
        self.inner = inner

    def publish(self, **kwargs):
        if kwargs["body"].get("fail"):
            raise BrokerPublishError("broker HTTP 500: nope", status=500)
        return self.inner.publish(**kwargs)


def _buffer(runtime, monkeypatch, bodies):
    real = runtime.publisher.broker
    monkeypatch.setattr(runtime.publisher, "broker", _DownBroker())
    for body in bodies:
        assert runtime.publisher.publish(body=body, dedup_id=body.get("dedup_id")).status == DEGRADED
    monkeypatch.setattr(runtime.publisher, "broker", real)


def test_recovery_republishes_pending_rows(runtime, monkeypatch):
    _buffer(
        runtime,
        monkeypatch,
        [
            {"tenant_id": "tenant_a", "url": "https://e.com/1", "dedup_id": "d1"},
            {"tenant_id": "tenant_b", "url": "https://e.com/2", "dedup_id": "d2"},
        ],
    )
    result = runtime.recovery.run_once()
    assert result == {"ok": True, "claimed": 2, "recovered": 2, "failed": 0}
    assert runtime.broker.pending_count() == 2
    assert len(runtime.store.fallback_repository.list_by_status(status=RECOVERED)) == 2
    assert runtime.store.fallback_repository.list_by_status(status=PENDING) == []


def test_recovery_keeps_failed_rows_pending(runtime, monkeypatch):
    _buffer(
        runtime,
        monkeypatch,
        [
            {"tenant_id": "tenant_a", "url": "https://e.com/1", "dedup_id": "d1"},
            {"tenant_id": "tenant_a", "url": "https://e.com/2", "dedup_id": "d2", "fail": True},
        ],
    )
    monkeypatch.setattr(runtime.publisher, "broker", _FlakyBroker(runtime.broker))
    result = runtime.recovery.run_once()
    assert result["recovered"] == 1
    assert result["failed"] == 1
    pending = runtime.store.fallback_repository.list_by_status(status=PENDING)
    assert len(pending) == 1
    assert pending[0]["attempts"] == 1
    assert "HTTP 500" in pending[0]["error_reason"]


def test_recovery_skips_when_lock_is_held(runtime):
    assert runtime.lock.try_acquire(RECOVERY_LOCK_NAME, 60) is True
    assert runtime.recovery.run_once() == {"ok": True, "skipped": True, "reason": "lock_held"}


def test_recovery_releases_lock_after_run(runtime):
    assert runtime.recovery.run_once() == {"ok": True, "claimed": 0, "recovered": 0, "failed": 0}
    assert runtime.lock.try_acquire(RECOVERY_LOCK_NAME, 60) is True


def test_recovery_respects_batch_size(runtime, monkeypatch):
    _buffer(
        runtime,
        monkeypatch,
        [{"tenant_id": "t", "url": f"https://e.com/{i}", "dedup_id": f"d{i}"} for i in range(5)],
    )
    runtime.recovery.batch_size = 2
    assert runtime.recovery.run_once()["claimed"] == 2
    assert len(runtime.store.fallback_repository.list_by_status(status=PENDING)) == 3
