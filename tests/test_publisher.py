from __future__ import annotations

from app.broker import InMemoryBroker
from app.errors import BrokerPublishError
from app.publisher import DEDUPLICATED, DEGRADED, QUEUED, QueuePublisher
from app.repositories.fallback_buffer import PENDING, InMemoryFallbackBufferRepository


class _DownBroker:
    def publish(self, **kwargs):
        raise BrokerPublishError("broker unavailable: connection refused")


class _BrokenFallback:
    def insert(self, *, row):
        raise RuntimeError("database is down")


def _publisher(broker, fallback=None):
    rows: dict = {}
    repo = fallback or InMemoryFallbackBufferRepository(rows)
    return QueuePublisher(broker=broker, fallback_repository=repo, destination="http://w/sync"), rows


def test_publish_queues_then_deduplicates():
    publisher, _ = _publisher(InMemoryBroker())
    first = publisher.publish(body={"tenant_id": "t"}, dedup_id="d1")
    second = publisher.publish(body={"tenant_id": "t"}, dedup_id="d1")
    assert first.status == QUEUED
    assert first.message_id
    assert second.status == DEDUPLICATED


def test_publish_failure_buffers_payload():
    publisher, rows = _publisher(_DownBroker())
    outcome = publisher.publish(body={"tenant_id": "tenant_a", "url": "https://e.com/"}, dedup_id="d1")
    assert outcome.status == DEGRADED
    assert outcome.fallback_id.startswith("fb_")
    row = rows[outcome.fallback_id]
    assert row["status"] == PENDING
    assert row["tenant_id"] == "tenant_a"
    assert row["payload"]["url"] == "https://e.com/"
    assert "connection refused" in row["error_reason"]


def test_fallback_write_failure_never_raises():
    publisher, _ = _publisher(_DownBroker(), fallback=_BrokenFallback())
    outcome = publisher.publish(body={"tenant_id": "t"}, dedup_id=None)
    assert outcome.status == DEGRADED
    assert outcome.fallback_id is None
    assert outcome.as_dict()["error"]
