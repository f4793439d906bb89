from __future__ import annotations

from datetime import UTC, datetime

import pytest

from app.repositories import (
    InMemoryDlqItemsRepository,
    InMemoryFallbackBufferRepository,
    InMemoryProcessedSignalsRepository,
    InMemoryReplayAuditRepository,
    InMemorySessionsRepository,
    InMemorySignalsRepository,
    PostgresDlqItemsRepository,
    PostgresFallbackBufferRepository,
    PostgresProcessedSignalsRepository,
    PostgresSignalsRepository,
)
from app.repositories.fallback_buffer import ERROR_REASON_MAX_CHARS, PENDING, RECOVERED, SYSTEM_TENANT
from app.repositories.processed_signals import FAILED, PROCESSED


class FakeCursor:
    def __init__(self, db: "FakeDb") -> None:
        self._db = db
        self._row = None
        self._rows: list = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._db.statements.append((" ".join(query.split()), params))
        self._row = self._db.next_row.pop(0) if self._db.next_row else None
        self._rows = list(self._db.next_rows)

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeDb:
    def __init__(self) -> None:
        self.statements: list[tuple[str, object]] = []
        self.tenants: list[str] = []
        self.next_row: list = []
        self.next_rows: list = []

    def cursor(self):
        return FakeCursor(self)

    def run_in_tx(self, *, tenant_id: str, fn):
        self.tenants.append(tenant_id)
        return fn(self)


def _dlq_item(dlq_id: str = "dlq_000000000001", tenant_id: str = "tenant_a", received_at: str = "2026-01-01T00:00:00+00:00"):
    return {
        "dlq_id": dlq_id,
        "tenant_id": tenant_id,
        "received_at": received_at,
        "stage": "PERSISTED",
        "error": "boom",
        "broker_message_id": "msg_1",
        "dedup_event_id": "evt_1",
        "payload": {"tenant_id": tenant_id, "url": "https://e.com/"},
    }


def test_inmemory_dlq_tenant_scoping_and_ordering():
    repo = InMemoryDlqItemsRepository({})
    repo.insert(item=_dlq_item("dlq_a", received_at="2026-01-01T00:00:00+00:00"))
    repo.insert(item=_dlq_item("dlq_b", received_at="2026-01-02T00:00:00+00:00"))
    repo.insert(item=_dlq_item("dlq_c", tenant_id="tenant_b"))
    assert [x["dlq_id"] for x in repo.list(tenant_id="tenant_a")] == ["dlq_b", "dlq_a"]
    assert repo.get(tenant_id="tenant_b", dlq_id="dlq_a") is None
    assert repo.get(tenant_id="tenant_a", dlq_id="dlq_a")["replay_count"] == 0


def test_inmemory_dlq_record_replay_only_increments():
    repo = InMemoryDlqItemsRepository({})
    repo.insert(item=_dlq_item())
    failed = repo.record_replay(tenant_id="tenant_a", dlq_id="dlq_000000000001", error="down", replayed_at="t1")
    ok = repo.record_replay(tenant_id="tenant_a", dlq_id="dlq_000000000001", error=None, replayed_at="t2")
    assert failed["replay_count"] == 1
    assert failed["last_replay_error"] == "down"
    assert ok["replay_count"] == 2
    assert ok["last_replay_error"] is None
    assert ok["last_replay_at"] == "t2"
    assert repo.record_replay(tenant_id="tenant_b", dlq_id="dlq_000000000001", error=None, replayed_at="t3") is None


def test_inmemory_signals_insert_if_absent():
    repo = InMemorySignalsRepository({})
    record = {"tenant_id": "t", "dedup_id": "d", "session_id": "s", "signal_at": "2026-01-01"}
    assert repo.insert_if_absent(record=record) is True
    assert repo.insert_if_absent(record=dict(record, extra=1)) is False
    assert "extra" not in repo.get(tenant_id="t", dedup_id="d")
    assert len(repo.list_for_session(tenant_id="t", session_id="s")) == 1


def test_inmemory_sessions_upsert_replaces_row():
    repo = InMemorySessionsRepository({})
    repo.upsert(session={"tenant_id": "t", "session_id": "s", "event_count": 1})
    repo.upsert(session={"tenant_id": "t", "session_id": "s", "event_count": 2})
    assert repo.get(tenant_id="t", session_id="s")["event_count"] == 2
    assert len(repo.list(tenant_id="t")) == 1


def test_inmemory_ledger_claims_once_unless_failed():
    repo = InMemoryProcessedSignalsRepository({})
    assert repo.claim(tenant_id="t", event_id="e") is True
    assert repo.claim(tenant_id="t", event_id="e") is False
    repo.mark(tenant_id="t", event_id="e", status=FAILED)
    assert repo.claim(tenant_id="t", event_id="e") is True
    repo.mark(tenant_id="t", event_id="e", status=PROCESSED)
    assert repo.claim(tenant_id="t", event_id="e") is False
    assert repo.get(tenant_id="other", event_id="e") is None


def test_inmemory_replay_audit_is_append_only():
    repo = InMemoryReplayAuditRepository([])
    repo.append(row={"tenant_id": "t", "dlq_id": "d1", "audit_id": "a1"})
    repo.append(row={"tenant_id": "t", "dlq_id": "d2", "audit_id": "a2"})
    repo.append(row={"tenant_id": "u", "dlq_id": "d1", "audit_id": "a3"})
    assert [x["audit_id"] for x in repo.list_for_dlq(tenant_id="t", dlq_id="d1")] == ["a1"]
    assert repo.latest(tenant_id="t")["audit_id"] == "a2"
    assert repo.latest(tenant_id="nobody") is None


def test_inmemory_fallback_buffer_lifecycle():
    repo = InMemoryFallbackBufferRepository({})
    repo.insert(row={"fallback_id": "fb_2", "tenant_id": "t", "payload": {}, "status": PENDING, "created_at": "2026-01-02", "error_reason": "x" * 900})
    repo.insert(row={"fallback_id": "fb_1", "tenant_id": "u", "payload": {}, "status": PENDING, "created_at": "2026-01-01", "error_reason": None})
    pending = repo.list_by_status(status=PENDING)
    assert [x["fallback_id"] for x in pending] == ["fb_1", "fb_2"]
    assert len(pending[1]["error_reason"]) == ERROR_REASON_MAX_CHARS
    assert [x["fallback_id"] for x in repo.list_by_status(status=PENDING, tenant_id="t")] == ["fb_2"]
    repo.mark_failed_attempt(fallback_id="fb_1", error_reason="still down")
    repo.mark_recovered(fallback_id="fb_2")
    remaining = repo.list_by_status(status=PENDING)
    assert [(x["fallback_id"], x["attempts"]) for x in remaining] == [("fb_1", 1)]
    assert repo.list_by_status(status=RECOVERED)[0]["recovered_at"]


def test_postgres_repositories_reject_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresDlqItemsRepository(tx_runner=FakeDb(), table_name="x;drop table y")


def test_postgres_dlq_insert_and_record_replay():
    db = FakeDb()
    repo = PostgresDlqItemsRepository(tx_runner=db)
    returned = (
        "dlq_000000000001",
        "tenant_a",
        datetime(2026, 1, 1, tzinfo=UTC),
        "PERSISTED",
        "boom",
        "msg_1",
        "evt_1",
        0,
        None,
        None,
        {"tenant_id": "tenant_a"},
    )
    db.next_row = [returned]
    item = repo.insert(item=_dlq_item())
    assert item["received_at"] == "2026-01-01T00:00:00+00:00"
    assert db.statements[0][0].startswith("INSERT INTO sync_dlq")
    assert db.tenants == ["tenant_a"]

    db.next_row = [returned[:7] + (1, datetime(2026, 1, 2, tzinfo=UTC), "down", returned[10])]
    updated = repo.record_replay(tenant_id="tenant_a", dlq_id="dlq_000000000001", error="down", replayed_at="t")
    sql, params = db.statements[-1]
    assert "SET replay_count = replay_count + 1" in sql
    assert params == ("t", "down", "tenant_a", "dlq_000000000001")
    assert updated["replay_count"] == 1
    assert updated["last_replay_error"] == "down"

    db.next_row = []
    assert repo.record_replay(tenant_id="tenant_a", dlq_id="missing", error=None, replayed_at="t") is None


def test_postgres_signals_insert_uses_on_conflict_do_nothing():
    db = FakeDb()
    repo = PostgresSignalsRepository(tx_runner=db)
    record = {"tenant_id": "t", "dedup_id": "d", "session_id": "s", "signal_at": "2026-01-01", "billable": True}
    db.next_row = [("d",)]
    assert repo.insert_if_absent(record=record) is True
    db.next_row = []
    assert repo.insert_if_absent(record=record) is False
    assert "ON CONFLICT(tenant_id, dedup_id) DO NOTHING" in db.statements[0][0]


def test_postgres_ledger_claim_reclaims_only_failed_rows():
    db = FakeDb()
    repo = PostgresProcessedSignalsRepository(tx_runner=db)
    db.next_row = [("e",)]
    assert repo.claim(tenant_id="t", event_id="e") is True
    assert "WHERE processed_signals.status = 'failed'" in db.statements[0][0]
    assert repo.claim(tenant_id="t", event_id="e") is False


def test_postgres_fallback_sweeps_use_system_tenant():
    db = FakeDb()
    repo = PostgresFallbackBufferRepository(tx_runner=db)
    db.next_rows = [("fb_1", "t", {"a": 1}, None, PENDING, 2, datetime(2026, 1, 1, tzinfo=UTC))]
    rows = repo.list_by_status(status=PENDING, limit=5)
    assert rows == [
        {
            "fallback_id": "fb_1",
            "tenant_id": "t",
            "payload": {"a": 1},
            "error_reason": None,
            "status": PENDING,
            "attempts": 2,
            "created_at": "2026-01-01T00:00:00+00:00",
        }
    ]
    assert db.statements[0][1] == (PENDING, 5)
    repo.mark_failed_attempt(fallback_id="fb_1", error_reason="y" * 700)
    assert len(db.statements[-1][1][0]) == ERROR_REASON_MAX_CHARS
    repo.mark_recovered(fallback_id="fb_1")
    assert db.statements[-1][1] == (RECOVERED, "fb_1")
    assert db.tenants == [SYSTEM_TENANT, SYSTEM_TENANT, SYSTEM_TENANT]


def test_postgres_store_persists_signal_and_session_in_one_transaction(monkeypatch):
    from app.store import PostgresBackedStore

    db = FakeDb()
    monkeypatch.setattr("app.store.PostgresTxRunner", lambda dsn: db)
    store = PostgresBackedStore(dsn="postgresql://localhost/attr", initialize_schema=False)
    record = {"tenant_id": "tenant_a", "dedup_id": "dedup_1", "session_id": "s1", "billable": True}
    session = {"tenant_id": "tenant_a", "session_id": "s1", "last_seen_at": "2026-03-01T10:00:00+00:00"}

    db.next_row = [("dedup_1",)]
    assert store.persist_signal(record=record, session=session) is True
    assert db.tenants == ["tenant_a"]
    assert [sql.split(" ")[2] for sql, _ in db.statements] == ["signals", "sessions"]

    db.statements.clear()
    assert store.persist_signal(record=record, session=session) is False
    assert len(db.statements) == 1
    assert "ON CONFLICT(tenant_id, dedup_id) DO NOTHING" in db.statements[0][0]


def test_inmemory_store_rolls_back_signal_when_session_write_fails(monkeypatch):
    from app.store import InMemoryStore

    store = InMemoryStore()

    def _boom(**_kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store.sessions_repository, "upsert", _boom)
    record = {"tenant_id": "tenant_a", "dedup_id": "dedup_1", "session_id": "s1"}
    with pytest.raises(RuntimeError):
        store.persist_signal(record=record, session={"tenant_id": "tenant_a", "session_id": "s1"})
    assert store.signals == {}
