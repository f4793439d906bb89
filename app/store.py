from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository
from app.repositories.fallback_buffer import (
    SYSTEM_TENANT,
    InMemoryFallbackBufferRepository,
    PostgresFallbackBufferRepository,
)
from app.repositories.processed_signals import (
    InMemoryProcessedSignalsRepository,
    PostgresProcessedSignalsRepository,
)
from app.repositories.replay_audit import InMemoryReplayAuditRepository, PostgresReplayAuditRepository
from app.repositories.sessions import InMemorySessionsRepository, PostgresSessionsRepository
from app.repositories.signals import InMemorySignalsRepository, PostgresSignalsRepository
from app.settings import true_stack_required

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
      tenant_id TEXT NOT NULL,
      session_id TEXT NOT NULL,
      last_seen_at TIMESTAMPTZ,
      payload JSONB NOT NULL,
      PRIMARY KEY (tenant_id, session_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signals (
      tenant_id TEXT NOT NULL,
      dedup_id TEXT NOT NULL,
      session_id TEXT,
      signal_at TIMESTAMPTZ,
      billable BOOLEAN NOT NULL,
      payload JSONB NOT NULL,
      PRIMARY KEY (tenant_id, dedup_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_signals (
      event_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      status TEXT NOT NULL,
      updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_dlq (
      dlq_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      received_at TIMESTAMPTZ NOT NULL,
      stage TEXT NOT NULL,
      error TEXT NOT NULL,
      broker_message_id TEXT,
      dedup_event_id TEXT,
      replay_count INTEGER NOT NULL DEFAULT 0,
      last_replay_at TIMESTAMPTZ,
      last_replay_error TEXT,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_dlq_replay_audit (
      audit_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      dlq_id TEXT NOT NULL,
      replayed_by_user_id TEXT,
      replayed_by_email TEXT,
      replay_count_after INTEGER NOT NULL,
      error_if_failed TEXT,
      occurred_at TIMESTAMPTZ NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingest_fallback_buffer (
      fallback_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      payload JSONB NOT NULL,
      error_reason TEXT,
      status TEXT NOT NULL,
      attempts INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ NOT NULL,
      recovered_at TIMESTAMPTZ
    )
    """,
)


class InMemoryStore:
    """Repository wiring for the pipeline; the in-memory variant backs dev and tests."""

    backend_name = "memory"

    def __init__(self) -> None:
        self.sessions: dict[tuple[str, str], dict[str, Any]] = {}
        self.signals: dict[tuple[str, str], dict[str, Any]] = {}
        self.processed_signals: dict[str, dict[str, Any]] = {}
        self.dlq_items: dict[str, dict[str, Any]] = {}
        self.replay_audit_rows: list[dict[str, Any]] = []
        self.fallback_rows: dict[str, dict[str, Any]] = {}
        self._audit_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.sessions_repository = InMemorySessionsRepository(self.sessions)
        self.signals_repository = InMemorySignalsRepository(self.signals)
        self.processed_signals_repository = InMemoryProcessedSignalsRepository(self.processed_signals)
        self.dlq_repository = InMemoryDlqItemsRepository(self.dlq_items)
        self.replay_audit_repository = InMemoryReplayAuditRepository(self.replay_audit_rows)
        self.fallback_repository = InMemoryFallbackBufferRepository(self.fallback_rows)

    def reset(self) -> None:
        self.sessions.clear()
        self.signals.clear()
        self.processed_signals.clear()
        self.dlq_items.clear()
        self.replay_audit_rows.clear()
        self.fallback_rows.clear()

    def persist_signal(self, *, record: dict[str, Any], session: dict[str, Any]) -> bool:
        """Write the signal record and its session as one unit.

        Returns False, and leaves the session untouched, when the dedup id
        was already persisted. A failed session write removes the record
        again, so a redelivery persists both.
        """
        with self._persist_lock:
            inserted = self.signals_repository.insert_if_absent(record=record)
            if not inserted:
                return False
            try:
                self.sessions_repository.upsert(session=session)
            except Exception:
                self.signals_repository.discard(
                    tenant_id=str(record["tenant_id"]),
                    dedup_id=str(record["dedup_id"]),
                )
                raise
            return True

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def new_dlq_id() -> str:
        return f"dlq_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _compute_audit_hash(*, row: dict[str, Any], prev_hash: str) -> str:
        material = {
            key: value
            for key, value in row.items()
            if key not in {"audit_hash", "prev_hash"}
        }
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def append_replay_audit(self, *, row: dict[str, Any]) -> dict[str, Any]:
        entry = dict(row)
        tenant_id = str(entry["tenant_id"])
        if not entry.get("audit_id"):
            entry["audit_id"] = f"audit_{uuid.uuid4().hex[:12]}"
        if not entry.get("occurred_at"):
            entry["occurred_at"] = self._utcnow_iso()
        with self._audit_lock:
            latest = self.replay_audit_repository.latest(tenant_id=tenant_id)
            prev_hash = str((latest or {}).get("audit_hash") or "")
            entry["prev_hash"] = prev_hash
            entry["audit_hash"] = self._compute_audit_hash(row=entry, prev_hash=prev_hash)
            return self.replay_audit_repository.append(row=entry)

    def verify_replay_audit_integrity(self, *, tenant_id: str) -> dict[str, Any]:
        rows = self.replay_audit_repository.list_for_tenant(tenant_id=tenant_id)
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(row=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }


class PostgresBackedStore(InMemoryStore):
    """Durable store: every repository writes through ``PostgresTxRunner``."""

    backend_name = "postgres"

    def __init__(self, *, dsn: str, initialize_schema: bool = True) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = PostgresTxRunner(dsn.strip())
        super().__init__()
        if initialize_schema:
            self._initialize_database()

    def _bind_repositories(self) -> None:
        self.sessions_repository = PostgresSessionsRepository(tx_runner=self._tx_runner)
        self.signals_repository = PostgresSignalsRepository(tx_runner=self._tx_runner)
        self.processed_signals_repository = PostgresProcessedSignalsRepository(tx_runner=self._tx_runner)
        self.dlq_repository = PostgresDlqItemsRepository(tx_runner=self._tx_runner)
        self.replay_audit_repository = PostgresReplayAuditRepository(tx_runner=self._tx_runner)
        self.fallback_repository = PostgresFallbackBufferRepository(tx_runner=self._tx_runner)

    def persist_signal(self, *, record: dict[str, Any], session: dict[str, Any]) -> bool:
        def _op(conn: Any) -> bool:
            if not self.signals_repository.insert_with_conn(conn, record=record):
                return False
            self.sessions_repository.upsert_with_conn(conn, session=session)
            return True

        return self._tx_runner.run_in_tx(tenant_id=str(record["tenant_id"]), fn=_op)

    def _initialize_database(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)

        self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT, fn=_op)
        logger.info("postgres_schema_ready tables=%s", len(SCHEMA_STATEMENTS))


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("ATTR_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("ATTR_STORE_BACKEND must be postgres when ATTR_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryStore()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when ATTR_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn)
    raise RuntimeError(f"unsupported store backend: {backend}")
