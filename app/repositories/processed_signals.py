from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier

PROCESSING = "processing"
PROCESSED = "processed"
FAILED = "failed"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryProcessedSignalsRepository:
    """Per-delivery ledger; a claim succeeds once unless the previous attempt failed."""

    def __init__(self, ledger: dict[str, dict[str, Any]]) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()

    def claim(self, *, tenant_id: str, event_id: str) -> bool:
        with self._lock:
            row = self._ledger.get(event_id)
            if row is not None and row.get("status") != FAILED:
                return False
            self._ledger[event_id] = {
                "event_id": event_id,
                "tenant_id": tenant_id,
                "status": PROCESSING,
                "updated_at": _utcnow_iso(),
            }
            return True

    def mark(self, *, tenant_id: str, event_id: str, status: str) -> None:
        with self._lock:
            row = self._ledger.get(event_id)
            if row is None or row.get("tenant_id") != tenant_id:
                return
            row["status"] = status
            row["updated_at"] = _utcnow_iso()

    def get(self, *, tenant_id: str, event_id: str) -> dict[str, Any] | None:
        row = self._ledger.get(event_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)


class PostgresProcessedSignalsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "processed_signals") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def claim(self, *, tenant_id: str, event_id: str) -> bool:
        sql = f"""
            INSERT INTO {self._table_name} (event_id, tenant_id, status, updated_at)
            VALUES (%s, %s, 'processing', now())
            ON CONFLICT(event_id) DO UPDATE
            SET status = 'processing',
                updated_at = now()
            WHERE {self._table_name}.status = 'failed'
            RETURNING event_id
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (event_id, tenant_id))
                row = cur.fetchone()
            return row is not None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mark(self, *, tenant_id: str, event_id: str, status: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, updated_at = now()
            WHERE tenant_id = %s AND event_id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (status, tenant_id, event_id))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, event_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT event_id, tenant_id, status, updated_at
            FROM {self._table_name}
            WHERE tenant_id = %s AND event_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, event_id))
                row = cur.fetchone()
            if row is None:
                return None
            updated_at = row[3]
            return {
                "event_id": row[0],
                "tenant_id": row[1],
                "status": row[2],
                "updated_at": updated_at.isoformat() if isinstance(updated_at, datetime) else updated_at,
            }

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
