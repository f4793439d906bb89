from __future__ import annotations

import json
import threading
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier


class InMemorySignalsRepository:
    """Classified signal records keyed by (tenant, dedup id)."""

    def __init__(self, signals: dict[tuple[str, str], dict[str, Any]]) -> None:
        self._signals = signals
        self._lock = threading.Lock()

    def insert_if_absent(self, *, record: dict[str, Any]) -> bool:
        key = (str(record["tenant_id"]), str(record["dedup_id"]))
        with self._lock:
            if key in self._signals:
                return False
            self._signals[key] = dict(record)
            return True

    def discard(self, *, tenant_id: str, dedup_id: str) -> None:
        with self._lock:
            self._signals.pop((tenant_id, dedup_id), None)

    def get(self, *, tenant_id: str, dedup_id: str) -> dict[str, Any] | None:
        row = self._signals.get((tenant_id, dedup_id))
        return dict(row) if row is not None else None

    def list_for_session(self, *, tenant_id: str, session_id: str) -> list[dict[str, Any]]:
        rows = [
            dict(v)
            for (t, _), v in self._signals.items()
            if t == tenant_id and v.get("session_id") == session_id
        ]
        rows.sort(key=lambda x: str(x.get("signal_at", "")))
        return rows


class PostgresSignalsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "signals") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def insert_with_conn(self, conn: Any, *, record: dict[str, Any]) -> bool:
        """Insert inside a caller-owned transaction; False when the dedup id already exists."""
        row = dict(record)
        sql = f"""
            INSERT INTO {self._table_name} (
                tenant_id, dedup_id, session_id, signal_at, billable, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(tenant_id, dedup_id) DO NOTHING
            RETURNING dedup_id
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    str(row["tenant_id"]),
                    row["dedup_id"],
                    row.get("session_id"),
                    row.get("signal_at"),
                    bool(row.get("billable")),
                    json.dumps(row, ensure_ascii=True, sort_keys=True),
                ),
            )
            inserted = cur.fetchone()
        return inserted is not None

    def insert_if_absent(self, *, record: dict[str, Any]) -> bool:
        def _op(conn: Any) -> bool:
            return self.insert_with_conn(conn, record=record)

        return self._tx_runner.run_in_tx(tenant_id=str(record["tenant_id"]), fn=_op)

    def get(self, *, tenant_id: str, dedup_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND dedup_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, dedup_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_session(self, *, tenant_id: str, session_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND session_id = %s
            ORDER BY signal_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, session_id))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
