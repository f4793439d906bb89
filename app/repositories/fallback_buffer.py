from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier

PENDING = "PENDING"
RECOVERED = "RECOVERED"
ERROR_REASON_MAX_CHARS = 500

# Tenant context used by cross-tenant maintenance sweeps.
SYSTEM_TENANT = "__system__"


def _truncate(reason: str | None) -> str | None:
    if reason is None:
        return None
    return reason[:ERROR_REASON_MAX_CHARS]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryFallbackBufferRepository:
    def __init__(self, rows: dict[str, dict[str, Any]]) -> None:
        self._rows = rows
        self._lock = threading.Lock()

    def insert(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        item["error_reason"] = _truncate(item.get("error_reason"))
        item.setdefault("attempts", 0)
        with self._lock:
            self._rows[str(item["fallback_id"])] = item
        return dict(item)

    def list_by_status(self, *, status: str, limit: int = 100, tenant_id: str | None = None) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._rows.values()
            if x.get("status") == status and (tenant_id is None or x.get("tenant_id") == tenant_id)
        ]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("fallback_id", ""))))
        return rows[: max(1, int(limit))]

    def mark_recovered(self, *, fallback_id: str) -> None:
        with self._lock:
            row = self._rows.get(fallback_id)
            if row is None:
                return
            row["status"] = RECOVERED
            row["recovered_at"] = _utcnow_iso()

    def mark_failed_attempt(self, *, fallback_id: str, error_reason: str) -> None:
        with self._lock:
            row = self._rows.get(fallback_id)
            if row is None:
                return
            row["attempts"] = int(row.get("attempts") or 0) + 1
            row["error_reason"] = _truncate(error_reason)


class PostgresFallbackBufferRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "ingest_fallback_buffer") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def insert(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        item["error_reason"] = _truncate(item.get("error_reason"))
        item.setdefault("attempts", 0)
        tenant_id = str(item.get("tenant_id") or SYSTEM_TENANT)
        sql = f"""
            INSERT INTO {self._table_name} (
                fallback_id, tenant_id, payload, error_reason, status, attempts, created_at
            ) VALUES (%s, %s, %s::jsonb, %s, %s, 0, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["fallback_id"],
                        tenant_id,
                        json.dumps(item.get("payload") or {}, ensure_ascii=True, sort_keys=True),
                        item["error_reason"],
                        item.get("status") or PENDING,
                        item.get("created_at"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_by_status(self, *, status: str, limit: int = 100, tenant_id: str | None = None) -> list[dict[str, Any]]:
        where = "status = %s"
        params: list[Any] = [status]
        if tenant_id is not None:
            where += " AND tenant_id = %s"
            params.append(tenant_id)
        params.append(max(1, int(limit)))
        sql = f"""
            SELECT fallback_id, tenant_id, payload, error_reason, status, attempts, created_at
            FROM {self._table_name}
            WHERE {where}
            ORDER BY created_at ASC, fallback_id ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                created_at = row[6]
                out.append(
                    {
                        "fallback_id": row[0],
                        "tenant_id": row[1],
                        "payload": row[2] if isinstance(row[2], dict) else {},
                        "error_reason": row[3],
                        "status": row[4],
                        "attempts": int(row[5] or 0),
                        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
                    }
                )
            return out

        return self._tx_runner.run_in_tx(tenant_id=tenant_id or SYSTEM_TENANT, fn=_op)

    def mark_recovered(self, *, fallback_id: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, recovered_at = now()
            WHERE fallback_id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (RECOVERED, fallback_id))

        self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT, fn=_op)

    def mark_failed_attempt(self, *, fallback_id: str, error_reason: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET attempts = attempts + 1, error_reason = %s
            WHERE fallback_id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (_truncate(error_reason), fallback_id))

        self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT, fn=_op)
