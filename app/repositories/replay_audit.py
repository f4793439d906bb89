from __future__ import annotations

import json
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryReplayAuditRepository:
    """Append-only; rows are never updated or removed."""

    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def append(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        self._rows.append(item)
        return dict(item)

    def list_for_dlq(self, *, tenant_id: str, dlq_id: str) -> list[dict[str, Any]]:
        return [
            dict(x)
            for x in self._rows
            if x.get("tenant_id") == tenant_id and x.get("dlq_id") == dlq_id
        ]

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._rows if x.get("tenant_id") == tenant_id]

    def latest(self, *, tenant_id: str) -> dict[str, Any] | None:
        for row in reversed(self._rows):
            if row.get("tenant_id") == tenant_id:
                return dict(row)
        return None


class PostgresReplayAuditRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sync_dlq_replay_audit") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, tenant_id, dlq_id, replayed_by_user_id, replayed_by_email,
                replay_count_after, error_if_failed, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        tenant_id,
                        item.get("dlq_id"),
                        item.get("replayed_by_user_id"),
                        item.get("replayed_by_email"),
                        int(item.get("replay_count_after") or 0),
                        item.get("error_if_failed"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _select_payloads(self, *, tenant_id: str, where: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE {where}
            ORDER BY occurred_at ASC, audit_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_dlq(self, *, tenant_id: str, dlq_id: str) -> list[dict[str, Any]]:
        return self._select_payloads(
            tenant_id=tenant_id,
            where="tenant_id = %s AND dlq_id = %s",
            params=(tenant_id, dlq_id),
        )

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return self._select_payloads(tenant_id=tenant_id, where="tenant_id = %s", params=(tenant_id,))

    def latest(self, *, tenant_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY occurred_at DESC, audit_id DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
