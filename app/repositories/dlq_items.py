from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier

DLQ_COLUMNS = (
    "dlq_id",
    "tenant_id",
    "received_at",
    "stage",
    "error",
    "broker_message_id",
    "dedup_event_id",
    "replay_count",
    "last_replay_at",
    "last_replay_error",
    "payload",
)


class InMemoryDlqItemsRepository:
    def __init__(self, items: dict[str, dict[str, Any]]) -> None:
        self._items = items
        self._lock = threading.Lock()

    def insert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        row.setdefault("replay_count", 0)
        row.setdefault("last_replay_at", None)
        row.setdefault("last_replay_error", None)
        with self._lock:
            self._items[str(row["dlq_id"])] = row
        return dict(row)

    def get(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any] | None:
        row = self._items.get(dlq_id)
        if row is None:
            return None
        if row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._items.values() if x.get("tenant_id") == tenant_id]
        rows.sort(key=lambda x: (str(x.get("received_at", "")), str(x.get("dlq_id", ""))), reverse=True)
        return rows[: max(1, int(limit))]

    def record_replay(
        self,
        *,
        tenant_id: str,
        dlq_id: str,
        error: str | None,
        replayed_at: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._items.get(dlq_id)
            if row is None or row.get("tenant_id") != tenant_id:
                return None
            row["replay_count"] = int(row.get("replay_count") or 0) + 1
            row["last_replay_at"] = replayed_at
            row["last_replay_error"] = error
            return dict(row)


def _row_to_item(row: tuple[Any, ...]) -> dict[str, Any]:
    item = dict(zip(DLQ_COLUMNS, row))
    for key in ("received_at", "last_replay_at"):
        value = item.get(key)
        if isinstance(value, datetime):
            item[key] = value.isoformat()
    item["replay_count"] = int(item.get("replay_count") or 0)
    if not isinstance(item.get("payload"), dict):
        item["payload"] = {}
    return item


class PostgresDlqItemsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sync_dlq") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)
        self._select = ", ".join(DLQ_COLUMNS)

    def insert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        tenant_id = str(row["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                dlq_id, tenant_id, received_at, stage, error,
                broker_message_id, dedup_event_id, replay_count, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s::jsonb)
            RETURNING {self._select}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        row["dlq_id"],
                        tenant_id,
                        row.get("received_at"),
                        row.get("stage"),
                        row.get("error"),
                        row.get("broker_message_id"),
                        row.get("dedup_event_id"),
                        json.dumps(row.get("payload") or {}, ensure_ascii=True, sort_keys=True),
                    ),
                )
                inserted = cur.fetchone()
            return _row_to_item(inserted) if inserted is not None else row

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select}
            FROM {self._table_name}
            WHERE tenant_id = %s AND dlq_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, dlq_id))
                row = cur.fetchone()
            return _row_to_item(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._select}
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY received_at DESC, dlq_id DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, max(1, int(limit))))
                rows = cur.fetchall() or []
            return [_row_to_item(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def record_replay(
        self,
        *,
        tenant_id: str,
        dlq_id: str,
        error: str | None,
        replayed_at: str,
    ) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET replay_count = replay_count + 1,
                last_replay_at = %s,
                last_replay_error = %s
            WHERE tenant_id = %s AND dlq_id = %s
            RETURNING {self._select}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (replayed_at, error, tenant_id, dlq_id))
                row = cur.fetchone()
            return _row_to_item(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
