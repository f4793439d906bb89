from __future__ import annotations

import json
from typing import Any

from app.db.postgres import PostgresTxRunner, validate_identifier


class InMemorySessionsRepository:
    def __init__(self, sessions: dict[tuple[str, str], dict[str, Any]]) -> None:
        self._sessions = sessions

    def get(self, *, tenant_id: str, session_id: str) -> dict[str, Any] | None:
        row = self._sessions.get((tenant_id, session_id))
        return dict(row) if row is not None else None

    def upsert(self, *, session: dict[str, Any]) -> dict[str, Any]:
        row = dict(session)
        self._sessions[(str(row["tenant_id"]), str(row["session_id"]))] = row
        return dict(row)

    def list(self, *, tenant_id: str) -> list[dict[str, Any]]:
        rows = [dict(v) for (t, _), v in self._sessions.items() if t == tenant_id]
        rows.sort(key=lambda x: str(x.get("session_id", "")))
        return rows


class PostgresSessionsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sessions") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def get(self, *, tenant_id: str, session_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND session_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, session_id))
                row = cur.fetchone()
            if row is None:
                return None
            payload = row[0]
            return payload if isinstance(payload, dict) else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def upsert_with_conn(self, conn: Any, *, session: dict[str, Any]) -> dict[str, Any]:
        row = dict(session)
        sql = f"""
            INSERT INTO {self._table_name} (
                tenant_id, session_id, last_seen_at, payload
            ) VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT(tenant_id, session_id) DO UPDATE
            SET last_seen_at = EXCLUDED.last_seen_at,
                payload = EXCLUDED.payload
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    str(row["tenant_id"]),
                    row["session_id"],
                    row.get("last_seen_at"),
                    json.dumps(row, ensure_ascii=True, sort_keys=True),
                ),
            )
        return row

    def upsert(self, *, session: dict[str, Any]) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            return self.upsert_with_conn(conn, session=session)

        return self._tx_runner.run_in_tx(tenant_id=str(session["tenant_id"]), fn=_op)

    def list(self, *, tenant_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY session_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
