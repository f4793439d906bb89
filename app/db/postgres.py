from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

UNIQUE_VIOLATION = "23505"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for ATTR_STORE_BACKEND=postgres; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def is_unique_violation(exc: BaseException) -> bool:
    code = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    if code == UNIQUE_VIOLATION:
        return True
    return "duplicate key value" in str(exc).lower()


class PostgresTxRunner:
    """Run one callback inside a PostgreSQL transaction scoped to a tenant."""

    def __init__(self, dsn: str, *, tenant_setting: str = "app.current_tenant", connect_timeout_s: int = 5) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        if not re.fullmatch(r"[a-z_]+\.[a-z_]+", tenant_setting):
            raise ValueError(f"invalid tenant setting name: {tenant_setting}")
        self._dsn = dsn.strip()
        self._tenant_setting = tenant_setting
        self._connect_timeout_s = max(1, int(connect_timeout_s))

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, connect_timeout=self._connect_timeout_s) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config(%s, %s, true)", (self._tenant_setting, tenant_id))
            result = fn(conn)
            conn.commit()
            return result
