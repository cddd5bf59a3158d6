from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction.

    Queue (pgmq) calls and lecture state queries go through the same runner,
    so both share one DSN and one driver.
    """

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 0) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    @property
    def dsn(self) -> str:
        return self._dsn

    def run_in_tx(self, fn: Callable[[Any], Any], *, statement_timeout_ms: int | None = None) -> Any:
        timeout_ms = self._statement_timeout_ms if statement_timeout_ms is None else max(0, int(statement_timeout_ms))
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            if timeout_ms > 0:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('statement_timeout', %s, true)", (str(timeout_ms),))
            result = fn(conn)
            conn.commit()
            return result


def create_tx_runner_from_env(environ: Mapping[str, str] | None = None) -> PostgresTxRunner | None:
    env = os.environ if environ is None else environ
    dsn = env.get("POSTGRES_DSN", "").strip()
    if not dsn:
        return None
    raw_timeout = str(env.get("ORCH_DB_STATEMENT_TIMEOUT_MS", "5000")).strip()
    try:
        timeout_ms = int(raw_timeout)
    except ValueError:
        timeout_ms = 5000
    return PostgresTxRunner(dsn, statement_timeout_ms=timeout_ms)
