from __future__ import annotations

import json
import os
import re
import threading
from collections.abc import Mapping
from typing import Any

from orchestrator.db.postgres import PostgresTxRunner, create_tx_runner_from_env

LECTURE_STATUSES = ("pending", "processing", "completed", "failed")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _validate_status(status: str) -> str:
    if status not in LECTURE_STATUSES:
        raise ValueError(f"invalid lecture status: {status}")
    return status


class InMemoryLectureStateRepository:
    """Lecture status rows plus per-step result rows, keyed by result table."""

    def __init__(
        self,
        lectures: dict[str, dict[str, Any]] | None = None,
        results: dict[str, set[tuple[str, int]]] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._lectures = lectures if lectures is not None else {}
        self._results = results if results is not None else {}

    def create_lecture(self, *, lecture_id: str, status: str = "pending") -> dict[str, Any]:
        with self._lock:
            row = {"id": lecture_id, "status": _validate_status(status), "error_details": None}
            self._lectures[lecture_id] = row
            return dict(row)

    def get_lecture(self, *, lecture_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._lectures.get(lecture_id)
            return dict(row) if row is not None else None

    def set_status(self, *, lecture_id: str, status: str) -> bool:
        with self._lock:
            row = self._lectures.get(lecture_id)
            if row is None:
                return False
            row["status"] = _validate_status(status)
            return True

    def mark_failed(self, *, lecture_id: str, error_details: dict[str, Any]) -> bool:
        with self._lock:
            row = self._lectures.get(lecture_id)
            if row is None:
                return False
            row["status"] = "failed"
            row["error_details"] = dict(error_details)
            return True

    def record_result(self, *, result_table: str, lecture_id: str, slide_number: int) -> None:
        with self._lock:
            self._results.setdefault(_validate_identifier(result_table), set()).add((lecture_id, int(slide_number)))

    def result_exists(self, *, result_table: str, lecture_id: str, slide_number: int) -> bool:
        with self._lock:
            rows = self._results.get(_validate_identifier(result_table), set())
            return (lecture_id, int(slide_number)) in rows

    def reset(self) -> None:
        with self._lock:
            self._lectures.clear()
            self._results.clear()


class PostgresLectureStateRepository:
    """Lecture state on postgres; result tables are per stage (e.g. ``explanations``)."""

    def __init__(self, *, tx_runner: PostgresTxRunner, lectures_table: str = "lectures") -> None:
        self._tx_runner = tx_runner
        self._lectures_table = _validate_identifier(lectures_table)

    def get_lecture(self, *, lecture_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT id, status, error_details
            FROM {self._lectures_table}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (lecture_id,))
                row = cur.fetchone()
            if row is None:
                return None
            details = row[2]
            if isinstance(details, str):
                details = json.loads(details)
            return {"id": str(row[0]), "status": row[1], "error_details": details}

        return self._tx_runner.run_in_tx(_op)

    def set_status(self, *, lecture_id: str, status: str) -> bool:
        sql = f"UPDATE {self._lectures_table} SET status = %s WHERE id = %s"
        status = _validate_status(status)

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (status, lecture_id))
                return int(cur.rowcount or 0) > 0

        return self._tx_runner.run_in_tx(_op)

    def mark_failed(self, *, lecture_id: str, error_details: dict[str, Any]) -> bool:
        sql = f"""
            UPDATE {self._lectures_table}
            SET status = %s, error_details = %s::jsonb
            WHERE id = %s
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    ("failed", json.dumps(error_details, ensure_ascii=True, sort_keys=True), lecture_id),
                )
                return int(cur.rowcount or 0) > 0

        return self._tx_runner.run_in_tx(_op)

    def result_exists(self, *, result_table: str, lecture_id: str, slide_number: int) -> bool:
        sql = f"""
            SELECT 1
            FROM {_validate_identifier(result_table)}
            WHERE lecture_id = %s AND slide_number = %s
            LIMIT 1
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (lecture_id, int(slide_number)))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(_op)


def create_state_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    tx_runner: PostgresTxRunner | None = None,
) -> InMemoryLectureStateRepository | PostgresLectureStateRepository:
    env = os.environ if environ is None else environ
    backend = env.get("ORCH_STATE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryLectureStateRepository()
    if backend == "postgres":
        if tx_runner is None:
            tx_runner = create_tx_runner_from_env(env)
        if tx_runner is None:
            raise ValueError("POSTGRES_DSN must be set when ORCH_STATE_BACKEND=postgres")
        table = env.get("ORCH_LECTURES_TABLE", "lectures").strip() or "lectures"
        return PostgresLectureStateRepository(tx_runner=tx_runner, lectures_table=table)
    raise RuntimeError(f"unsupported state backend: {backend}")
