from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from orchestrator.db.postgres import PostgresTxRunner, create_tx_runner_from_env


@dataclass
class QueueMessage:
    message_id: int
    queue_name: str
    body: str
    read_count: int = 0
    enqueued_at: str | None = None


def _encode_body(payload: Any) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def _message_ids(message_ids: Iterable[int]) -> list[int]:
    return [int(x) for x in message_ids]


@dataclass
class _Entry:
    message_id: int
    body: str
    enqueued_at: str
    visible_at: float
    read_count: int = 0


class InMemoryQueueBackend:
    """Visibility-timeout queue kept in process memory.

    Reads hide messages for ``visibility_timeout_s``; anything not deleted
    before then is delivered again.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
        poll_interval_s: float = 0.1,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._poll_interval_s = max(0.001, float(poll_interval_s))
        self._queues: dict[str, dict[int, _Entry]] = {}
        self._next_id: dict[str, int] = {}

    def send(self, queue_name: str, payload: Any) -> int:
        with self._lock:
            message_id = self._next_id.get(queue_name, 0) + 1
            self._next_id[queue_name] = message_id
            self._queues.setdefault(queue_name, {})[message_id] = _Entry(
                message_id=message_id,
                body=_encode_body(payload),
                enqueued_at=datetime.now(UTC).isoformat(),
                visible_at=self._clock(),
            )
            return message_id

    def _read_visible(self, queue_name: str, *, max_messages: int, visibility_timeout_s: float) -> list[QueueMessage]:
        with self._lock:
            now = self._clock()
            out: list[QueueMessage] = []
            for entry in self._queues.get(queue_name, {}).values():
                if len(out) >= max_messages:
                    break
                if entry.visible_at > now:
                    continue
                entry.visible_at = now + max(0.0, float(visibility_timeout_s))
                entry.read_count += 1
                out.append(
                    QueueMessage(
                        message_id=entry.message_id,
                        queue_name=queue_name,
                        body=entry.body,
                        read_count=entry.read_count,
                        enqueued_at=entry.enqueued_at,
                    )
                )
            return out

    def poll(
        self,
        queue_name: str,
        *,
        max_wait_s: float,
        max_messages: int,
        visibility_timeout_s: float = 30,
    ) -> list[QueueMessage]:
        deadline = self._clock() + max(0.0, float(max_wait_s))
        limit = max(1, int(max_messages))
        while True:
            batch = self._read_visible(queue_name, max_messages=limit, visibility_timeout_s=visibility_timeout_s)
            if batch:
                return batch
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            self._sleep(min(self._poll_interval_s, remaining))

    def delete(self, queue_name: str, message_ids: Iterable[int]) -> int:
        with self._lock:
            queue = self._queues.get(queue_name, {})
            deleted = 0
            for message_id in _message_ids(message_ids):
                if queue.pop(message_id, None) is not None:
                    deleted += 1
            return deleted

    def pending_count(self, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, {}))

    def peek(self, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            return [
                QueueMessage(
                    message_id=e.message_id,
                    queue_name=queue_name,
                    body=e.body,
                    read_count=e.read_count,
                    enqueued_at=e.enqueued_at,
                )
                for e in self._queues.get(queue_name, {}).values()
            ]

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._next_id.clear()


class SqliteQueueBackend:
    """SQLite-backed queue used for local persistence and replay tests."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
        poll_interval_s: float = 0.1,
    ) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or time.time
        self._sleep = sleep or time.sleep
        self._poll_interval_s = max(0.001, float(poll_interval_s))
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages (
                    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    body TEXT NOT NULL,
                    read_count INTEGER NOT NULL DEFAULT 0,
                    visible_at REAL NOT NULL,
                    enqueued_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_messages_visible
                ON queue_messages(queue_name, visible_at, message_id)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row, *, read_count: int) -> QueueMessage:
        return QueueMessage(
            message_id=int(row["message_id"]),
            queue_name=row["queue_name"],
            body=row["body"],
            read_count=read_count,
            enqueued_at=row["enqueued_at"],
        )

    def send(self, queue_name: str, payload: Any) -> int:
        with self._lock:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO queue_messages(queue_name, body, read_count, visible_at, enqueued_at)
                    VALUES (?, ?, 0, ?, ?)
                    """,
                    (queue_name, _encode_body(payload), self._clock(), datetime.now(UTC).isoformat()),
                )
                conn.commit()
                return int(cur.lastrowid)

    def _read_visible(self, queue_name: str, *, max_messages: int, visibility_timeout_s: float) -> list[QueueMessage]:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                now = self._clock()
                rows = conn.execute(
                    """
                    SELECT message_id, queue_name, body, read_count, enqueued_at
                    FROM queue_messages
                    WHERE queue_name = ? AND visible_at <= ?
                    ORDER BY message_id ASC
                    LIMIT ?
                    """,
                    (queue_name, now, max_messages),
                ).fetchall()
                out: list[QueueMessage] = []
                for row in rows:
                    read_count = int(row["read_count"]) + 1
                    conn.execute(
                        """
                        UPDATE queue_messages
                        SET read_count = ?, visible_at = ?
                        WHERE message_id = ?
                        """,
                        (read_count, now + max(0.0, float(visibility_timeout_s)), row["message_id"]),
                    )
                    out.append(self._row_to_message(row, read_count=read_count))
                conn.commit()
                return out

    def poll(
        self,
        queue_name: str,
        *,
        max_wait_s: float,
        max_messages: int,
        visibility_timeout_s: float = 30,
    ) -> list[QueueMessage]:
        deadline = self._clock() + max(0.0, float(max_wait_s))
        limit = max(1, int(max_messages))
        while True:
            batch = self._read_visible(queue_name, max_messages=limit, visibility_timeout_s=visibility_timeout_s)
            if batch:
                return batch
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            self._sleep(min(self._poll_interval_s, remaining))

    def delete(self, queue_name: str, message_ids: Iterable[int]) -> int:
        ids = _message_ids(message_ids)
        if not ids:
            return 0
        with self._lock:
            with self._connect() as conn:
                placeholders = ",".join("?" for _ in ids)
                cur = conn.execute(
                    f"DELETE FROM queue_messages WHERE queue_name = ? AND message_id IN ({placeholders})",
                    (queue_name, *ids),
                )
                conn.commit()
                return int(cur.rowcount)

    def pending_count(self, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(1) AS cnt FROM queue_messages WHERE queue_name = ?",
                    (queue_name,),
                ).fetchone()
                return int(row["cnt"]) if row is not None else 0

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM queue_messages")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for ORCH_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


# Claims visible ids and moves their visibility forward in a single server-side step.
_REDIS_CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[3]))
for _, id in ipairs(ids) do
    redis.call('ZADD', KEYS[1], ARGV[2], id)
end
return ids
"""


class RedisQueueBackend:
    """Redis-backed queue; a sorted set per queue scores message ids by visibility time."""

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "orch",
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
        poll_interval_s: float = 0.1,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "orch"
        self._lock = threading.RLock()
        self._clock = clock or time.time
        self._sleep = sleep or time.sleep
        self._poll_interval_s = max(0.001, float(poll_interval_s))
        redis = _import_redis()
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _seq_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:seq"

    def _visible_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:visible"

    def _msg_key(self, queue_name: str, message_id: int) -> str:
        return f"{self._namespace}:queue:{queue_name}:msg:{message_id}"

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:names"

    def _load_msg(self, queue_name: str, message_id: int) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(queue_name, message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, queue_name: str, message_id: int, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(queue_name, message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    def send(self, queue_name: str, payload: Any) -> int:
        with self._lock:
            message_id = int(self._client.incr(self._seq_key(queue_name)))
            self._save_msg(
                queue_name,
                message_id,
                {
                    "body": _encode_body(payload),
                    "read_count": 0,
                    "enqueued_at": datetime.now(UTC).isoformat(),
                },
            )
            self._client.zadd(self._visible_key(queue_name), {str(message_id): self._clock()})
            self._client.sadd(self._registry_key(), queue_name)
            return message_id

    def _read_visible(self, queue_name: str, *, max_messages: int, visibility_timeout_s: float) -> list[QueueMessage]:
        with self._lock:
            now = self._clock()
            visible_key = self._visible_key(queue_name)
            claimed = self._client.eval(
                _REDIS_CLAIM_SCRIPT,
                1,
                visible_key,
                now,
                now + max(0.0, float(visibility_timeout_s)),
                max_messages,
            )
            out: list[QueueMessage] = []
            for message_id in sorted(int(x) for x in claimed or []):
                data = self._load_msg(queue_name, message_id)
                if data is None:
                    self._client.zrem(visible_key, str(message_id))
                    continue
                data["read_count"] = int(data.get("read_count", 0)) + 1
                self._save_msg(queue_name, message_id, data)
                out.append(
                    QueueMessage(
                        message_id=message_id,
                        queue_name=queue_name,
                        body=str(data.get("body", "")),
                        read_count=int(data["read_count"]),
                        enqueued_at=str(data.get("enqueued_at", "")) or None,
                    )
                )
            return out

    def poll(
        self,
        queue_name: str,
        *,
        max_wait_s: float,
        max_messages: int,
        visibility_timeout_s: float = 30,
    ) -> list[QueueMessage]:
        deadline = self._clock() + max(0.0, float(max_wait_s))
        limit = max(1, int(max_messages))
        while True:
            batch = self._read_visible(queue_name, max_messages=limit, visibility_timeout_s=visibility_timeout_s)
            if batch:
                return batch
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            self._sleep(min(self._poll_interval_s, remaining))

    def delete(self, queue_name: str, message_ids: Iterable[int]) -> int:
        with self._lock:
            deleted = 0
            for message_id in _message_ids(message_ids):
                removed = int(self._client.zrem(self._visible_key(queue_name), str(message_id)) or 0)
                self._client.delete(self._msg_key(queue_name, message_id))
                deleted += 1 if removed else 0
            return deleted

    def pending_count(self, queue_name: str) -> int:
        with self._lock:
            return int(self._client.zcard(self._visible_key(queue_name)))

    def reset(self) -> None:
        with self._lock:
            for queue_name in self._client.smembers(self._registry_key()):
                visible_key = self._visible_key(queue_name)
                for member in self._client.zrangebyscore(visible_key, "-inf", "+inf"):
                    self._client.delete(self._msg_key(queue_name, int(member)))
                self._client.delete(visible_key, self._seq_key(queue_name))
            self._client.delete(self._registry_key())


class PgmqQueueBackend:
    """Queue on the Postgres ``pgmq`` extension; shares the state store's DSN."""

    def __init__(self, *, tx_runner: PostgresTxRunner, poll_interval_ms: int = 100) -> None:
        self._tx_runner = tx_runner
        self._poll_interval_ms = max(10, int(poll_interval_ms))

    def create_queue(self, queue_name: str) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("SELECT pgmq.create(%s)", (queue_name,))

        self._tx_runner.run_in_tx(_op)

    def send(self, queue_name: str, payload: Any) -> int:
        body = _encode_body(payload)

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM pgmq.send(%s, %s::jsonb)", (queue_name, body))
                row = cur.fetchone()
            return int(row[0])

        return self._tx_runner.run_in_tx(_op)

    def poll(
        self,
        queue_name: str,
        *,
        max_wait_s: float,
        max_messages: int,
        visibility_timeout_s: float = 30,
    ) -> list[QueueMessage]:
        sql = """
            SELECT msg_id, read_ct, enqueued_at, message
            FROM pgmq.read_with_poll(%s, %s, %s, %s, %s)
        """
        params = (
            queue_name,
            max(0, int(visibility_timeout_s)),
            max(1, int(max_messages)),
            max(0, int(max_wait_s)),
            self._poll_interval_ms,
        )

        def _op(conn: Any) -> list[QueueMessage]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out: list[QueueMessage] = []
            for row in rows:
                enqueued_at = row[2].isoformat() if isinstance(row[2], datetime) else (str(row[2]) if row[2] else None)
                out.append(
                    QueueMessage(
                        message_id=int(row[0]),
                        queue_name=queue_name,
                        body=_encode_body(row[3]),
                        read_count=int(row[1]),
                        enqueued_at=enqueued_at,
                    )
                )
            return out

        # read_with_poll blocks server-side for up to max_wait_s.
        return self._tx_runner.run_in_tx(_op, statement_timeout_ms=0)

    def delete(self, queue_name: str, message_ids: Iterable[int]) -> int:
        ids = _message_ids(message_ids)
        if not ids:
            return 0

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM pgmq.delete(%s, %s::bigint[])", (queue_name, ids))
                rows = cur.fetchall() or []
            return len(rows)

        return self._tx_runner.run_in_tx(_op)

    def pending_count(self, queue_name: str) -> int:
        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute("SELECT queue_length FROM pgmq.metrics(%s)", (queue_name,))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(_op)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    tx_runner: PostgresTxRunner | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend | PgmqQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("ORCH_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        db_path = env.get("ORCH_QUEUE_SQLITE_PATH", ".runtime/orch_queue.sqlite3")
        return SqliteQueueBackend(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when ORCH_QUEUE_BACKEND=redis")
        namespace = env.get("ORCH_QUEUE_KEY_PREFIX", "orch")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    if backend == "pgmq":
        if tx_runner is None:
            tx_runner = create_tx_runner_from_env(env)
        if tx_runner is None:
            raise ValueError("POSTGRES_DSN must be set when ORCH_QUEUE_BACKEND=pgmq")
        return PgmqQueueBackend(tx_runner=tx_runner)
    raise RuntimeError(f"unsupported queue backend: {backend}")
