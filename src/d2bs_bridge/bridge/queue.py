from __future__ import annotations

import asyncio
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import redis

from ..core.logging_utils import log_event
from ..core.sqlite_utils import connect_sqlite, ensure_schema_version
from ..core.time_utils import now_iso
from .errors import QueueUnavailable, ValidationError
from .messages import QueueItem

DEFAULT_QUEUE_NAME = "d2bs:outbound"
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
QUEUE_SCHEMA_VERSION = 1


class QueueBackend(Protocol):
    async def initialize(self) -> None: ...

    async def push(self, payload: str) -> None: ...

    async def pop(self) -> Optional[str]: ...

    async def length(self) -> int: ...

    async def close(self) -> None: ...


class RedisQueueBackend:
    """A single Redis list used as a FIFO (``RPUSH`` / ``LPOP``)."""

    def __init__(
        self,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        host: str = "localhost",
        port: int = 6379,
        client: Optional[Any] = None,
    ) -> None:
        self._queue_name = queue_name
        self._client = (
            client
            if client is not None
            else redis.Redis(host=host, port=port, decode_responses=True)
        )
        self._owns_client = client is None

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except redis.RedisError as exc:
            raise QueueUnavailable(f"redis queue unavailable: {exc}") from exc

    async def initialize(self) -> None:
        await self._call(self._client.ping)

    async def push(self, payload: str) -> None:
        await self._call(self._client.rpush, self._queue_name, payload)

    async def pop(self) -> Optional[str]:
        value = await self._call(self._client.lpop, self._queue_name)
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value

    async def length(self) -> int:
        return int(await self._call(self._client.llen, self._queue_name) or 0)

    async def close(self) -> None:
        if self._owns_client:
            await asyncio.to_thread(self._client.close)


class SqliteQueueBackend:
    """Durable FIFO table, for hosts without a Redis server."""

    def __init__(self, db_path: Path, *, queue_name: str = DEFAULT_QUEUE_NAME) -> None:
        self._db_path = db_path
        self._queue_name = queue_name
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="bridge-queue"
        )
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        await self._run(self._connection_sync)

    async def push(self, payload: str) -> None:
        await self._run(self._push_sync, payload)

    async def pop(self) -> Optional[str]:
        return await self._run(self._pop_sync)

    async def length(self) -> int:
        return await self._run(self._length_sync)

    async def close(self) -> None:
        await self._run(self._close_sync)
        self._executor.shutdown(wait=True)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, func, *args)
        except (sqlite3.Error, OSError) as exc:
            raise QueueUnavailable(f"sqlite queue unavailable: {exc}") from exc

    def _connection_sync(self) -> sqlite3.Connection:
        if self._connection is None:
            conn = connect_sqlite(self._db_path, durable=True)
            try:
                self._ensure_schema(conn)
            except sqlite3.Error:
                conn.close()
                raise
            self._connection = conn
        return self._connection

    def _close_sync(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            ensure_schema_version(conn, QUEUE_SCHEMA_VERSION)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_items (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_items_name_seq
                    ON queue_items(queue_name, seq)
                """
            )

    def _push_sync(self, payload: str) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(
                "INSERT INTO queue_items(queue_name, payload, created_at) VALUES (?, ?, ?)",
                (self._queue_name, payload, now_iso()),
            )

    def _pop_sync(self) -> Optional[str]:
        conn = self._connection_sync()
        with conn:
            row = conn.execute(
                """
                SELECT seq, payload FROM queue_items
                WHERE queue_name = ?
                ORDER BY seq ASC
                LIMIT 1
                """,
                (self._queue_name,),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM queue_items WHERE seq = ?", (row["seq"],))
        return str(row["payload"])

    def _length_sync(self) -> int:
        conn = self._connection_sync()
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM queue_items WHERE queue_name = ?",
            (self._queue_name,),
        ).fetchone()
        return int(row["total"] or 0) if row is not None else 0


class WorkQueue:
    """Ordered queue of pending Discord deliveries."""

    def __init__(
        self,
        backend: QueueBackend,
        *,
        logger: logging.Logger,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep_fn: Callable[[float], Any] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._backend = backend
        self._logger = logger
        self._poll_interval = max(poll_interval_seconds, 0.01)
        self._sleep = sleep_fn
        self._clock = clock

    async def initialize(self) -> None:
        await self._backend.initialize()

    async def close(self) -> None:
        await self._backend.close()

    async def enqueue(self, item: QueueItem) -> None:
        await self._backend.push(item.to_json())

    async def pending_count(self) -> int:
        return await self._backend.length()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def dequeue_blocking(self, timeout: float) -> Optional[QueueItem]:
        """Return the oldest item, or ``None`` once ``timeout`` has elapsed."""
        deadline = self._now() + max(timeout, 0.0)
        while True:
            raw = await self._backend.pop()
            if raw is not None:
                try:
                    return QueueItem.from_json(raw)
                except ValidationError as exc:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "bridge.queue.item_discarded",
                        raw=raw,
                        exc=exc,
                    )
                    continue
            remaining = deadline - self._now()
            if remaining <= 0:
                return None
            await self._sleep(min(self._poll_interval, remaining))


__all__ = [
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "DEFAULT_QUEUE_NAME",
    "QueueBackend",
    "RedisQueueBackend",
    "SqliteQueueBackend",
    "WorkQueue",
]
