"""
Durable SQLite work queue.

Table: tasks
    run_id       TEXT  PK  (one task per run, so publishing is idempotent)
    payload      TEXT  (JSON ExecutionTask)
    max_retries  INT
    backoff_base REAL
    deliveries   INT
    state        TEXT  ready | leased | done | dead
    available_at REAL  (unix time)
    lease_until  REAL  (unix time)
    last_error   TEXT
    finished_at  REAL  (unix time, set on done | dead)

Workers claim one task at a time inside BEGIN IMMEDIATE, which makes the
claim exclusive across processes. Leased tasks whose lease runs out are
put back (or dead-lettered when out of retries) by the next consumer.
Finished rows are trimmed to the newest keep_done / keep_dead in the same
transaction that finishes a task.

Keep this file separate from the scheduling store's database: the
dispatcher publishes while holding the store's write transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from cronpipe.core.errors import QueueError, QueuePublishFailure
from cronpipe.queue.base import Delivery, RetryPolicy, WorkQueue
from cronpipe.scheduling.models import ExecutionTask

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2  # seconds between empty-queue checks in consume()


class SQLiteWorkQueue(WorkQueue):
    """
    SQLite-backed durable queue.

    Usage:
        queue = SQLiteWorkQueue("~/.cronpipe/queue.db")
        await queue.initialize()
    """

    def __init__(
        self,
        db_path: str | Path,
        visibility_timeout: float = 300.0,
        busy_timeout: float = 30.0,
        keep_done: int = 100,
        keep_dead: int = 500,
    ) -> None:
        self._db_path = Path(db_path).expanduser()
        self._visibility_timeout = visibility_timeout
        self._keep = {"done": keep_done, "dead": keep_dead}
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            db = await aiosqlite.connect(
                str(self._db_path), timeout=self._busy_timeout, isolation_level=None
            )
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    run_id       TEXT PRIMARY KEY,
                    payload      TEXT NOT NULL,
                    max_retries  INTEGER NOT NULL,
                    backoff_base REAL NOT NULL,
                    deliveries   INTEGER NOT NULL DEFAULT 0,
                    state        TEXT NOT NULL,
                    available_at REAL NOT NULL,
                    lease_until  REAL,
                    last_error   TEXT,
                    created_at   REAL NOT NULL,
                    finished_at  REAL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_ready ON tasks (state, available_at)"
            )
            self._db = db
            logger.debug(f"SQLite work queue initialized at {self._db_path}")
        except sqlite3.Error as e:
            raise QueueError(f"Failed to initialize queue at {self._db_path}: {e}") from e

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await self._ensure_db()
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                with suppress(sqlite3.Error):
                    await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def _trim(self, db: aiosqlite.Connection, state: str) -> None:
        await db.execute(
            """
            DELETE FROM tasks
            WHERE state = ? AND run_id NOT IN (
                SELECT run_id FROM tasks WHERE state = ?
                ORDER BY finished_at DESC, rowid DESC
                LIMIT ?
            )
            """,
            (state, state, self._keep[state]),
        )

    # ━━━ WorkQueue ━━━

    async def publish(self, task: ExecutionTask, policy: RetryPolicy) -> bool:
        now = time.time()
        try:
            async with self._transaction() as db:
                cur = await db.execute(
                    """
                    INSERT INTO tasks (run_id, payload, max_retries, backoff_base,
                                       deliveries, state, available_at, created_at)
                    VALUES (?, ?, ?, ?, 0, 'ready', ?, ?)
                    ON CONFLICT (run_id) DO NOTHING
                    """,
                    (
                        task.run_id, json.dumps(task.to_dict()), policy.max_retries,
                        policy.backoff_base, now, now,
                    ),
                )
                return cur.rowcount == 1
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise QueuePublishFailure(
                f"Failed to publish task for run {task.run_id}: {e}", run_id=task.run_id
            ) from e

    async def consume(self, timeout: float = 1.0) -> Delivery | None:
        deadline = time.monotonic() + timeout
        while True:
            delivery = await self._claim_one()
            if delivery is not None:
                return delivery
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(_POLL_INTERVAL, remaining))

    async def _claim_one(self) -> Delivery | None:
        now = time.time()
        try:
            async with self._transaction() as db:
                expired = await db.execute(
                    """
                    UPDATE tasks
                    SET state = CASE WHEN deliveries <= max_retries THEN 'ready' ELSE 'dead' END,
                        finished_at = CASE WHEN deliveries <= max_retries THEN NULL ELSE ? END,
                        available_at = ?
                    WHERE state = 'leased' AND lease_until <= ?
                    """,
                    (now, now, now),
                )
                if expired.rowcount:
                    await self._trim(db, "dead")
                async with db.execute(
                    """
                    SELECT * FROM tasks
                    WHERE state = 'ready' AND available_at <= ?
                    ORDER BY available_at ASC
                    LIMIT 1
                    """,
                    (now,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return None
                deliveries = row["deliveries"] + 1
                await db.execute(
                    "UPDATE tasks SET state = 'leased', deliveries = ?, lease_until = ? "
                    "WHERE run_id = ?",
                    (deliveries, now + self._visibility_timeout, row["run_id"]),
                )
        except sqlite3.Error as e:
            raise QueueError(f"Failed to consume from queue: {e}") from e

        return Delivery(
            task=ExecutionTask.from_dict(json.loads(row["payload"])),
            delivery_no=deliveries,
            policy=RetryPolicy(max_retries=row["max_retries"], backoff_base=row["backoff_base"]),
            receipt=f"{row['run_id']}:{deliveries}",
        )

    async def ack(self, delivery: Delivery) -> None:
        try:
            async with self._transaction() as db:
                cur = await db.execute(
                    "UPDATE tasks SET state = 'done', lease_until = NULL, finished_at = ? "
                    "WHERE run_id = ? AND state = 'leased' AND deliveries = ?",
                    (time.time(), delivery.task.run_id, delivery.delivery_no),
                )
                if cur.rowcount:
                    await self._trim(db, "done")
        except sqlite3.Error as e:
            raise QueueError(f"Failed to ack run {delivery.task.run_id}: {e}") from e

    async def nack(self, delivery: Delivery, error: str = "") -> bool:
        retry = delivery.policy.allows(delivery.delivery_no)
        available_at = time.time() + delivery.policy.delay_for(delivery.delivery_no)
        try:
            async with self._transaction() as db:
                cur = await db.execute(
                    """
                    UPDATE tasks
                    SET state = ?, available_at = ?, lease_until = NULL, last_error = ?,
                        finished_at = ?
                    WHERE run_id = ? AND state = 'leased' AND deliveries = ?
                    """,
                    (
                        "ready" if retry else "dead", available_at, error[:2000],
                        None if retry else time.time(),
                        delivery.task.run_id, delivery.delivery_no,
                    ),
                )
                if cur.rowcount and not retry:
                    await self._trim(db, "dead")
        except sqlite3.Error as e:
            raise QueueError(f"Failed to nack run {delivery.task.run_id}: {e}") from e
        if cur.rowcount == 0:
            return False
        if not retry:
            logger.warning(
                f"Task for run {delivery.task.run_id} dead-lettered after "
                f"{delivery.delivery_no} deliveries: {error}"
            )
        return retry

    async def has_task(self, run_id: str) -> bool:
        return (await self.state_of(run_id)) in ("ready", "leased")

    async def state_of(self, run_id: str) -> str | None:
        db = await self._ensure_db()
        async with self._lock:
            async with db.execute("SELECT state FROM tasks WHERE run_id = ?", (run_id,)) as cursor:
                row = await cursor.fetchone()
        return row["state"] if row else None

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
