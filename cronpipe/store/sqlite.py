"""
SQLite scheduling store.

Uses aiosqlite for async SQLite access, WAL mode for concurrent readers.

Claims rely on BEGIN IMMEDIATE: a batch transaction takes the database
write lock before it selects, so concurrent scheduler or dispatcher
instances (other processes, other connections) queue up behind it and
only ever see rows the previous holder already advanced or claimed.
SQLite has no row locks, so this is the coarse equivalent of
FOR UPDATE SKIP LOCKED; the conditional updates remain the last word.

One connection per store instance. Coroutines sharing an instance take
turns on it through an asyncio.Lock so their transactions never interleave.

Timestamps are stored as fixed-width UTC text ("2024-03-31T07:00:00.000000Z"),
which sorts and compares correctly as plain strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from cronpipe.core.errors import StoreError, StoreUnavailable, StoreWriteFailure
from cronpipe.scheduling.models import Attempt, FireCursor, Job, Run, RunStatus, utcnow
from cronpipe.store.base import (
    DispatchBatch,
    DueCursor,
    PendingRun,
    SchedulerBatch,
    SchedulingStore,
    StoreStats,
)
from cronpipe.store.rows import (
    ATTEMPT_COLUMNS,
    IN_FLIGHT,
    JOB_COLUMNS,
    RUN_COLUMNS,
    admissible_runs_sql,
    attempt_from_row,
    cursor_from_row,
    job_from_row,
    run_from_row,
    select_list,
    unprefix,
)

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id            TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL,
    name          TEXT NOT NULL,
    kind          TEXT NOT NULL,
    cron          TEXT,
    tz            TEXT NOT NULL,
    target        TEXT,
    method        TEXT,
    headers       TEXT,
    body_template TEXT,
    retry_max     INTEGER NOT NULL DEFAULT 3,
    timeout_ms    INTEGER NOT NULL DEFAULT 15000,
    concurrency   INTEGER NOT NULL DEFAULT 1,
    paused        INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_project ON jobs(project_id);

CREATE TABLE IF NOT EXISTS fire_cursors (
    job_id  TEXT PRIMARY KEY REFERENCES jobs(id) ON DELETE CASCADE,
    next_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    invalid_since TEXT
);
CREATE INDEX IF NOT EXISTS idx_fire_cursors_next_at ON fire_cursors(next_at);

CREATE TABLE IF NOT EXISTS runs (
    id                TEXT PRIMARY KEY,
    job_id            TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    project_id        TEXT NOT NULL,
    trigger_at        TEXT NOT NULL,
    status            TEXT NOT NULL,
    dispatch_attempts INTEGER NOT NULL DEFAULT 0,
    duration_ms       INTEGER,
    error             TEXT,
    created_at        TEXT NOT NULL,
    finished_at       TEXT,
    retry_pending     INTEGER NOT NULL DEFAULT 0,
    UNIQUE (job_id, trigger_at)
);
CREATE INDEX IF NOT EXISTS idx_runs_dispatch ON runs(status, dispatch_attempts, trigger_at);
CREATE INDEX IF NOT EXISTS idx_runs_job ON runs(job_id, status);

CREATE TABLE IF NOT EXISTS attempts (
    id               TEXT PRIMARY KEY,
    run_id           TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    attempt_no       INTEGER NOT NULL,
    started_at       TEXT NOT NULL,
    finished_at      TEXT NOT NULL,
    status           TEXT NOT NULL,
    http_status      INTEGER,
    latency_ms       INTEGER NOT NULL,
    response_excerpt TEXT,
    error            TEXT,
    UNIQUE (run_id, attempt_no)
);
"""


def _ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _from_json(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _job_params(job: Job) -> tuple:
    return (
        job.id, job.project_id, job.name, job.kind.value, job.cron, job.tz,
        job.target, job.method, json.dumps(job.headers or {}),
        json.dumps(job.body_template) if job.body_template is not None else None,
        job.retry_max, job.timeout_ms, job.concurrency, int(job.paused),
        _ts(job.created_at),
    )


def _run_params(run: Run) -> tuple:
    return (
        run.id, run.job_id, run.project_id, _ts(run.trigger_at), run.status.value,
        run.dispatch_attempts, run.duration_ms, run.error, _ts(run.created_at),
        _ts(run.finished_at) if run.finished_at else None, int(run.retry_pending),
    )


def _placeholders(columns: tuple[str, ...]) -> str:
    return ", ".join("?" for _ in columns)


class _SQLiteSchedulerBatch(SchedulerBatch):
    def __init__(self, db: aiosqlite.Connection, due: list[DueCursor]) -> None:
        self._db = db
        self.due = due

    async def advance(self, cursor: FireCursor, next_at: datetime) -> bool:
        cur = await self._db.execute(
            """
            UPDATE fire_cursors SET next_at = ?, version = version + 1
            WHERE job_id = ? AND next_at = ? AND version = ?
            """,
            (_ts(next_at), cursor.job_id, _ts(cursor.next_at), cursor.version),
        )
        return cur.rowcount == 1

    async def create_run(self, run: Run) -> bool:
        cur = await self._db.execute(
            f"INSERT INTO runs ({', '.join(RUN_COLUMNS)}) VALUES ({_placeholders(RUN_COLUMNS)}) "
            "ON CONFLICT (job_id, trigger_at) DO NOTHING",
            _run_params(run),
        )
        return cur.rowcount == 1

    async def quarantine(self, cursor: FireCursor, now: datetime) -> bool:
        cur = await self._db.execute(
            "UPDATE fire_cursors SET invalid_since = ? WHERE job_id = ? AND version = ?",
            (_ts(now), cursor.job_id, cursor.version),
        )
        return cur.rowcount == 1


class _SQLiteDispatchBatch(DispatchBatch):
    def __init__(self, db: aiosqlite.Connection, pending: list[PendingRun]) -> None:
        self._db = db
        self.pending = pending

    async def in_flight(self, job_id: str) -> int:
        # BEGIN IMMEDIATE already serializes dispatchers, no job lock needed.
        async with self._db.execute(
            f"SELECT COUNT(*) FROM runs WHERE job_id = ? AND {IN_FLIGHT}", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return int(row[0])

    async def claim(self, run_id: str) -> bool:
        cur = await self._db.execute(
            "UPDATE runs SET dispatch_attempts = dispatch_attempts + 1 "
            "WHERE id = ? AND dispatch_attempts = 0 AND status = 'running'",
            (run_id,),
        )
        return cur.rowcount == 1


class SQLiteSchedulingStore(SchedulingStore):
    """
    SQLite-backed scheduling store.

    Usage:
        store = SQLiteSchedulingStore("~/.cronpipe/cronpipe.db")
        await store.initialize()
        await store.add_job(job, FireCursor(job.id, next_at))
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ━━━ Lifecycle ━━━

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
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.executescript(_SCHEMA)
            self._db = db
            logger.debug(f"SQLite scheduling store initialized at {self._db_path}")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to initialize SQLite at {self._db_path}: {e}") from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    # ━━━ Plumbing ━━━

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await self._ensure_db()
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot begin transaction: {e}") from e
            try:
                yield db
            except BaseException as e:
                with suppress(sqlite3.Error):
                    await db.execute("ROLLBACK")
                if isinstance(e, sqlite3.OperationalError):
                    raise StoreUnavailable(f"Transaction aborted: {e}") from e
                if isinstance(e, sqlite3.Error):
                    raise StoreError(f"Transaction failed: {e}") from e
                raise
            try:
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                with suppress(sqlite3.Error):
                    await db.execute("ROLLBACK")
                raise StoreUnavailable(f"Commit failed: {e}") from e

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        db = await self._ensure_db()
        async with self._lock:
            try:
                async with db.execute(sql, params) as cursor:
                    return [dict(r) for r in await cursor.fetchall()]
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(f"Query failed: {e}") from e

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        db = await self._ensure_db()
        async with self._lock:
            try:
                cur = await db.execute(sql, params)
                return cur.rowcount
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(f"Write failed: {e}") from e

    # ━━━ Jobs ━━━

    async def add_job(self, job: Job, cursor: FireCursor) -> None:
        async with self._transaction() as db:
            await db.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({_placeholders(JOB_COLUMNS)})",
                _job_params(job),
            )
            await db.execute(
                "INSERT INTO fire_cursors (job_id, next_at, version) VALUES (?, ?, ?)",
                (cursor.job_id, _ts(cursor.next_at), cursor.version),
            )

    async def get_job(self, job_id: str) -> Job | None:
        rows = await self._fetchall("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return job_from_row(rows[0], _from_ts, _from_json) if rows else None

    async def list_jobs(self, project_id: str | None = None) -> list[Job]:
        if project_id is None:
            rows = await self._fetchall("SELECT * FROM jobs ORDER BY created_at DESC")
        else:
            rows = await self._fetchall(
                "SELECT * FROM jobs WHERE project_id = ? ORDER BY created_at DESC", (project_id,)
            )
        return [job_from_row(r, _from_ts, _from_json) for r in rows]

    async def set_paused(self, job_id: str, paused: bool) -> bool:
        async with self._transaction() as db:
            cur = await db.execute(
                "UPDATE jobs SET paused = ? WHERE id = ?", (int(paused), job_id)
            )
            if not paused:
                await db.execute(
                    "UPDATE fire_cursors SET invalid_since = NULL WHERE job_id = ?", (job_id,)
                )
            return cur.rowcount > 0

    async def delete_job(self, job_id: str) -> bool:
        return await self._execute("DELETE FROM jobs WHERE id = ?", (job_id,)) > 0

    async def get_cursor(self, job_id: str) -> FireCursor | None:
        rows = await self._fetchall("SELECT * FROM fire_cursors WHERE job_id = ?", (job_id,))
        return cursor_from_row(rows[0], _from_ts) if rows else None

    # ━━━ Scheduler ━━━

    @asynccontextmanager
    async def scheduler_batch(self, now: datetime, limit: int) -> AsyncIterator[SchedulerBatch]:
        async with self._transaction() as db:
            async with db.execute(
                f"""
                SELECT c.job_id AS cursor_job_id, c.next_at AS cursor_next_at,
                       c.version AS cursor_version, c.invalid_since AS cursor_invalid_since,
                       {select_list("j", JOB_COLUMNS, "job_")}
                FROM fire_cursors c
                JOIN jobs j ON j.id = c.job_id
                WHERE c.next_at <= ? AND c.invalid_since IS NULL AND j.paused = 0
                  AND j.cron IS NOT NULL AND j.cron != ''
                ORDER BY c.next_at ASC
                LIMIT ?
                """,
                (_ts(now), limit),
            ) as cursor:
                rows = [dict(r) for r in await cursor.fetchall()]
            due = [
                DueCursor(
                    cursor=cursor_from_row(unprefix(r, "cursor_"), _from_ts),
                    job=job_from_row(unprefix(r, "job_"), _from_ts, _from_json),
                )
                for r in rows
            ]
            yield _SQLiteSchedulerBatch(db, due)

    # ━━━ Dispatcher ━━━

    @staticmethod
    async def _pending_rows(db: aiosqlite.Connection, sql: str, params: tuple) -> list[PendingRun]:
        async with db.execute(sql, params) as cursor:
            rows = [dict(r) for r in await cursor.fetchall()]
        return [
            PendingRun(
                run=run_from_row(unprefix(r, "run_"), _from_ts),
                job=(
                    job_from_row(unprefix(r, "job_"), _from_ts, _from_json)
                    if r["job_id"] is not None
                    else None
                ),
            )
            for r in rows
        ]

    @asynccontextmanager
    async def dispatch_batch(self, limit: int) -> AsyncIterator[DispatchBatch]:
        async with self._transaction() as db:
            pending = await self._pending_rows(db, admissible_runs_sql("?"), (limit,))
            yield _SQLiteDispatchBatch(db, pending)

    async def find_stale_dispatched(
        self, created_before: datetime, limit: int
    ) -> list[PendingRun]:
        db = await self._ensure_db()
        async with self._lock:
            try:
                return await self._pending_rows(
                    db,
                    f"""
                    SELECT {select_list("r", RUN_COLUMNS, "run_")},
                           {select_list("j", JOB_COLUMNS, "job_")}
                    FROM runs r
                    LEFT JOIN jobs j ON j.id = r.job_id
                    WHERE r.dispatch_attempts >= 1
                      AND (r.status = 'running' OR r.retry_pending = 1)
                      AND r.created_at <= ?
                    ORDER BY r.trigger_at ASC
                    LIMIT ?
                    """,
                    (_ts(created_before), limit),
                )
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(f"Query failed: {e}") from e

    async def bump_dispatch_attempts(self, run_id: str) -> None:
        await self._execute(
            "UPDATE runs SET dispatch_attempts = dispatch_attempts + 1 WHERE id = ?", (run_id,)
        )

    # ━━━ Executor ━━━

    async def record_attempt(self, attempt: Attempt) -> Attempt:
        try:
            async with self._transaction() as db:
                async with db.execute(
                    "SELECT COALESCE(MAX(attempt_no), 0) FROM attempts WHERE run_id = ?",
                    (attempt.run_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                attempt.attempt_no = int(row[0]) + 1
                await db.execute(
                    f"INSERT INTO attempts ({', '.join(ATTEMPT_COLUMNS)}) "
                    f"VALUES ({_placeholders(ATTEMPT_COLUMNS)})",
                    (
                        attempt.id, attempt.run_id, attempt.attempt_no,
                        _ts(attempt.started_at), _ts(attempt.finished_at),
                        attempt.status.value, attempt.http_status, attempt.latency_ms,
                        attempt.response_excerpt, attempt.error,
                    ),
                )
        except StoreError as e:
            raise StoreWriteFailure(f"Failed to record attempt for run {attempt.run_id}: {e}") from e
        return attempt

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        duration_ms: int | None = None,
        error: str | None = None,
        retry_pending: bool = False,
    ) -> bool:
        try:
            return await self._execute(
                """
                UPDATE runs
                SET status = ?, duration_ms = COALESCE(?, duration_ms),
                    error = COALESCE(error, ?), finished_at = ?, retry_pending = ?
                WHERE id = ?
                """,
                (status.value, duration_ms, error, _ts(utcnow()), int(retry_pending), run_id),
            ) > 0
        except StoreError as e:
            raise StoreWriteFailure(f"Failed to finalize run {run_id}: {e}") from e

    # ━━━ Reads ━━━

    async def get_run(self, run_id: str) -> Run | None:
        rows = await self._fetchall("SELECT * FROM runs WHERE id = ?", (run_id,))
        return run_from_row(rows[0], _from_ts) if rows else None

    async def list_runs(self, job_id: str, limit: int = 50) -> list[Run]:
        rows = await self._fetchall(
            "SELECT * FROM runs WHERE job_id = ? ORDER BY trigger_at DESC LIMIT ?",
            (job_id, limit),
        )
        return [run_from_row(r, _from_ts) for r in rows]

    async def list_attempts(self, run_id: str) -> list[Attempt]:
        rows = await self._fetchall(
            "SELECT * FROM attempts WHERE run_id = ? ORDER BY attempt_no ASC", (run_id,)
        )
        return [attempt_from_row(r, _from_ts) for r in rows]

    async def stats(self, now: datetime) -> StoreStats:
        jobs = await self._fetchall("SELECT COUNT(*) AS n FROM jobs")
        due = await self._fetchall(
            "SELECT COUNT(*) AS n FROM fire_cursors WHERE next_at <= ?", (_ts(now),)
        )
        quarantined = await self._fetchall(
            "SELECT COUNT(*) AS n FROM fire_cursors WHERE invalid_since IS NOT NULL"
        )
        by_status = await self._fetchall(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status"
        )
        return StoreStats(
            jobs=jobs[0]["n"],
            due_cursors=due[0]["n"],
            quarantined=quarantined[0]["n"],
            runs_by_status={r["status"]: r["n"] for r in by_status},
        )
