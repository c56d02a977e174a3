"""
PostgreSQL scheduling store.

Uses an asyncpg connection pool. Claims use row locks with
FOR UPDATE ... SKIP LOCKED, so concurrent scheduler and dispatcher
instances each lock a disjoint slice of the due rows without waiting on
one another. The conditional updates stay in place underneath the locks.

Admission locks the job row (SKIP LOCKED as well) before counting its
in-flight runs, so two dispatchers never admit runs of one job at once;
the loser treats the job as a claim conflict and retries next cycle.

Requires the `postgres` extra:  pip install cronpipe[postgres]
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator

from cronpipe.core.errors import ClaimConflict, StoreError, StoreUnavailable, StoreWriteFailure
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

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

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
    headers       JSONB,
    body_template JSONB,
    retry_max     INTEGER NOT NULL DEFAULT 3,
    timeout_ms    INTEGER NOT NULL DEFAULT 15000,
    concurrency   INTEGER NOT NULL DEFAULT 1,
    paused        BOOLEAN NOT NULL DEFAULT FALSE,
    created_at    TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_project ON jobs(project_id);

CREATE TABLE IF NOT EXISTS fire_cursors (
    job_id  TEXT PRIMARY KEY REFERENCES jobs(id) ON DELETE CASCADE,
    next_at TIMESTAMPTZ NOT NULL,
    version BIGINT NOT NULL DEFAULT 0,
    invalid_since TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_fire_cursors_next_at ON fire_cursors(next_at);

CREATE TABLE IF NOT EXISTS runs (
    id                TEXT PRIMARY KEY,
    job_id            TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    project_id        TEXT NOT NULL,
    trigger_at        TIMESTAMPTZ NOT NULL,
    status            TEXT NOT NULL,
    dispatch_attempts INTEGER NOT NULL DEFAULT 0,
    duration_ms       INTEGER,
    error             TEXT,
    created_at        TIMESTAMPTZ NOT NULL,
    finished_at       TIMESTAMPTZ,
    retry_pending     BOOLEAN NOT NULL DEFAULT FALSE,
    UNIQUE (job_id, trigger_at)
);
CREATE INDEX IF NOT EXISTS idx_runs_dispatch ON runs(status, dispatch_attempts, trigger_at);
CREATE INDEX IF NOT EXISTS idx_runs_job ON runs(job_id, status);

CREATE TABLE IF NOT EXISTS attempts (
    id               TEXT PRIMARY KEY,
    run_id           TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    attempt_no       INTEGER NOT NULL,
    started_at       TIMESTAMPTZ NOT NULL,
    finished_at      TIMESTAMPTZ NOT NULL,
    status           TEXT NOT NULL,
    http_status      INTEGER,
    latency_ms       INTEGER NOT NULL,
    response_excerpt TEXT,
    error            TEXT,
    UNIQUE (run_id, attempt_no)
);
"""


def _same(value: Any) -> Any:
    return value


def _from_json(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _affected(status: str) -> int:
    """asyncpg returns command tags like 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def _values(columns: tuple[str, ...], casts: dict[str, str] | None = None) -> str:
    casts = casts or {}
    return ", ".join(f"${i}{casts.get(c, '')}" for i, c in enumerate(columns, start=1))


class _PgSchedulerBatch(SchedulerBatch):
    def __init__(self, conn: asyncpg.Connection, due: list[DueCursor]) -> None:
        self._conn = conn
        self.due = due

    async def advance(self, cursor: FireCursor, next_at: datetime) -> bool:
        status = await self._conn.execute(
            """
            UPDATE fire_cursors SET next_at = $1, version = version + 1
            WHERE job_id = $2 AND next_at = $3 AND version = $4
            """,
            next_at, cursor.job_id, cursor.next_at, cursor.version,
        )
        return _affected(status) == 1

    async def create_run(self, run: Run) -> bool:
        status = await self._conn.execute(
            f"INSERT INTO runs ({', '.join(RUN_COLUMNS)}) VALUES ({_values(RUN_COLUMNS)}) "
            "ON CONFLICT (job_id, trigger_at) DO NOTHING",
            run.id, run.job_id, run.project_id, run.trigger_at, run.status.value,
            run.dispatch_attempts, run.duration_ms, run.error, run.created_at, run.finished_at,
            run.retry_pending,
        )
        return _affected(status) == 1

    async def quarantine(self, cursor: FireCursor, now: datetime) -> bool:
        status = await self._conn.execute(
            "UPDATE fire_cursors SET invalid_since = $1 WHERE job_id = $2 AND version = $3",
            now, cursor.job_id, cursor.version,
        )
        return _affected(status) == 1


class _PgDispatchBatch(DispatchBatch):
    def __init__(self, conn: asyncpg.Connection, pending: list[PendingRun]) -> None:
        self._conn = conn
        self.pending = pending
        self._admitting: set[str] = set()

    async def in_flight(self, job_id: str) -> int:
        # The job row lock is held until commit, so a second dispatcher cannot
        # count the same job before this batch's claims are visible.
        if job_id not in self._admitting:
            locked = await self._conn.fetchval(
                "SELECT 1 FROM jobs WHERE id = $1 FOR NO KEY UPDATE SKIP LOCKED", job_id
            )
            if locked is None:
                raise ClaimConflict(f"Job {job_id} is being admitted by another dispatcher")
            self._admitting.add(job_id)
        return await self._conn.fetchval(
            f"SELECT COUNT(*) FROM runs WHERE job_id = $1 AND {IN_FLIGHT}", job_id
        )

    async def claim(self, run_id: str) -> bool:
        status = await self._conn.execute(
            "UPDATE runs SET dispatch_attempts = dispatch_attempts + 1 "
            "WHERE id = $1 AND dispatch_attempts = 0 AND status = 'running'",
            run_id,
        )
        return _affected(status) == 1


class PostgresSchedulingStore(SchedulingStore):
    """
    PostgreSQL-backed scheduling store.

    Usage:
        store = PostgresSchedulingStore("postgresql://cronpipe@localhost/cronpipe")
        await store.initialize()
    """

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    # ━━━ Lifecycle ━━━

    async def initialize(self) -> None:
        import asyncpg

        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
            logger.debug("PostgreSQL scheduling store initialized")
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreUnavailable(f"Failed to connect to PostgreSQL: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ━━━ Plumbing ━━━

    @asynccontextmanager
    async def _connection(self, transactional: bool = False) -> AsyncIterator[asyncpg.Connection]:
        import asyncpg

        if self._pool is None:
            await self.initialize()
        try:
            async with self._pool.acquire() as conn:  # type: ignore[union-attr]
                if transactional:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as e:
            raise StoreUnavailable(f"PostgreSQL unavailable: {e}") from e
        except asyncpg.PostgresError as e:
            raise StoreError(f"PostgreSQL error: {e}") from e

    async def _fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        async with self._connection() as conn:
            return [dict(r) for r in await conn.fetch(sql, *args)]

    async def _execute(self, sql: str, *args: Any) -> int:
        async with self._connection() as conn:
            return _affected(await conn.execute(sql, *args))

    # ━━━ Jobs ━━━

    async def add_job(self, job: Job, cursor: FireCursor) -> None:
        async with self._connection(transactional=True) as conn:
            await conn.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES "
                f"({_values(JOB_COLUMNS, {'headers': '::jsonb', 'body_template': '::jsonb'})})",
                job.id, job.project_id, job.name, job.kind.value, job.cron, job.tz,
                job.target, job.method, json.dumps(job.headers or {}),
                json.dumps(job.body_template) if job.body_template is not None else None,
                job.retry_max, job.timeout_ms, job.concurrency, job.paused, job.created_at,
            )
            await conn.execute(
                "INSERT INTO fire_cursors (job_id, next_at, version) VALUES ($1, $2, $3)",
                cursor.job_id, cursor.next_at, cursor.version,
            )

    async def get_job(self, job_id: str) -> Job | None:
        rows = await self._fetch("SELECT * FROM jobs WHERE id = $1", job_id)
        return job_from_row(rows[0], _same, _from_json) if rows else None

    async def list_jobs(self, project_id: str | None = None) -> list[Job]:
        if project_id is None:
            rows = await self._fetch("SELECT * FROM jobs ORDER BY created_at DESC")
        else:
            rows = await self._fetch(
                "SELECT * FROM jobs WHERE project_id = $1 ORDER BY created_at DESC", project_id
            )
        return [job_from_row(r, _same, _from_json) for r in rows]

    async def set_paused(self, job_id: str, paused: bool) -> bool:
        async with self._connection(transactional=True) as conn:
            status = await conn.execute(
                "UPDATE jobs SET paused = $1 WHERE id = $2", paused, job_id
            )
            if not paused:
                await conn.execute(
                    "UPDATE fire_cursors SET invalid_since = NULL WHERE job_id = $1", job_id
                )
            return _affected(status) > 0

    async def delete_job(self, job_id: str) -> bool:
        return await self._execute("DELETE FROM jobs WHERE id = $1", job_id) > 0

    async def get_cursor(self, job_id: str) -> FireCursor | None:
        rows = await self._fetch("SELECT * FROM fire_cursors WHERE job_id = $1", job_id)
        return cursor_from_row(rows[0], _same) if rows else None

    # ━━━ Scheduler ━━━

    @asynccontextmanager
    async def scheduler_batch(self, now: datetime, limit: int) -> AsyncIterator[SchedulerBatch]:
        async with self._connection(transactional=True) as conn:
            rows = await conn.fetch(
                f"""
                SELECT c.job_id AS cursor_job_id, c.next_at AS cursor_next_at,
                       c.version AS cursor_version, c.invalid_since AS cursor_invalid_since,
                       {select_list("j", JOB_COLUMNS, "job_")}
                FROM fire_cursors c
                JOIN jobs j ON j.id = c.job_id
                WHERE c.next_at <= $1 AND c.invalid_since IS NULL AND NOT j.paused
                  AND j.cron IS NOT NULL AND j.cron <> ''
                ORDER BY c.next_at ASC
                LIMIT $2
                FOR UPDATE OF c SKIP LOCKED
                """,
                now, limit,
            )
            due = [
                DueCursor(
                    cursor=cursor_from_row(unprefix(dict(r), "cursor_"), _same),
                    job=job_from_row(unprefix(dict(r), "job_"), _same, _from_json),
                )
                for r in rows
            ]
            yield _PgSchedulerBatch(conn, due)

    # ━━━ Dispatcher ━━━

    @staticmethod
    async def _pending_rows(conn: asyncpg.Connection, sql: str, *args: Any) -> list[PendingRun]:
        rows = await conn.fetch(sql, *args)
        result = []
        for record in rows:
            r = dict(record)
            job = (
                job_from_row(unprefix(r, "job_"), _same, _from_json)
                if r["job_id"] is not None
                else None
            )
            result.append(PendingRun(run=run_from_row(unprefix(r, "run_"), _same), job=job))
        return result

    @asynccontextmanager
    async def dispatch_batch(self, limit: int) -> AsyncIterator[DispatchBatch]:
        async with self._connection(transactional=True) as conn:
            pending = await self._pending_rows(
                conn, admissible_runs_sql("$1", "FOR UPDATE OF r SKIP LOCKED"), limit
            )
            yield _PgDispatchBatch(conn, pending)

    async def find_stale_dispatched(
        self, created_before: datetime, limit: int
    ) -> list[PendingRun]:
        async with self._connection() as conn:
            return await self._pending_rows(
                conn,
                f"""
                SELECT {select_list("r", RUN_COLUMNS, "run_")},
                       {select_list("j", JOB_COLUMNS, "job_")}
                FROM runs r
                LEFT JOIN jobs j ON j.id = r.job_id
                WHERE r.dispatch_attempts >= 1
                  AND (r.status = 'running' OR r.retry_pending)
                  AND r.created_at <= $1
                ORDER BY r.trigger_at ASC
                LIMIT $2
                """,
                created_before,
                limit,
            )

    async def bump_dispatch_attempts(self, run_id: str) -> None:
        await self._execute(
            "UPDATE runs SET dispatch_attempts = dispatch_attempts + 1 WHERE id = $1", run_id
        )

    # ━━━ Executor ━━━

    async def record_attempt(self, attempt: Attempt) -> Attempt:
        try:
            async with self._connection(transactional=True) as conn:
                # Serialize attempt numbering per run on the run's row lock.
                await conn.execute("SELECT 1 FROM runs WHERE id = $1 FOR UPDATE", attempt.run_id)
                attempt.attempt_no = await conn.fetchval(
                    "SELECT COALESCE(MAX(attempt_no), 0) + 1 FROM attempts WHERE run_id = $1",
                    attempt.run_id,
                )
                await conn.execute(
                    f"INSERT INTO attempts ({', '.join(ATTEMPT_COLUMNS)}) "
                    f"VALUES ({_values(ATTEMPT_COLUMNS)})",
                    attempt.id, attempt.run_id, attempt.attempt_no,
                    attempt.started_at, attempt.finished_at, attempt.status.value,
                    attempt.http_status, attempt.latency_ms, attempt.response_excerpt,
                    attempt.error,
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
                SET status = $1, duration_ms = COALESCE($2, duration_ms),
                    error = COALESCE(error, $3), finished_at = $4, retry_pending = $5
                WHERE id = $6
                """,
                status.value, duration_ms, error, utcnow(), retry_pending, run_id,
            ) > 0
        except StoreError as e:
            raise StoreWriteFailure(f"Failed to finalize run {run_id}: {e}") from e

    # ━━━ Reads ━━━

    async def get_run(self, run_id: str) -> Run | None:
        rows = await self._fetch("SELECT * FROM runs WHERE id = $1", run_id)
        return run_from_row(rows[0], _same) if rows else None

    async def list_runs(self, job_id: str, limit: int = 50) -> list[Run]:
        rows = await self._fetch(
            "SELECT * FROM runs WHERE job_id = $1 ORDER BY trigger_at DESC LIMIT $2",
            job_id, limit,
        )
        return [run_from_row(r, _same) for r in rows]

    async def list_attempts(self, run_id: str) -> list[Attempt]:
        rows = await self._fetch(
            "SELECT * FROM attempts WHERE run_id = $1 ORDER BY attempt_no ASC", run_id
        )
        return [attempt_from_row(r, _same) for r in rows]

    async def stats(self, now: datetime) -> StoreStats:
        async with self._connection() as conn:
            jobs = await conn.fetchval("SELECT COUNT(*) FROM jobs")
            due = await conn.fetchval("SELECT COUNT(*) FROM fire_cursors WHERE next_at <= $1", now)
            quarantined = await conn.fetchval(
                "SELECT COUNT(*) FROM fire_cursors WHERE invalid_since IS NOT NULL"
            )
            by_status = await conn.fetch("SELECT status, COUNT(*) AS n FROM runs GROUP BY status")
        return StoreStats(
            jobs=jobs,
            due_cursors=due,
            quarantined=quarantined,
            runs_by_status={r["status"]: r["n"] for r in by_status},
        )
