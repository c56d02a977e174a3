"""
Scheduling Store interface.

The store is the single source of truth shared by every scheduler,
dispatcher and worker instance, and the only place mutual exclusion is
enforced. Claims are expressed as store operations (skip-locked selection,
conditional updates), never as in-process locks.

Implementations:
    SQLiteSchedulingStore   — aiosqlite, BEGIN IMMEDIATE claims
    PostgresSchedulingStore — asyncpg, FOR UPDATE SKIP LOCKED claims
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime

from cronpipe.scheduling.models import Attempt, FireCursor, Job, Run, RunStatus


@dataclass
class DueCursor:
    """A locked fire cursor together with its job (None if the job is gone)."""

    cursor: FireCursor
    job: Job | None


@dataclass
class PendingRun:
    """An undispatched run together with its job (None if the job is gone)."""

    run: Run
    job: Job | None


class SchedulerBatch(ABC):
    """
    One scheduler transaction.

    `due` holds the cursors this instance claimed. Changes made through the
    batch commit together when the context exits cleanly and roll back if
    it raises.
    """

    due: list[DueCursor]

    @abstractmethod
    async def advance(self, cursor: FireCursor, next_at: datetime) -> bool:
        """
        Move the cursor to *next_at* and bump its version, only if it still
        holds the next_at value that was read. False means a concurrent
        claimant got there first.
        """
        ...

    @abstractmethod
    async def create_run(self, run: Run) -> bool:
        """Insert a run. False if one already exists for (job, trigger_at)."""
        ...

    @abstractmethod
    async def quarantine(self, cursor: FireCursor, now: datetime) -> bool:
        """
        Take a cursor whose schedule cannot be evaluated out of the due
        selection, leaving next_at where it is. Cleared when the job is
        resumed.
        """
        ...


class DispatchBatch(ABC):
    """
    One dispatcher transaction over runs with dispatch_attempts == 0.

    A run is in flight once claimed and until it is terminal with no
    redelivery owed (status running, or failed with retry_pending set).
    """

    pending: list[PendingRun]

    @abstractmethod
    async def in_flight(self, job_id: str) -> int:
        """
        Count in-flight runs of a job. Raises ClaimConflict if another
        dispatcher is admitting runs of the same job right now.
        """
        ...

    @abstractmethod
    async def claim(self, run_id: str) -> bool:
        """Increment dispatch_attempts from 0 to 1. False if already claimed."""
        ...


@dataclass
class StoreStats:
    jobs: int = 0
    due_cursors: int = 0
    quarantined: int = 0
    runs_by_status: dict[str, int] = field(default_factory=dict)


class SchedulingStore(ABC):
    """
    Abstract base class for scheduling store backends.

    Usage:
        store = SQLiteSchedulingStore(db_path)
        await store.initialize()

        async with store.scheduler_batch(now, limit=50) as batch:
            for item in batch.due:
                ...
    """

    # ━━━ Lifecycle ━━━

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and create the schema if needed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    # ━━━ Jobs (management side) ━━━

    @abstractmethod
    async def add_job(self, job: Job, cursor: FireCursor) -> None:
        """Insert a job and its fire cursor atomically."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def list_jobs(self, project_id: str | None = None) -> list[Job]:
        ...

    @abstractmethod
    async def set_paused(self, job_id: str, paused: bool) -> bool:
        """Returns True if the job exists. Resuming also lifts a quarantine."""
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> bool:
        """Delete a job; its cursor, runs and attempts cascade."""
        ...

    @abstractmethod
    async def get_cursor(self, job_id: str) -> FireCursor | None:
        ...

    # ━━━ Scheduler ━━━

    @abstractmethod
    def scheduler_batch(
        self, now: datetime, limit: int
    ) -> AbstractAsyncContextManager[SchedulerBatch]:
        """
        Open a transaction holding up to *limit* due cursors
        (next_at <= now, oldest first) that no concurrent transaction holds.
        Cursors of paused or cron-less jobs and quarantined cursors are not
        selected.
        """
        ...

    # ━━━ Dispatcher ━━━

    @abstractmethod
    def dispatch_batch(self, limit: int) -> AbstractAsyncContextManager[DispatchBatch]:
        """
        Open a transaction holding up to *limit* runs with status running and
        dispatch_attempts == 0.

        Runs within their job's free concurrency (concurrency minus in-flight)
        come first, oldest trigger_at first; runs over the limit only fill the
        rest, so a job at its cap cannot crowd the others out of the batch.
        """
        ...

    @abstractmethod
    async def find_stale_dispatched(
        self, created_before: datetime, limit: int
    ) -> list[PendingRun]:
        """
        Claimed runs created before a cutoff that are still running or still
        owed a redelivery.
        """
        ...

    @abstractmethod
    async def bump_dispatch_attempts(self, run_id: str) -> None:
        ...

    # ━━━ Executor ━━━

    @abstractmethod
    async def record_attempt(self, attempt: Attempt) -> Attempt:
        """
        Append an attempt. The store assigns attempt_no = previous max + 1
        inside the write, and returns the stored attempt.
        """
        ...

    @abstractmethod
    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        duration_ms: int | None = None,
        error: str | None = None,
        retry_pending: bool = False,
    ) -> bool:
        """
        Set a run's outcome. Idempotent: re-applying the same outcome is
        harmless. The first recorded error summary and the last known
        duration are kept. retry_pending marks a failed run the queue will
        deliver again, which keeps it counted as in flight.
        """
        ...

    # ━━━ Reads ━━━

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        ...

    @abstractmethod
    async def list_runs(self, job_id: str, limit: int = 50) -> list[Run]:
        """Most recent first."""
        ...

    @abstractmethod
    async def list_attempts(self, run_id: str) -> list[Attempt]:
        """Ordered by attempt_no."""
        ...

    @abstractmethod
    async def stats(self, now: datetime) -> StoreStats:
        ...
