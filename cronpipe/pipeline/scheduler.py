"""
Scheduler — turns due fire cursors into Runs.

Each cycle opens one store transaction holding a batch of due cursors.
For every cursor it computes the job's next firing, advances the cursor
conditionally (version + 1) and inserts a Run for the slot that was due.
Any number of schedulers can share one store: the store hands each of
them a disjoint set of cursors, and the conditional advance catches the
rest.

Usage:
    scheduler = Scheduler(store, bus)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from cronpipe.core.bus import EventBus
from cronpipe.core.errors import ClaimConflict, InvalidSchedule
from cronpipe.core.events import Event, EventType
from cronpipe.scheduling.cron import next_fire
from cronpipe.scheduling.models import Run, utcnow
from cronpipe.store.base import SchedulingStore

logger = logging.getLogger(__name__)

# Safety valve for the catch-up loop in _tick().
MAX_CYCLES_PER_TICK = 100


@dataclass
class SchedulerStats:
    ticks: int = 0
    runs_created: int = 0
    skipped: int = 0
    invalid: int = 0
    conflicts: int = 0
    last_error: str | None = None


@dataclass
class CycleResult:
    advanced: int = 0
    created: int = 0
    quarantined: int = 0


class Scheduler:
    """Background loop that materializes Runs from fire cursors."""

    def __init__(
        self,
        store: SchedulingStore,
        bus: EventBus | None = None,
        batch_size: int = 50,
        poll_interval: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._bus = bus
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._wake = asyncio.Event()
        self.stats = SchedulerStats()

    async def start(self) -> None:
        self._running = True
        self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduler")
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop after the batch in progress commits."""
        self._running = False
        self._wake.set()
        if self._task and not self._task.done():
            await self._task
        logger.info("Scheduler stopped")

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            try:
                await self._tick()
            except Exception as e:
                self.stats.last_error = str(e)
                logger.warning(f"Scheduler tick error (non-fatal): {e}")
                await self._emit(EventType.PIPELINE_ERROR, {"stage": "scheduler", "error": str(e)})
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _tick(self) -> None:
        """Run cycles back to back while they keep moving cursors out of the due set."""
        self.stats.ticks += 1
        for _ in range(MAX_CYCLES_PER_TICK):
            result = await self.run_once()
            if result.advanced + result.quarantined == 0 or not self._running:
                break

    # ── One cycle ─────────────────────────────────────────────────────────────

    async def run_once(self, now: datetime | None = None) -> CycleResult:
        """
        Process one batch of due cursors in a single transaction.

        Raises StoreError (typically StoreUnavailable) if the batch could not
        be committed; nothing from the batch is kept in that case.
        """
        now = now or self._clock()
        result = CycleResult()
        events: list[tuple[str, dict]] = []

        async with self._store.scheduler_batch(now, self._batch_size) as batch:
            for item in batch.due:
                cursor, job = item.cursor, item.job
                if job is None or not job.cron or job.paused:
                    self.stats.skipped += 1
                    continue

                try:
                    next_at = next_fire(job.cron, job.tz, now)
                except InvalidSchedule as e:
                    self.stats.invalid += 1
                    logger.warning(
                        f"Job {job.name!r} ({job.id}) has an invalid schedule, "
                        f"quarantining its cursor until the job is resumed: {e}"
                    )
                    # next_at is left untouched.
                    if await batch.quarantine(cursor, now):
                        result.quarantined += 1
                    events.append((
                        EventType.SCHEDULE_INVALID,
                        {"job_id": job.id, "cron": job.cron, "tz": job.tz, "error": str(e)},
                    ))
                    continue

                try:
                    if not await batch.advance(cursor, next_at):
                        raise ClaimConflict(f"Cursor for job {job.id} moved concurrently")
                except ClaimConflict as e:
                    self.stats.conflicts += 1
                    logger.debug(str(e))
                    continue
                result.advanced += 1

                run = Run(job_id=job.id, project_id=job.project_id, trigger_at=cursor.next_at)
                if await batch.create_run(run):
                    result.created += 1
                    events.append((
                        EventType.RUN_CREATED,
                        {
                            "run_id": run.id,
                            "job_id": job.id,
                            "trigger_at": run.trigger_at.isoformat(),
                            "next_at": next_at.isoformat(),
                        },
                    ))
                else:
                    logger.debug(f"Run for job {job.id} at {cursor.next_at} already exists")

        self.stats.runs_created += result.created
        if result.created:
            logger.info(f"Scheduler created {result.created} run(s)")

        # Emit only once the batch has committed.
        for event_type, data in events:
            await self._emit(event_type, data)
        return result

    async def _emit(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, source="scheduler", data=data))
