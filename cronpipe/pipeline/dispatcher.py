"""
Dispatcher — claims new Runs and publishes them to the work queue.

A Run is claimed by moving its dispatch_attempts from 0 to 1 inside the
dispatch transaction, so exactly one dispatcher publishes it no matter
how many are running. Publishing is idempotent per run_id on the queue
side, which covers the remaining window (publish succeeded, commit did
not).

Retry timing is not the dispatcher's business: it attaches a RetryPolicy
built from the job's retry_max and leaves redelivery to the queue.

The store's selection puts Runs their job can still admit ahead of the
rest, so one backed-up job cannot crowd the others out of every batch.
Over-limit Runs that still make it into a batch are deferred here.

A slower reconciliation sweep re-publishes claimed Runs that the queue
has lost track of (publish failed, or the queue was wiped), including
failed Runs that were still owed a redelivery.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from cronpipe.core.bus import EventBus
from cronpipe.core.errors import ClaimConflict, QueuePublishFailure
from cronpipe.core.events import Event, EventType
from cronpipe.queue.base import RetryPolicy, WorkQueue
from cronpipe.scheduling.models import ExecutionTask, RunStatus, utcnow
from cronpipe.store.base import SchedulingStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    published: int = 0
    deferred: int = 0
    skipped: int = 0
    conflicts: int = 0
    publish_failures: int = 0


@dataclass
class ReconcileResult:
    checked: int = 0
    republished: int = 0
    orphaned: int = 0


class Dispatcher:
    """
    Background loop moving Runs from the store onto the work queue.

    Usage:
        dispatcher = Dispatcher(store, queue, bus, backoff_base=5.0)
        await dispatcher.start()
    """

    def __init__(
        self,
        store: SchedulingStore,
        queue: WorkQueue,
        bus: EventBus | None = None,
        batch_size: int = 50,
        poll_interval: float = 5.0,
        backoff_base: float = 5.0,
        reconcile_interval: float = 60.0,
        reconcile_after: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._bus = bus
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._backoff_base = backoff_base
        self._reconcile_interval = reconcile_interval
        self._reconcile_after = reconcile_after
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._wake = asyncio.Event()
        self._last_reconcile = 0.0

    async def start(self) -> None:
        self._running = True
        self._wake.clear()
        self._last_reconcile = time.monotonic()
        self._task = asyncio.create_task(self._loop(), name="dispatcher")
        logger.info("Dispatcher started")

    async def stop(self) -> None:
        """Stop after the batch in progress commits."""
        self._running = False
        self._wake.set()
        if self._task and not self._task.done():
            await self._task
        logger.info("Dispatcher stopped")

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                if time.monotonic() - self._last_reconcile >= self._reconcile_interval:
                    self._last_reconcile = time.monotonic()
                    await self.reconcile()
            except Exception as e:
                logger.warning(f"Dispatcher tick error (non-fatal): {e}")
                await self._emit(EventType.PIPELINE_ERROR, {"stage": "dispatcher", "error": str(e)})
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    # ── One cycle ─────────────────────────────────────────────────────────────

    async def run_once(self) -> DispatchResult:
        """Claim and publish one batch of undispatched Runs."""
        result = DispatchResult()
        events: list[tuple[str, dict]] = []
        admitted: dict[str, int] = {}

        async with self._store.dispatch_batch(self._batch_size) as batch:
            for item in batch.pending:
                run, job = item.run, item.job
                if job is None:
                    result.skipped += 1
                    logger.debug(f"Run {run.id} has no job, skipping")
                    continue

                if job.id not in admitted:
                    try:
                        admitted[job.id] = await batch.in_flight(job.id)
                    except ClaimConflict as e:
                        result.conflicts += 1
                        logger.debug(str(e))
                        continue
                if admitted[job.id] >= max(job.concurrency, 1):
                    result.deferred += 1
                    events.append((
                        EventType.DISPATCH_DEFERRED,
                        {"run_id": run.id, "job_id": job.id, "in_flight": admitted[job.id]},
                    ))
                    continue

                try:
                    if not await batch.claim(run.id):
                        raise ClaimConflict(f"Run {run.id} already claimed")
                except ClaimConflict as e:
                    result.conflicts += 1
                    logger.debug(str(e))
                    continue
                admitted[job.id] += 1

                task = ExecutionTask.for_run(run, job)
                policy = RetryPolicy(max_retries=job.retry_max, backoff_base=self._backoff_base)
                try:
                    await self._queue.publish(task, policy)
                except QueuePublishFailure as e:
                    # Claimed but unpublished; the reconcile sweep picks it up.
                    result.publish_failures += 1
                    logger.error(f"Publish failed for run {run.id}: {e}")
                    events.append((
                        EventType.DISPATCH_PUBLISH_FAILED,
                        {"run_id": run.id, "job_id": job.id, "error": str(e)},
                    ))
                    continue

                result.published += 1
                events.append((
                    EventType.RUN_DISPATCHED,
                    {"run_id": run.id, "job_id": job.id, "kind": job.kind.value},
                ))

        if result.published:
            logger.info(f"Dispatcher published {result.published} run(s)")
        for event_type, data in events:
            await self._emit(event_type, data)
        return result

    async def reconcile(self, now: datetime | None = None) -> ReconcileResult:
        """
        Re-publish claimed Runs the queue no longer holds, whether still
        running or failed with a redelivery owed. A Run the queue reports as
        finished is settled as failed.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._reconcile_after)
        result = ReconcileResult()

        for item in await self._store.find_stale_dispatched(cutoff, self._batch_size):
            run, job = item.run, item.job
            result.checked += 1
            if job is None or await self._queue.has_task(run.id):
                continue

            task = ExecutionTask.for_run(run, job)
            policy = RetryPolicy(max_retries=job.retry_max, backoff_base=self._backoff_base)
            try:
                published = await self._queue.publish(task, policy)
            except QueuePublishFailure as e:
                logger.error(f"Re-publish failed for run {run.id}: {e}")
                await self._emit(
                    EventType.DISPATCH_PUBLISH_FAILED,
                    {"run_id": run.id, "job_id": job.id, "error": str(e), "reconcile": True},
                )
                continue

            if published:
                await self._store.bump_dispatch_attempts(run.id)
                result.republished += 1
                logger.warning(f"Re-published run {run.id} of job {job.id}")
                await self._emit(
                    EventType.RUN_DISPATCHED,
                    {"run_id": run.id, "job_id": job.id, "kind": job.kind.value, "reconcile": True},
                )
            else:
                # The queue finished its task; nothing will update this run any more.
                error = "orphaned: queue task finished without a result"
                await self._store.finalize_run(run.id, RunStatus.FAILED, error=error)
                result.orphaned += 1
                logger.warning(f"Run {run.id} of job {job.id} marked failed ({error})")
                await self._emit(
                    EventType.RUN_FINISHED,
                    {"run_id": run.id, "job_id": job.id, "status": RunStatus.FAILED.value, "error": error},
                )
        return result

    async def _emit(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, source="dispatcher", data=data))
