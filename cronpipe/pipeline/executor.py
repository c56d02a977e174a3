"""
Executor — the worker side of the pipeline.

Consumes deliveries from the work queue, performs the job's action under
its timeout, appends one Attempt and finalizes the Run. Success is acked,
failure is nacked; whether and when a failed Run is retried is decided by
the queue's RetryPolicy, never here.

If the store cannot take the attempt or the final status, the delivery is
left un-acked so the queue hands it out again once the lease expires.
"""

from __future__ import annotations

import asyncio
import logging
import time

from cronpipe.actions.base import ActionRegistry, ActionResult
from cronpipe.core.bus import EventBus
from cronpipe.core.errors import ActionError, ActionTimeout, CronPipeError, StoreError, StoreWriteFailure
from cronpipe.core.events import Event, EventType
from cronpipe.queue.base import Delivery, WorkQueue
from cronpipe.scheduling.models import Attempt, AttemptStatus, RunStatus, utcnow
from cronpipe.store.base import SchedulingStore

logger = logging.getLogger(__name__)

_QUEUE_ERROR_BACKOFF = 1.0  # seconds a consumer waits after a queue failure


class Executor:
    """
    Pool of queue consumers.

    Usage:
        executor = Executor(store, queue, default_registry(), bus, concurrency=4)
        await executor.start()
        ...
        await executor.stop()   # in-flight deliveries finish first
    """

    def __init__(
        self,
        store: SchedulingStore,
        queue: WorkQueue,
        registry: ActionRegistry,
        bus: EventBus | None = None,
        default_timeout_ms: int = 15000,
        excerpt_limit: int = 2000,
        concurrency: int = 4,
        consume_timeout: float = 1.0,
    ) -> None:
        self._store = store
        self._queue = queue
        self._registry = registry
        self._bus = bus
        self._default_timeout_ms = default_timeout_ms
        self._excerpt_limit = excerpt_limit
        self._concurrency = max(concurrency, 1)
        self._consume_timeout = consume_timeout
        self._workers: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._workers = [
            asyncio.create_task(self._consume_loop(i), name=f"executor-{i}")
            for i in range(self._concurrency)
        ]
        logger.info(f"Executor started with {self._concurrency} consumer(s)")

    async def stop(self) -> None:
        self._running = False
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Executor stopped")

    async def _consume_loop(self, index: int) -> None:
        while self._running:
            try:
                delivery = await self._queue.consume(timeout=self._consume_timeout)
            except CronPipeError as e:
                logger.warning(f"Executor {index}: consume failed: {e}")
                await asyncio.sleep(_QUEUE_ERROR_BACKOFF)
                continue
            if delivery is None:
                continue
            try:
                await self.handle(delivery)
            except Exception as e:
                logger.exception(f"Executor {index}: unexpected error on run {delivery.task.run_id}")
                await self._emit(
                    EventType.PIPELINE_ERROR,
                    {"stage": "executor", "run_id": delivery.task.run_id, "error": str(e)},
                )

    # ── One delivery ──────────────────────────────────────────────────────────

    async def handle(self, delivery: Delivery) -> Attempt | None:
        """
        Execute one delivery end to end.

        Returns the recorded Attempt, or None if the store refused it (the
        delivery is then left for redelivery).
        """
        task = delivery.task
        timeout_ms = task.timeout_ms or self._default_timeout_ms
        started_at = utcnow()
        t0 = time.perf_counter()

        result: ActionResult | None = None
        error: str | None = None
        try:
            action = self._registry.get(task.kind)
            result = await asyncio.wait_for(
                action.perform(task, self._excerpt_limit), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            error = str(ActionTimeout(f"Timed out after {timeout_ms} ms", kind=task.kind.value))
        except ActionError as e:
            error = e.message
        except Exception as e:
            logger.exception(f"Action for run {task.run_id} raised unexpectedly")
            error = f"{type(e).__name__}: {e}"

        latency_ms = int((time.perf_counter() - t0) * 1000)
        ok = result is not None and result.ok
        if result is not None and not ok:
            error = result.detail or "action reported failure"

        attempt = Attempt(
            run_id=task.run_id,
            started_at=started_at,
            finished_at=utcnow(),
            status=AttemptStatus.SUCCESS if ok else AttemptStatus.FAILED,
            http_status=result.status_code if result is not None else None,
            latency_ms=latency_ms,
            response_excerpt=result.excerpt if result is not None else None,
            error=error,
        )
        run_status = RunStatus.SUCCESS if ok else RunStatus.FAILED
        # The policy, not the executor, says whether a redelivery follows.
        redelivery_owed = delivery.policy.allows(delivery.delivery_no)

        try:
            attempt = await self._store.record_attempt(attempt)
            await self._store.finalize_run(
                task.run_id,
                run_status,
                duration_ms=latency_ms,
                error=error,
                retry_pending=not ok and redelivery_owed,
            )
        except StoreError as e:
            logger.error(f"Could not persist outcome of run {task.run_id}: {e}")
            await self._mark_failed(task.run_id, f"store failure: {e}", redelivery_owed)
            return None

        logger.info(
            f"Run {task.run_id} attempt {attempt.attempt_no}: {attempt.status.value}"
            + (f" ({error})" if error else "")
        )
        await self._emit(
            EventType.ATTEMPT_RECORDED,
            {
                "run_id": task.run_id,
                "job_id": task.job_id,
                "attempt_no": attempt.attempt_no,
                "status": attempt.status.value,
                "http_status": attempt.http_status,
                "latency_ms": latency_ms,
                "error": error,
            },
        )
        await self._emit(
            EventType.RUN_FINISHED,
            {"run_id": task.run_id, "job_id": task.job_id, "status": run_status.value, "error": error},
        )

        if ok:
            await self._queue.ack(delivery)
        else:
            retrying = await self._queue.nack(delivery, error or "")
            if not retrying:
                logger.warning(f"Run {task.run_id} failed with no retries left")
        return attempt

    async def _mark_failed(self, run_id: str, error: str, retry_pending: bool) -> None:
        """Best-effort failed status when the normal write path failed."""
        for attempt in (1, 2):
            try:
                await self._store.finalize_run(
                    run_id, RunStatus.FAILED, error=error, retry_pending=retry_pending
                )
                return
            except StoreWriteFailure as e:
                if attempt == 2:
                    logger.error(f"Giving up marking run {run_id} failed: {e}")
            except StoreError as e:
                logger.error(f"Giving up marking run {run_id} failed: {e}")
                return

    async def _emit(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, source="executor", data=data))
