"""
In-process work queue.

Backs single-process deployments (`cronpipe run all` with queue.backend =
"memory") and tests. Nothing survives a restart.

Finished tasks are kept for inspection up to keep_done / keep_dead each,
oldest evicted first. An evicted run_id can be published again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from cronpipe.queue.base import Delivery, RetryPolicy, WorkQueue
from cronpipe.scheduling.models import ExecutionTask

logger = logging.getLogger(__name__)

READY = "ready"
LEASED = "leased"
DONE = "done"
DEAD = "dead"


@dataclass
class _Entry:
    task: ExecutionTask
    policy: RetryPolicy
    state: str = READY
    deliveries: int = 0
    available_at: float = 0.0
    lease_until: float = 0.0
    last_error: str = ""


class MemoryWorkQueue(WorkQueue):
    """
    asyncio work queue with leases and backoff.

    Usage:
        queue = MemoryWorkQueue()
        await queue.publish(task, RetryPolicy(max_retries=3, backoff_base=5))
        delivery = await queue.consume(timeout=1.0)
        await queue.ack(delivery)
    """

    def __init__(
        self,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        keep_done: int = 100,
        keep_dead: int = 500,
    ) -> None:
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._keep = {DONE: keep_done, DEAD: keep_dead}
        self._finished: dict[str, deque[str]] = {DONE: deque(), DEAD: deque()}
        self._cond = asyncio.Condition()

    async def publish(self, task: ExecutionTask, policy: RetryPolicy) -> bool:
        async with self._cond:
            if task.run_id in self._entries:
                return False
            self._entries[task.run_id] = _Entry(task=task, policy=policy, available_at=self._clock())
            self._cond.notify_all()
        logger.debug(f"Queued task for run {task.run_id}")
        return True

    async def consume(self, timeout: float = 1.0) -> Delivery | None:
        deadline = self._clock() + timeout
        async with self._cond:
            while True:
                now = self._clock()
                self._expire_leases(now)
                entry = self._next_ready(now)
                if entry is not None:
                    entry.state = LEASED
                    entry.deliveries += 1
                    entry.lease_until = now + self._visibility_timeout
                    return Delivery(
                        task=entry.task,
                        delivery_no=entry.deliveries,
                        policy=entry.policy,
                        receipt=f"{entry.task.run_id}:{entry.deliveries}",
                    )
                remaining = deadline - now
                if remaining <= 0:
                    return None
                wait = min(remaining, self._until_next_ready(now))
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, delivery: Delivery) -> None:
        async with self._cond:
            entry = self._current(delivery)
            if entry is not None:
                self._finish(entry, DONE)

    async def nack(self, delivery: Delivery, error: str = "") -> bool:
        async with self._cond:
            entry = self._current(delivery)
            if entry is None:
                return False
            entry.last_error = error
            if entry.policy.allows(delivery.delivery_no):
                entry.state = READY
                entry.available_at = self._clock() + entry.policy.delay_for(delivery.delivery_no)
                self._cond.notify_all()
                return True
            self._finish(entry, DEAD)
            logger.warning(
                f"Task for run {delivery.task.run_id} dead-lettered after "
                f"{delivery.delivery_no} deliveries: {error}"
            )
            return False

    async def has_task(self, run_id: str) -> bool:
        entry = self._entries.get(run_id)
        return entry is not None and entry.state in (READY, LEASED)

    async def close(self) -> None:
        return None

    # ━━━ Inspection ━━━

    async def state_of(self, run_id: str) -> str | None:
        entry = self._entries.get(run_id)
        return entry.state if entry else None

    @property
    def dead_letters(self) -> list[ExecutionTask]:
        return [e.task for e in self._entries.values() if e.state == DEAD]

    @property
    def live_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.state in (READY, LEASED))

    # ━━━ Internals ━━━

    def _current(self, delivery: Delivery) -> _Entry | None:
        """The entry, if this delivery still holds its lease."""
        entry = self._entries.get(delivery.task.run_id)
        if entry is None or entry.state != LEASED or entry.deliveries != delivery.delivery_no:
            return None
        return entry

    def _finish(self, entry: _Entry, state: str) -> None:
        entry.state = state
        order = self._finished[state]
        order.append(entry.task.run_id)
        while len(order) > self._keep[state]:
            self._entries.pop(order.popleft(), None)

    def _expire_leases(self, now: float) -> None:
        expired = [
            e for e in self._entries.values() if e.state == LEASED and e.lease_until <= now
        ]
        for entry in expired:
            if entry.policy.allows(entry.deliveries):
                entry.state = READY
                entry.available_at = now
            else:
                self._finish(entry, DEAD)

    def _next_ready(self, now: float) -> _Entry | None:
        ready = [e for e in self._entries.values() if e.state == READY and e.available_at <= now]
        return min(ready, key=lambda e: e.available_at) if ready else None

    def _until_next_ready(self, now: float) -> float:
        pending = [
            e.available_at - now for e in self._entries.values() if e.state == READY
        ] + [e.lease_until - now for e in self._entries.values() if e.state == LEASED]
        return max(min(pending), 0.01) if pending else float("inf")
