"""Tests for cronpipe/queue/memory.py and the retry policy."""
from __future__ import annotations

import asyncio

import pytest

from cronpipe.queue.backoff import compute_backoff
from cronpipe.queue.base import RetryPolicy
from cronpipe.queue.memory import MemoryWorkQueue
from cronpipe.scheduling.models import ActionKind, ExecutionTask


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_task(run_id: str = "run-1") -> ExecutionTask:
    return ExecutionTask(
        run_id=run_id, job_id="job-1", project_id="proj-1", kind=ActionKind.HTTP,
        target="https://example.test", method="POST", headers={}, body={"x": 1},
        timeout_ms=1000,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_queue(clock):
    return MemoryWorkQueue(visibility_timeout=30, clock=clock)


class TestBackoff:
    @pytest.mark.parametrize("n,expected", [(0, 0.0), (1, 5.0), (2, 10.0), (3, 20.0), (4, 40.0)])
    def test_exponential(self, n, expected):
        assert compute_backoff(5.0, n) == expected

    def test_policy_allows_up_to_max_retries(self):
        policy = RetryPolicy(max_retries=2, backoff_base=1.0)
        assert policy.allows(1) and policy.allows(2)
        assert not policy.allows(3)
        assert policy.delay_for(2) == 2.0

    def test_zero_retries(self):
        assert not RetryPolicy(max_retries=0).allows(1)


@pytest.mark.asyncio
class TestMemoryWorkQueue:
    async def test_publish_is_idempotent(self, fake_queue):
        assert await fake_queue.publish(make_task(), RetryPolicy()) is True
        assert await fake_queue.publish(make_task(), RetryPolicy()) is False
        assert fake_queue.live_count == 1

    async def test_consume_and_ack(self, fake_queue):
        await fake_queue.publish(make_task(), RetryPolicy())
        delivery = await fake_queue.consume(timeout=0)

        assert delivery.task.run_id == "run-1"
        assert delivery.task.body == {"x": 1}
        assert delivery.delivery_no == 1
        assert await fake_queue.has_task("run-1") is True

        await fake_queue.ack(delivery)
        assert await fake_queue.state_of("run-1") == "done"
        assert await fake_queue.has_task("run-1") is False
        assert await fake_queue.consume(timeout=0) is None

    async def test_empty_queue_returns_none(self, fake_queue):
        assert await fake_queue.consume(timeout=0) is None

    async def test_nack_redelivers_after_backoff(self, fake_queue, clock):
        await fake_queue.publish(make_task(), RetryPolicy(max_retries=2, backoff_base=5))

        first = await fake_queue.consume(timeout=0)
        assert await fake_queue.nack(first, "HTTP 500") is True
        assert await fake_queue.consume(timeout=0) is None  # still backing off

        clock.now += 5
        second = await fake_queue.consume(timeout=0)
        assert second.delivery_no == 2
        assert await fake_queue.nack(second, "HTTP 500") is True

        clock.now += 9
        assert await fake_queue.consume(timeout=0) is None
        clock.now += 1
        third = await fake_queue.consume(timeout=0)
        assert third.delivery_no == 3

        assert await fake_queue.nack(third, "HTTP 500") is False
        assert await fake_queue.state_of("run-1") == "dead"
        assert [t.run_id for t in fake_queue.dead_letters] == ["run-1"]

    async def test_no_retries_dead_letters_immediately(self, fake_queue):
        await fake_queue.publish(make_task(), RetryPolicy(max_retries=0))
        delivery = await fake_queue.consume(timeout=0)
        assert await fake_queue.nack(delivery, "boom") is False
        assert fake_queue.live_count == 0

    async def test_expired_lease_is_redelivered(self, fake_queue, clock):
        await fake_queue.publish(make_task(), RetryPolicy(max_retries=3))
        stale = await fake_queue.consume(timeout=0)

        clock.now += 31
        fresh = await fake_queue.consume(timeout=0)
        assert fresh.delivery_no == 2

        # The first worker's late ack must not close the second lease.
        await fake_queue.ack(stale)
        assert await fake_queue.state_of("run-1") == "leased"
        await fake_queue.ack(fresh)
        assert await fake_queue.state_of("run-1") == "done"

    async def test_consume_wakes_on_publish(self):
        q = MemoryWorkQueue()
        waiter = asyncio.create_task(q.consume(timeout=2.0))
        await asyncio.sleep(0.05)
        await q.publish(make_task(), RetryPolicy())
        delivery = await waiter
        assert delivery is not None
        assert delivery.task.run_id == "run-1"

    async def test_each_task_delivered_to_one_consumer(self):
        q = MemoryWorkQueue()
        for i in range(5):
            await q.publish(make_task(f"run-{i}"), RetryPolicy())

        deliveries = await asyncio.gather(*(q.consume(timeout=0.2) for _ in range(8)))
        got = [d.task.run_id for d in deliveries if d is not None]
        assert sorted(got) == [f"run-{i}" for i in range(5)]

    async def test_finished_tasks_are_evicted_oldest_first(self, clock):
        q = MemoryWorkQueue(clock=clock, keep_done=2, keep_dead=1)
        for i in range(4):
            await q.publish(make_task(f"run-{i}"), RetryPolicy(max_retries=0))
            delivery = await q.consume(timeout=0)
            if i < 2:
                await q.nack(delivery, "boom")
            else:
                await q.ack(delivery)

        assert [await q.state_of(f"run-{i}") for i in range(4)] == [None, "dead", "done", "done"]
        assert [t.run_id for t in q.dead_letters] == ["run-1"]

        # An evicted run can be queued again.
        assert await q.publish(make_task("run-0"), RetryPolicy()) is True
        assert await q.has_task("run-0") is True

    async def test_expired_lease_dead_letter_counts_against_retention(self, clock):
        q = MemoryWorkQueue(visibility_timeout=30, clock=clock, keep_dead=0)
        await q.publish(make_task(), RetryPolicy(max_retries=0))
        await q.consume(timeout=0)

        clock.now += 31
        assert await q.consume(timeout=0) is None
        assert await q.state_of("run-1") is None
