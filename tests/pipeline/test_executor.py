"""Tests for cronpipe/pipeline/executor.py"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cronpipe.actions.base import default_registry
from cronpipe.core.errors import StoreWriteFailure
from cronpipe.core.events import EventType
from cronpipe.pipeline.dispatcher import Dispatcher
from cronpipe.pipeline.executor import Executor
from cronpipe.pipeline.scheduler import Scheduler
from cronpipe.queue.memory import MemoryWorkQueue
from cronpipe.scheduling.models import ActionKind, AttemptStatus, RunStatus

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def registry_for(handler):
    return default_registry(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def dispatched_run(store, add_due_job, queue, **job_overrides):
    """Schedule and dispatch one run; returns (job, run, delivery)."""
    job = await add_due_job(T0, **job_overrides)
    await Scheduler(store).run_once(T0 + timedelta(seconds=1))
    await Dispatcher(store, queue, backoff_base=0).run_once()
    [run] = await store.list_runs(job.id)
    delivery = await queue.consume(timeout=0)
    return job, run, delivery


@pytest.mark.asyncio
class TestHandle:
    async def test_success(self, store, add_due_job, queue, bus):
        events = []

        async def on_event(event):
            events.append(event.type)

        bus.on("*", on_event)
        _, run, delivery = await dispatched_run(store, add_due_job, queue)
        executor = Executor(store, queue, registry_for(lambda r: httpx.Response(200, text="pong")), bus)

        attempt = await executor.handle(delivery)

        assert attempt.attempt_no == 1
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.http_status == 200
        assert attempt.response_excerpt == "pong"
        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.SUCCESS
        assert stored.error is None
        assert stored.duration_ms is not None
        assert await queue.state_of(run.id) == "done"
        assert events == [EventType.ATTEMPT_RECORDED, EventType.RUN_FINISHED]

    async def test_excerpt_bounded(self, store, add_due_job, queue):
        _, run, delivery = await dispatched_run(store, add_due_job, queue)
        executor = Executor(
            store, queue, registry_for(lambda r: httpx.Response(200, text="y" * 5000)), excerpt_limit=2000
        )
        attempt = await executor.handle(delivery)
        assert len(attempt.response_excerpt) == 2000

    async def test_server_error_fails_and_requeues(self, store, add_due_job, queue):
        _, run, delivery = await dispatched_run(store, add_due_job, queue, retry_max=2)
        executor = Executor(store, queue, registry_for(lambda r: httpx.Response(500, text="oops")))

        attempt = await executor.handle(delivery)

        assert attempt.status == AttemptStatus.FAILED
        assert attempt.http_status == 500
        assert attempt.error == "HTTP 500"
        stored = await store.get_run(run.id)
        assert (stored.status, stored.retry_pending) == (RunStatus.FAILED, True)
        assert await queue.state_of(run.id) == "ready"

    async def test_timeout(self, store, add_due_job, queue):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        _, run, delivery = await dispatched_run(store, add_due_job, queue, timeout_ms=50)
        executor = Executor(store, queue, registry_for(slow))

        attempt = await executor.handle(delivery)

        assert attempt.status == AttemptStatus.FAILED
        assert attempt.http_status is None
        assert "Timed out" in attempt.error
        assert attempt.latency_ms < 2000
        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert len(await store.list_attempts(run.id)) == 1

    async def test_unreachable_target(self, store, add_due_job, queue):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        _, run, delivery = await dispatched_run(store, add_due_job, queue)
        attempt = await Executor(store, queue, registry_for(refuse)).handle(delivery)

        assert attempt.status == AttemptStatus.FAILED
        assert attempt.http_status is None
        assert "connection refused" in attempt.error

    async def test_retry_then_success(self, store, add_due_job, queue):
        responses = iter([httpx.Response(503), httpx.Response(200, text="ok")])
        _, run, delivery = await dispatched_run(store, add_due_job, queue, retry_max=3)
        executor = Executor(store, queue, registry_for(lambda r: next(responses)))

        await executor.handle(delivery)
        redelivery = await queue.consume(timeout=0)
        assert redelivery.delivery_no == 2
        await executor.handle(redelivery)

        attempts = await store.list_attempts(run.id)
        assert [(a.attempt_no, a.status) for a in attempts] == [
            (1, AttemptStatus.FAILED),
            (2, AttemptStatus.SUCCESS),
        ]
        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.SUCCESS
        assert stored.error == "HTTP 503"
        assert stored.dispatch_attempts == 1
        assert stored.retry_pending is False

    async def test_no_retries_left_dead_letters(self, store, add_due_job, queue):
        _, run, delivery = await dispatched_run(store, add_due_job, queue, retry_max=0)
        await Executor(store, queue, registry_for(lambda r: httpx.Response(404))).handle(delivery)
        assert await queue.state_of(run.id) == "dead"
        stored = await store.get_run(run.id)
        assert (stored.status, stored.retry_pending) == (RunStatus.FAILED, False)

    async def test_unsupported_kind(self, store, add_due_job, queue):
        _, run, delivery = await dispatched_run(store, add_due_job, queue, kind=ActionKind.QUEUE)
        attempt = await Executor(store, queue, registry_for(lambda r: httpx.Response(200))).handle(delivery)
        assert attempt.status == AttemptStatus.FAILED
        assert "not implemented" in attempt.error

    async def test_store_failure_leaves_delivery_unacked(self, store, add_due_job, queue):
        _, run, delivery = await dispatched_run(store, add_due_job, queue)

        async def broken_record(attempt):
            raise StoreWriteFailure("disk full")

        store.record_attempt = broken_record
        executor = Executor(store, queue, registry_for(lambda r: httpx.Response(200)))

        assert await executor.handle(delivery) is None
        assert await queue.state_of(run.id) == "leased"
        stored = await store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert "disk full" in stored.error


@pytest.mark.asyncio
async def test_worker_pool_drains_queue(store, add_due_job):
    queue = MemoryWorkQueue()
    jobs = [await add_due_job(T0, name=f"j{i}") for i in range(4)]
    await Scheduler(store).run_once(T0 + timedelta(seconds=1))
    await Dispatcher(store, queue).run_once()

    executor = Executor(
        store, queue, registry_for(lambda r: httpx.Response(204)), concurrency=2, consume_timeout=0.05
    )
    await executor.start()
    for _ in range(100):
        if queue.live_count == 0:
            break
        await asyncio.sleep(0.02)
    await executor.stop()

    for job in jobs:
        [run] = await store.list_runs(job.id)
        assert run.status == RunStatus.SUCCESS
