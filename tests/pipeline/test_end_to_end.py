"""End-to-end: Scheduler → Dispatcher → Executor over one store and queue."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cronpipe.actions.base import default_registry
from cronpipe.core.config import CronPipeConfig
from cronpipe.core.errors import ConfigError
from cronpipe.pipeline.runner import Pipeline, build_queue, build_store
from cronpipe.queue.memory import MemoryWorkQueue
from cronpipe.queue.sqlite import SQLiteWorkQueue
from cronpipe.scheduling.models import AttemptStatus, FireCursor, RunStatus
from cronpipe.store.sqlite import SQLiteSchedulingStore


def fast_config(tmp_path, **queue) -> CronPipeConfig:
    return CronPipeConfig(
        store={"path": str(tmp_path / "cronpipe.db")},
        queue={"backend": "memory", "path": str(tmp_path / "queue.db"), **queue},
        scheduler={"poll_interval": 0.05},
        dispatcher={"poll_interval": 0.05, "backoff_base_seconds": 0},
        executor={"concurrency": 2, "consume_timeout": 0.05},
        logging={"dir": str(tmp_path / "logs")},
    )


async def wait_for_terminal(store, job_id, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        runs = await store.list_runs(job_id)
        if runs and runs[0].status.terminal:
            return runs[0]
        await asyncio.sleep(0.02)
    raise AssertionError("run did not finish in time")


async def start_pipeline(tmp_path, handler, make_job, **job_overrides):
    config = fast_config(tmp_path)
    registry = default_registry(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    pipeline = Pipeline(config, registry=registry)
    await pipeline.initialize()

    job = make_job(**job_overrides)
    due = datetime.now(timezone.utc) - timedelta(seconds=30)
    await pipeline.store.add_job(job, FireCursor(job_id=job.id, next_at=due))
    await pipeline.start()
    return pipeline, job


@pytest.mark.asyncio
@pytest.mark.parametrize("cron,tz", [("*/5 * * * *", "UTC"), ("* * * * *", "Europe/Berlin")])
async def test_successful_run(tmp_path, make_job, cron, tz):
    hits = []

    def handler(request):
        hits.append(request.url.path)
        return httpx.Response(200, text="done")

    pipeline, job = await start_pipeline(tmp_path, handler, make_job, cron=cron, tz=tz)
    try:
        run = await wait_for_terminal(pipeline.store, job.id)
        attempts = await pipeline.store.list_attempts(run.id)
        cursor = await pipeline.store.get_cursor(job.id)
    finally:
        await pipeline.stop()

    assert cursor.next_at > run.trigger_at
    assert (cursor.next_at.second, cursor.next_at.microsecond) == (0, 0)
    if cron == "* * * * *":
        assert cursor.next_at - datetime.now(timezone.utc) <= timedelta(minutes=1)

    assert run.status == RunStatus.SUCCESS
    assert run.dispatch_attempts == 1
    assert [(a.attempt_no, a.status, a.http_status) for a in attempts] == [
        (1, AttemptStatus.SUCCESS, 200)
    ]
    assert set(hits) == {"/hook"}


@pytest.mark.asyncio
async def test_unreachable_target_exhausts_retries(tmp_path, make_job):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    pipeline, job = await start_pipeline(tmp_path, handler, make_job, retry_max=2)
    try:
        run = await wait_for_terminal(pipeline.store, job.id)
        for _ in range(100):
            if pipeline.queue.dead_letters:
                break
            await asyncio.sleep(0.02)
        attempts = await pipeline.store.list_attempts(run.id)
    finally:
        await pipeline.stop()

    assert run.status == RunStatus.FAILED
    assert [a.attempt_no for a in attempts] == [1, 2, 3]
    assert all(a.http_status is None for a in attempts)
    assert [t.run_id for t in pipeline.queue.dead_letters] == [run.id]


@pytest.mark.asyncio
async def test_event_log_written(tmp_path, make_job):
    registry = default_registry(
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    )
    pipeline = Pipeline(fast_config(tmp_path), registry=registry)
    event_logger = pipeline.enable_event_log()
    await pipeline.initialize()
    job = make_job()
    await pipeline.store.add_job(
        job, FireCursor(job_id=job.id, next_at=datetime.now(timezone.utc) - timedelta(seconds=30))
    )
    await pipeline.start()
    try:
        await wait_for_terminal(pipeline.store, job.id)
    finally:
        await pipeline.stop()

    logged = event_logger.events_file.read_text()
    for event_type in ("run:created", "run:dispatched", "attempt:recorded", "run:finished"):
        assert event_type in logged


class TestBuilders:
    def test_sqlite_defaults(self, tmp_path):
        config = CronPipeConfig(
            store={"path": str(tmp_path / "a.db")}, queue={"path": str(tmp_path / "q.db")}
        )
        assert isinstance(build_store(config), SQLiteSchedulingStore)
        assert isinstance(build_queue(config), SQLiteWorkQueue)

    def test_memory_queue(self, tmp_path):
        assert isinstance(build_queue(fast_config(tmp_path)), MemoryWorkQueue)

    def test_postgres_requires_dsn(self):
        with pytest.raises(ConfigError):
            build_store(CronPipeConfig(store={"backend": "postgres"}))


@pytest.mark.asyncio
async def test_unknown_role_rejected(tmp_path):
    pipeline = Pipeline(fast_config(tmp_path))
    with pytest.raises(ConfigError):
        await pipeline.start(["janitor"])


@pytest.mark.asyncio
async def test_invalid_schedule_raises_an_alert(tmp_path, make_job):
    pipeline = Pipeline(fast_config(tmp_path))
    router = pipeline.enable_alerts()
    await pipeline.initialize()
    job = make_job(tz="Mars/Olympus")
    await pipeline.store.add_job(
        job, FireCursor(job_id=job.id, next_at=datetime.now(timezone.utc) - timedelta(seconds=30))
    )
    await pipeline.start(["scheduler"])
    try:
        for _ in range(100):
            if router.raised:
                break
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.2)
    finally:
        await pipeline.stop()

    assert router.raised == 1
    assert router.channel_names == ["file"]
    alerts_file = tmp_path / "logs" / "alerts.log"
    assert "[schedule:invalid]" in alerts_file.read_text()
    assert f"job {job.id}" in alerts_file.read_text()
