"""Tests for cronpipe/pipeline/scheduler.py"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from cronpipe.core.errors import StoreUnavailable
from cronpipe.core.events import EventType
from cronpipe.pipeline.scheduler import Scheduler
from cronpipe.scheduling.models import FireCursor
from cronpipe.store.base import DueCursor
from cronpipe.store.sqlite import SQLiteSchedulingStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(minutes=2)


def collect(bus, pattern="*"):
    events = []

    async def handler(event):
        events.append(event)

    bus.on(pattern, handler)
    return events


@pytest.mark.asyncio
class TestRunOnce:
    async def test_due_cursor_becomes_run(self, store, add_due_job, bus):
        job = await add_due_job(T0)
        events = collect(bus, "run:*")
        scheduler = Scheduler(store, bus)

        result = await scheduler.run_once(NOW)

        assert (result.advanced, result.created) == (1, 1)
        runs = await store.list_runs(job.id)
        assert len(runs) == 1
        assert runs[0].trigger_at == T0
        assert runs[0].dispatch_attempts == 0
        cursor = await store.get_cursor(job.id)
        assert cursor.next_at == T0 + timedelta(minutes=5)
        assert cursor.version == 1
        assert [e.type for e in events] == [EventType.RUN_CREATED]
        assert events[0].data["run_id"] == runs[0].id

    async def test_nothing_due(self, store, add_due_job):
        job = await add_due_job(T0 + timedelta(hours=1))
        result = await Scheduler(store).run_once(NOW)
        assert result.created == 0
        assert (await store.get_cursor(job.id)).version == 0

    async def test_missed_slots_coalesce_into_one_run(self, store, add_due_job):
        """A cursor hours behind yields one run, then jumps past now."""
        job = await add_due_job(T0 - timedelta(hours=3))
        await Scheduler(store).run_once(NOW)
        await Scheduler(store).run_once(NOW)

        assert len(await store.list_runs(job.id)) == 1
        assert (await store.get_cursor(job.id)).next_at == T0 + timedelta(minutes=5)

    async def test_invalid_schedule_is_isolated(self, store, add_due_job, bus):
        broken = await add_due_job(T0, name="broken", cron="0 0 30 2 *")
        healthy = await add_due_job(T0, name="healthy")
        alerts = collect(bus, EventType.SCHEDULE_INVALID)
        scheduler = Scheduler(store, bus)

        result = await scheduler.run_once(NOW)

        assert result.created == 1
        assert await store.list_runs(broken.id) == []
        assert (await store.get_cursor(broken.id)).version == 0
        assert len(await store.list_runs(healthy.id)) == 1
        assert scheduler.stats.invalid == 1
        assert alerts[0].data["job_id"] == broken.id

    async def test_invalid_cursors_are_quarantined_out_of_the_batch(self, store, add_due_job):
        broken = [
            await add_due_job(T0, name=f"mars{i}", tz="Mars/Olympus") for i in range(3)
        ]
        healthy = await add_due_job(T0 + timedelta(minutes=1), name="healthy", cron="* * * * *")
        scheduler = Scheduler(store, batch_size=3)

        first = await scheduler.run_once(NOW)
        second = await scheduler.run_once(NOW)

        assert (first.quarantined, first.created) == (3, 0)
        assert second.created == 1
        assert len(await store.list_runs(healthy.id)) == 1
        for job in broken:
            cursor = await store.get_cursor(job.id)
            assert cursor.next_at == T0
            assert cursor.version == 0
            assert cursor.invalid_since == NOW
        assert (await store.stats(NOW)).quarantined == 3

    async def test_one_tick_gets_past_quarantined_cursors(self, store, add_due_job):
        for i in range(3):
            await add_due_job(T0, name=f"mars{i}", tz="Mars/Olympus")
        healthy = await add_due_job(T0 + timedelta(minutes=1), name="healthy", cron="* * * * *")
        scheduler = Scheduler(store, batch_size=3, poll_interval=10.0, clock=lambda: NOW)

        await scheduler.start()
        for _ in range(50):
            if await store.list_runs(healthy.id):
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert scheduler.stats.ticks == 1
        assert len(await store.list_runs(healthy.id)) == 1

    async def test_resume_lifts_quarantine(self, store, add_due_job, bus):
        job = await add_due_job(T0, tz="Mars/Olympus")
        alerts = collect(bus, EventType.SCHEDULE_INVALID)
        scheduler = Scheduler(store, bus)

        await scheduler.run_once(NOW)
        await scheduler.run_once(NOW)
        assert len(alerts) == 1

        assert await store.set_paused(job.id, False)
        assert (await store.get_cursor(job.id)).invalid_since is None

        await scheduler.run_once(NOW)
        assert len(alerts) == 2
        assert (await store.get_cursor(job.id)).invalid_since == NOW

    async def test_paused_job_fires_missed_slot_once_on_resume(self, store, add_due_job):
        job = await add_due_job(T0)
        await store.set_paused(job.id, True)
        scheduler = Scheduler(store)

        await scheduler.run_once(NOW)
        await scheduler.run_once(NOW + timedelta(hours=1))
        assert await store.list_runs(job.id) == []
        assert (await store.get_cursor(job.id)).next_at == T0

        await store.set_paused(job.id, False)
        later = NOW + timedelta(hours=2)
        await scheduler.run_once(later)

        runs = await store.list_runs(job.id)
        assert [r.trigger_at for r in runs] == [T0]
        assert (await store.get_cursor(job.id)).next_at > later

    async def test_batch_size_limits_one_cycle(self, store, add_due_job):
        for i in range(5):
            await add_due_job(T0, name=f"j{i}")
        scheduler = Scheduler(store, batch_size=2)

        assert (await scheduler.run_once(NOW)).created == 2
        assert (await scheduler.run_once(NOW)).created == 2
        assert (await scheduler.run_once(NOW)).created == 1
        assert (await scheduler.run_once(NOW)).created == 0

    async def test_concurrent_schedulers_create_exactly_one_run(self, db_path, store, add_due_job):
        """Independent store connections stand in for separate scheduler processes."""
        jobs = [await add_due_job(T0, name=f"j{i}") for i in range(10)]

        stores = [SQLiteSchedulingStore(db_path) for _ in range(5)]
        for s in stores:
            await s.initialize()
        try:
            results = await asyncio.gather(*(Scheduler(s).run_once(NOW) for s in stores))
        finally:
            for s in stores:
                await s.close()

        assert sum(r.created for r in results) == 10
        for job in jobs:
            assert len(await store.list_runs(job.id)) == 1
            assert (await store.get_cursor(job.id)).version == 1


class _ConflictBatch:
    def __init__(self, due):
        self.due = due
        self.created = []

    async def advance(self, cursor, next_at):
        return False

    async def create_run(self, run):
        self.created.append(run)
        return True


class _FakeStore:
    def __init__(self, batch=None, error=None):
        self.batch = batch
        self.error = error

    @asynccontextmanager
    async def scheduler_batch(self, now, limit):
        if self.error:
            raise self.error
        yield self.batch


@pytest.mark.asyncio
class TestFailures:
    async def test_claim_conflict_skips_row(self, make_job):
        job = make_job()
        batch = _ConflictBatch([DueCursor(FireCursor(job.id, T0), job)])
        scheduler = Scheduler(_FakeStore(batch))

        result = await scheduler.run_once(NOW)

        assert result.created == 0
        assert batch.created == []
        assert scheduler.stats.conflicts == 1

    async def test_store_unavailable_aborts_cycle(self):
        scheduler = Scheduler(_FakeStore(error=StoreUnavailable("database is locked")))
        with pytest.raises(StoreUnavailable):
            await scheduler.run_once(NOW)

    async def test_loop_survives_tick_errors(self, bus):
        errors = collect(bus, EventType.PIPELINE_ERROR)
        scheduler = Scheduler(
            _FakeStore(error=StoreUnavailable("database is locked")), bus, poll_interval=0.01
        )
        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.stats.ticks >= 2
        assert scheduler.stats.last_error == "database is locked"
        assert errors and errors[0].data["stage"] == "scheduler"


@pytest.mark.asyncio
async def test_loop_materializes_due_runs(store, add_due_job):
    job = await add_due_job(datetime.now(timezone.utc) - timedelta(minutes=1))
    scheduler = Scheduler(store, poll_interval=0.05)

    await scheduler.start()
    for _ in range(50):
        if await store.list_runs(job.id):
            break
        await asyncio.sleep(0.02)
    await scheduler.stop()

    assert len(await store.list_runs(job.id)) == 1
