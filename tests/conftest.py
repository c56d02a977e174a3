"""Shared test fixtures for cronpipe."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from cronpipe.core.bus import EventBus
from cronpipe.core.config import CronPipeConfig
from cronpipe.queue.memory import MemoryWorkQueue
from cronpipe.scheduling.models import FireCursor, Job
from cronpipe.store.sqlite import SQLiteSchedulingStore


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return CronPipeConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cronpipe.db"


@pytest_asyncio.fixture
async def store(db_path):
    """An initialized SQLite scheduling store in a temp directory."""
    s = SQLiteSchedulingStore(db_path)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def queue():
    return MemoryWorkQueue()


@pytest.fixture
def make_job():
    """Factory for http jobs with test-friendly defaults."""

    def _make(**overrides) -> Job:
        values = dict(
            project_id="proj-1",
            name="ping",
            cron="*/5 * * * *",
            tz="UTC",
            target="https://example.test/hook",
        )
        values.update(overrides)
        return Job(**values)

    return _make


@pytest.fixture
def add_due_job(store, make_job):
    """Insert a job whose cursor is due at *next_at*."""

    async def _add(next_at: datetime | None = None, **overrides) -> Job:
        job = make_job(**overrides)
        when = next_at or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        await store.add_job(job, FireCursor(job_id=job.id, next_at=when))
        return job

    return _add
