"""Job registration: validate the schedule, then store the job with its first cursor."""

from __future__ import annotations

import logging

from cronpipe.scheduling.cron import validate_schedule
from cronpipe.scheduling.models import FireCursor, Job
from cronpipe.store.base import SchedulingStore

logger = logging.getLogger(__name__)


async def register_job(store: SchedulingStore, job: Job) -> FireCursor:
    """
    Add *job* to the store.

    The cron expression and timezone are checked first; a job whose schedule
    can never fire is rejected with InvalidSchedule and nothing is written.
    The cursor starts at the first firing from now, version 0.
    """
    first = validate_schedule(job.cron, job.tz)
    cursor = FireCursor(job_id=job.id, next_at=first, version=0)
    await store.add_job(job, cursor)
    logger.info(f"Registered job {job.name!r} ({job.id}), first fire at {first.isoformat()}")
    return cursor
