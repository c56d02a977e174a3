"""
cronpipe — cron job orchestration: Scheduler → Dispatcher → Executor.

Public API:
    from cronpipe import Pipeline, Job, register_job, next_fire
"""

__version__ = "0.1.0"

# Core
from cronpipe.core.bus import EventBus
from cronpipe.core.config import CronPipeConfig
from cronpipe.core.events import Event, EventType

# Scheduling
from cronpipe.scheduling.cron import next_fire, upcoming, validate_schedule
from cronpipe.scheduling.models import (
    ActionKind,
    Attempt,
    AttemptStatus,
    ExecutionTask,
    FireCursor,
    Job,
    Run,
    RunStatus,
)
from cronpipe.scheduling.registration import register_job

# Pipeline
from cronpipe.pipeline.dispatcher import Dispatcher
from cronpipe.pipeline.executor import Executor
from cronpipe.pipeline.runner import Pipeline
from cronpipe.pipeline.scheduler import Scheduler

__all__ = [
    # Core
    "EventBus",
    "CronPipeConfig",
    "Event",
    "EventType",
    # Scheduling
    "next_fire",
    "upcoming",
    "validate_schedule",
    "ActionKind",
    "Attempt",
    "AttemptStatus",
    "ExecutionTask",
    "FireCursor",
    "Job",
    "Run",
    "RunStatus",
    "register_job",
    # Pipeline
    "Dispatcher",
    "Executor",
    "Pipeline",
    "Scheduler",
]
