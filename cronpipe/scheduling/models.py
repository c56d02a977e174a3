"""
Scheduling data model — Job, FireCursor, Run, Attempt.

All instants are timezone-aware UTC datetimes. Mappings (headers) and the
body template are plain JSON-compatible values so they serialize cleanly
into the store and onto the work queue.

Two counters are deliberately separate:
    Run.dispatch_attempts  — claim marker owned by the Dispatcher
    Attempt.attempt_no     — execution history owned by the Executor
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ActionKind(str, Enum):
    HTTP = "http"
    QUEUE = "queue"
    INTERNAL = "internal"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class Job:
    """A recurring task definition. Owned by the management side."""

    project_id: str
    name: str
    cron: str | None
    tz: str = "Europe/Berlin"
    kind: ActionKind = ActionKind.HTTP
    target: str | None = None       # URL for http jobs
    method: str | None = None       # None means GET
    headers: dict[str, str] = field(default_factory=dict)
    body_template: Any = None       # JSON value, sent as-is
    retry_max: int = 3
    timeout_ms: int = 15000
    concurrency: int = 1
    paused: bool = False

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FireCursor:
    """Per-job pointer to the next scheduled firing."""

    job_id: str
    next_at: datetime
    version: int = 0
    invalid_since: datetime | None = None  # set while the schedule cannot be evaluated


@dataclass
class Run:
    """One materialized occurrence of a job firing."""

    job_id: str
    project_id: str
    trigger_at: datetime
    status: RunStatus = RunStatus.RUNNING
    dispatch_attempts: int = 0
    duration_ms: int | None = None
    error: str | None = None
    retry_pending: bool = False     # failed, but the queue still owes a redelivery

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None


@dataclass
class Attempt:
    """One executor-side try of a run's action. Append-only."""

    run_id: str
    started_at: datetime
    finished_at: datetime
    status: AttemptStatus
    attempt_no: int = 0             # assigned by the store at write time
    http_status: int | None = None
    latency_ms: int = 0
    response_excerpt: str | None = None
    error: str | None = None

    id: str = field(default_factory=new_id)


@dataclass
class ExecutionTask:
    """The work-queue payload for one run, snapshotted from its job at dispatch time."""

    run_id: str
    job_id: str
    project_id: str
    kind: ActionKind
    target: str | None
    method: str | None
    headers: dict[str, str]
    body: Any
    timeout_ms: int

    @classmethod
    def for_run(cls, run: Run, job: Job) -> ExecutionTask:
        return cls(
            run_id=run.id,
            job_id=job.id,
            project_id=run.project_id,
            kind=job.kind,
            target=job.target,
            method=job.method,
            headers=dict(job.headers),
            body=job.body_template,
            timeout_ms=job.timeout_ms,
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "job_id": self.job_id,
            "project_id": self.project_id,
            "kind": self.kind.value,
            "target": self.target,
            "method": self.method,
            "headers": self.headers,
            "body": self.body,
            "timeout_ms": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ExecutionTask:
        return cls(
            run_id=d["run_id"],
            job_id=d["job_id"],
            project_id=d["project_id"],
            kind=ActionKind(d.get("kind", "http")),
            target=d.get("target"),
            method=d.get("method"),
            headers=d.get("headers") or {},
            body=d.get("body"),
            timeout_ms=int(d["timeout_ms"]),
        )
