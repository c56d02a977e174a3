"""
cronpipe pipeline events — types and constants.

Every state transition in the pipeline produces an event.
Events flow through the middleware chain, then to subscribers.
Alerts (invalid schedules, publish failures) are events too, so an
operator hook is just another subscriber.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "run:*" matches "run:created"
    """

    # Run lifecycle
    RUN_CREATED = "run:created"
    RUN_DISPATCHED = "run:dispatched"
    RUN_FINISHED = "run:finished"

    # Executor
    ATTEMPT_RECORDED = "attempt:recorded"

    # Operational alerts
    SCHEDULE_INVALID = "schedule:invalid"
    DISPATCH_PUBLISH_FAILED = "dispatch:publish_failed"
    DISPATCH_DEFERRED = "dispatch:deferred"
    PIPELINE_ERROR = "pipeline:error"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    A single pipeline event.

    - Typed (hierarchical string)
    - Timestamped
    - Traceable (source = emitting component, e.g. "scheduler")
    - Extensible (data dict for event-specific payload)
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)
