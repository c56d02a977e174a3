"""
Work Queue interface.

The queue owns retry scheduling. The dispatcher attaches a RetryPolicy when
it publishes; the executor only acks or nacks deliveries. A nacked delivery
comes back after an exponential backoff until the policy's retries are used
up, then it is dead-lettered.

Delivery is at-least-once: a delivery that is neither acked nor nacked
(worker crash) becomes visible again once its lease runs out.

Implementations:
    MemoryWorkQueue — in-process, for single-process deployments and tests
    SQLiteWorkQueue — durable, shared between processes
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from cronpipe.queue.backoff import compute_backoff
from cronpipe.scheduling.models import ExecutionTask


@dataclass(frozen=True)
class RetryPolicy:
    """max_retries redeliveries after the first, spaced by exponential backoff."""

    max_retries: int = 3
    backoff_base: float = 5.0  # seconds

    def delay_for(self, redelivery: int) -> float:
        return compute_backoff(self.backoff_base, redelivery)

    def allows(self, delivery_no: int) -> bool:
        """Whether a delivery numbered *delivery_no* that just failed may be retried."""
        return delivery_no <= self.max_retries


@dataclass
class Delivery:
    """One delivery of a task to a worker. delivery_no starts at 1."""

    task: ExecutionTask
    delivery_no: int
    policy: RetryPolicy
    receipt: str = ""  # backend handle for ack/nack


class WorkQueue(ABC):
    """Abstract base class for work queue backends."""

    async def initialize(self) -> None:
        """Create backing resources. No-op by default."""
        return None

    @abstractmethod
    async def publish(self, task: ExecutionTask, policy: RetryPolicy) -> bool:
        """
        Enqueue a task. Idempotent per run_id: returns False if a task for
        the run is already known to the queue.
        """
        ...

    @abstractmethod
    async def consume(self, timeout: float = 1.0) -> Delivery | None:
        """Wait up to *timeout* seconds for a ready delivery."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """The delivery is done; forget the task."""
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery, error: str = "") -> bool:
        """
        The delivery failed. Returns True if a retry was scheduled,
        False if the task was dead-lettered.
        """
        ...

    @abstractmethod
    async def has_task(self, run_id: str) -> bool:
        """Whether the queue still holds a live (waiting or leased) task for the run."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
