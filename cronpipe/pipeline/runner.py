"""
Pipeline — composes config, event bus, store, queue and the three loops.

Any subset of the loops can run in one process; every process pointed at
the same store and queue cooperates with the others through them.

Usage:
    pipeline = Pipeline(CronPipeConfig.load())
    await pipeline.start(["scheduler", "dispatcher", "worker"])
    ...
    await pipeline.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from cronpipe.actions.base import ActionRegistry, default_registry
from cronpipe.core.alerts import AlertRouter, FileAlertChannel, WebhookAlertChannel
from cronpipe.core.bus import EventBus
from cronpipe.core.config import CronPipeConfig
from cronpipe.core.errors import ConfigError
from cronpipe.core.logging import EventLogger
from cronpipe.pipeline.dispatcher import Dispatcher
from cronpipe.pipeline.executor import Executor
from cronpipe.pipeline.scheduler import Scheduler
from cronpipe.queue.base import WorkQueue
from cronpipe.store.base import SchedulingStore

logger = logging.getLogger(__name__)

ROLES = ("scheduler", "dispatcher", "worker")


def build_store(config: CronPipeConfig) -> SchedulingStore:
    """Create (but do not connect) the configured scheduling store."""
    if config.store.backend == "postgres":
        if not config.store.dsn:
            raise ConfigError("store.backend = 'postgres' requires store.dsn")
        from cronpipe.store.postgres import PostgresSchedulingStore

        return PostgresSchedulingStore(config.store.dsn)

    from cronpipe.store.sqlite import SQLiteSchedulingStore

    return SQLiteSchedulingStore(config.store.path, busy_timeout=config.store.busy_timeout)


def build_queue(config: CronPipeConfig) -> WorkQueue:
    """Create (but do not connect) the configured work queue."""
    if config.queue.backend == "memory":
        from cronpipe.queue.memory import MemoryWorkQueue

        return MemoryWorkQueue(
            visibility_timeout=config.queue.visibility_timeout,
            keep_done=config.queue.keep_done,
            keep_dead=config.queue.keep_dead,
        )

    from cronpipe.queue.sqlite import SQLiteWorkQueue

    return SQLiteWorkQueue(
        config.queue.path,
        visibility_timeout=config.queue.visibility_timeout,
        busy_timeout=config.store.busy_timeout,
        keep_done=config.queue.keep_done,
        keep_dead=config.queue.keep_dead,
    )


class Pipeline:
    """Owns the shared components and the lifecycle of the loops."""

    def __init__(
        self,
        config: CronPipeConfig | None = None,
        store: SchedulingStore | None = None,
        queue: WorkQueue | None = None,
        registry: ActionRegistry | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config or CronPipeConfig.load()
        self.bus = bus or EventBus()
        self.store = store or build_store(self.config)
        self.queue = queue or build_queue(self.config)
        self.registry = registry or default_registry()
        self.scheduler: Scheduler | None = None
        self.dispatcher: Dispatcher | None = None
        self.executor: Executor | None = None
        self._running = False

    def enable_event_log(self) -> EventLogger:
        event_logger = EventLogger(
            log_dir=self.config.get_log_dir(), log_events=self.config.logging.events
        )
        self.bus.use(event_logger.middleware)
        return event_logger

    def enable_alerts(self) -> AlertRouter:
        """Route schedule, publish and tick failures to the alert channels."""
        cfg = self.config.alerts
        router = AlertRouter()
        if cfg.enabled:
            router.register(FileAlertChannel(self.config.get_log_dir() / cfg.file))
            if cfg.webhook_url:
                router.register(WebhookAlertChannel(cfg.webhook_url))
        router.attach(self.bus)
        return router

    async def initialize(self) -> None:
        """Connect the store and the queue, creating their schemas."""
        await self.store.initialize()
        await self.queue.initialize()

    async def start(self, roles: Iterable[str] = ROLES) -> None:
        roles = set(roles)
        unknown = roles - set(ROLES)
        if unknown:
            raise ConfigError(f"Unknown role(s): {', '.join(sorted(unknown))}")

        await self.initialize()
        cfg = self.config

        if "scheduler" in roles and cfg.scheduler.enabled:
            self.scheduler = Scheduler(
                self.store,
                self.bus,
                batch_size=cfg.scheduler.batch_size,
                poll_interval=cfg.scheduler.poll_interval,
            )
            await self.scheduler.start()

        if "dispatcher" in roles and cfg.dispatcher.enabled:
            self.dispatcher = Dispatcher(
                self.store,
                self.queue,
                self.bus,
                batch_size=cfg.dispatcher.batch_size,
                poll_interval=cfg.dispatcher.poll_interval,
                backoff_base=cfg.dispatcher.backoff_base_seconds,
                reconcile_interval=cfg.dispatcher.reconcile_interval,
                reconcile_after=cfg.dispatcher.reconcile_after_seconds,
            )
            await self.dispatcher.start()

        if "worker" in roles and cfg.executor.enabled:
            self.executor = Executor(
                self.store,
                self.queue,
                self.registry,
                self.bus,
                default_timeout_ms=cfg.executor.default_timeout_ms,
                excerpt_limit=cfg.executor.excerpt_limit,
                concurrency=cfg.executor.concurrency,
                consume_timeout=cfg.executor.consume_timeout,
            )
            await self.executor.start()

        self._running = True
        logger.info(f"Pipeline started: {', '.join(sorted(roles))}")

    async def stop(self) -> None:
        """Stop loops upstream first, then release the store and queue."""
        for loop in (self.scheduler, self.dispatcher, self.executor):
            if loop is not None:
                await loop.stop()
        await self.registry.close()
        await self.queue.close()
        await self.store.close()
        self._running = False
        logger.info("Pipeline stopped")

    @property
    def running(self) -> bool:
        return self._running


async def run_services(config: CronPipeConfig, roles: Iterable[str] = ROLES) -> None:
    """Run the given loops until cancelled (Ctrl+C)."""
    pipeline = Pipeline(config)
    pipeline.enable_event_log()
    pipeline.enable_alerts()
    await pipeline.start(roles)
    try:
        await asyncio.Event().wait()
    finally:
        await pipeline.stop()
