"""
cronpipe Event Bus — in-process notifications from the pipeline loops.

The scheduler, dispatcher and executor emit an Event after each batch
commits. Two kinds of consumers hang off the bus:

    middleware   sees every event in registration order and passes it
                 on (the JSONL event log, see core/logging.py)
    subscribers  receive the events whose type matches their pattern
                 (alert channels, see core/alerts.py)

Nothing crosses a process boundary here; coordination state lives in
the store and the queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Awaitable, Callable

from cronpipe.core.events import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]
MiddlewareNext = Callable[[Event], Awaitable[Event]]
MiddlewareFunc = Callable[[Event, MiddlewareNext], Awaitable[Event]]


@dataclass(frozen=True)
class Subscription:
    """A handler bound to an event type or a glob such as 'run:*'."""

    pattern: str
    handler: EventHandler

    def matches(self, event_type: str) -> bool:
        if self.pattern == event_type or self.pattern == "*":
            return True
        return "*" in self.pattern and fnmatchcase(event_type, self.pattern)


class EventBus:
    """
    Publish/subscribe bus with a middleware pipeline.

    Usage:
        bus = EventBus()
        bus.use(event_logger.middleware)
        bus.on("schedule:invalid", alerts.handle)

        await bus.emit(Event(type="run:created", data={...}))
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._middleware: list[MiddlewareFunc] = []

    def on(self, pattern: str, handler: EventHandler) -> Subscription:
        subscription = Subscription(pattern, handler)
        self._subscriptions.append(subscription)
        return subscription

    def use(self, middleware: MiddlewareFunc) -> None:
        """
        Append middleware. Each one receives the event and a callable that
        runs the rest of the chain:

            async def stamp(event: Event, next: MiddlewareNext) -> Event:
                event.metadata["host"] = HOST
                return await next(event)
        """
        self._middleware.append(middleware)

    async def emit(self, event: Event) -> Event:
        """
        Run *event* through the middleware, then hand it to the matching
        subscribers concurrently. Failures are logged and never reach the
        emitting loop.
        """
        try:
            return await self._run_from(0, event)
        except Exception as e:
            logger.error(f"Middleware error for {event.type}: {e}", exc_info=True)
            return event

    async def _run_from(self, index: int, event: Event) -> Event:
        if index < len(self._middleware):
            return await self._middleware[index](
                event, lambda e: self._run_from(index + 1, e)
            )
        await self._deliver(event)
        return event

    async def _deliver(self, event: Event) -> None:
        matching = [s for s in self._subscriptions if s.matches(event.type)]
        if not matching:
            return
        results = await asyncio.gather(
            *(s.handler(event) for s in matching), return_exceptions=True
        )
        for subscription, result in zip(matching, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Subscriber {subscription.pattern!r} failed on {event.type}: {result}",
                    exc_info=result,
                )
