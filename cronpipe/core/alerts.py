"""
Operational alerts — turns alert events on the bus into notifications.

Subscribes to:
    schedule:invalid          a job's cron/tz cannot be evaluated (cursor quarantined)
    dispatch:publish_failed   a claimed run could not be handed to the queue
    pipeline:error            a loop tick failed

Every alert is logged and appended to an alerts file. A webhook channel
posts the same alert as JSON when alerts.webhook_url is set.

Usage:
    router = AlertRouter([FileAlertChannel(log_dir / "alerts.log")])
    router.attach(bus)
"""

from __future__ import annotations

import datetime
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx

from cronpipe.core.bus import EventBus
from cronpipe.core.events import Event, EventType

logger = logging.getLogger(__name__)

ALERT_EVENTS = (
    EventType.SCHEDULE_INVALID,
    EventType.DISPATCH_PUBLISH_FAILED,
    EventType.PIPELINE_ERROR,
)


@dataclass
class Alert:
    kind: str
    summary: str
    source: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: float = 0.0

    @classmethod
    def from_event(cls, event: Event) -> Alert:
        data = event.data
        if event.type == EventType.SCHEDULE_INVALID:
            summary = f"job {data.get('job_id')} has an invalid schedule: {data.get('error')}"
        elif event.type == EventType.DISPATCH_PUBLISH_FAILED:
            summary = f"run {data.get('run_id')} of job {data.get('job_id')} was not queued: {data.get('error')}"
        else:
            summary = f"{data.get('stage', event.source) or 'pipeline'} tick failed: {data.get('error')}"
        return cls(
            kind=event.type,
            summary=summary,
            source=event.source,
            details={k: str(v) for k, v in data.items()},
            raised_at=event.timestamp,
        )


class AlertChannel(ABC):
    """Delivery target for alerts. deliver() returns True when sent."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def deliver(self, alert: Alert) -> bool:
        ...


class FileAlertChannel(AlertChannel):
    """Appends one line per alert to a plain-text file."""

    def __init__(self, log_path: Path) -> None:
        self._log_path = Path(log_path).expanduser()

    @property
    def name(self) -> str:
        return "file"

    @property
    def log_path(self) -> Path:
        return self._log_path

    async def deliver(self, alert: Alert) -> bool:
        ts = datetime.datetime.fromtimestamp(alert.raised_at).strftime("%Y-%m-%d %H:%M:%S")
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(f"[{ts}] [{alert.kind}] {alert.summary}\n")
            return True
        except OSError as e:
            logger.warning(f"Alert file write failed: {e}")
            return False


class WebhookAlertChannel(AlertChannel):
    """POSTs each alert as JSON to an operator endpoint."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._url = url
        self._client = client
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "webhook"

    async def deliver(self, alert: Alert) -> bool:
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=asdict(alert))
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=asdict(alert))
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Alert webhook delivery failed: {e}")
            return False


class AlertRouter:
    """Fans every alert event out to all registered channels."""

    def __init__(self, channels: list[AlertChannel] | None = None) -> None:
        self._channels: list[AlertChannel] = list(channels or [])
        self.raised = 0

    def register(self, channel: AlertChannel) -> None:
        self._channels.append(channel)
        logger.debug(f"Alert channel registered: {channel.name}")

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    def attach(self, bus: EventBus) -> None:
        for event_type in ALERT_EVENTS:
            bus.on(event_type, self.handle)

    async def handle(self, event: Event) -> None:
        alert = Alert.from_event(event)
        self.raised += 1
        logger.warning(f"ALERT {alert.summary}")
        for channel in self._channels:
            if not await channel.deliver(alert):
                logger.debug(f"Alert not delivered via {channel.name}")
