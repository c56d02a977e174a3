"""Tests for cronpipe/core/alerts.py"""

import json

import httpx
import pytest

from cronpipe.core.alerts import (
    Alert,
    AlertChannel,
    AlertRouter,
    FileAlertChannel,
    WebhookAlertChannel,
)
from cronpipe.core.events import Event, EventType


class RecordingChannel(AlertChannel):
    def __init__(self, ok: bool = True) -> None:
        self.alerts: list[Alert] = []
        self._ok = ok

    @property
    def name(self) -> str:
        return "recording"

    async def deliver(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return self._ok


def test_alert_from_publish_failure():
    alert = Alert.from_event(Event(
        type=EventType.DISPATCH_PUBLISH_FAILED,
        source="dispatcher",
        data={"run_id": "r1", "job_id": "j1", "error": "queue unreachable"},
    ))
    assert alert.kind == "dispatch:publish_failed"
    assert alert.summary == "run r1 of job j1 was not queued: queue unreachable"
    assert alert.source == "dispatcher"


def test_alert_from_tick_error_stringifies_details():
    alert = Alert.from_event(Event(
        type=EventType.PIPELINE_ERROR, data={"stage": "scheduler", "error": ValueError("locked")}
    ))
    assert alert.summary == "scheduler tick failed: locked"
    assert alert.details == {"stage": "scheduler", "error": "locked"}


@pytest.mark.asyncio
async def test_router_subscribes_to_alert_events_only(bus):
    channel = RecordingChannel()
    router = AlertRouter([channel])
    router.attach(bus)

    await bus.emit(Event(type=EventType.SCHEDULE_INVALID, data={"job_id": "j1", "error": "bad tz"}))
    await bus.emit(Event(type=EventType.RUN_CREATED, data={"run_id": "r1"}))
    await bus.emit(Event(type=EventType.DISPATCH_DEFERRED, data={"run_id": "r2"}))
    await bus.emit(Event(type=EventType.PIPELINE_ERROR, data={"stage": "executor", "error": "x"}))

    assert [a.kind for a in channel.alerts] == ["schedule:invalid", "pipeline:error"]
    assert router.raised == 2


@pytest.mark.asyncio
async def test_failed_channel_does_not_stop_the_others(bus):
    down, up = RecordingChannel(ok=False), RecordingChannel()
    router = AlertRouter([down, up])
    router.attach(bus)

    await bus.emit(Event(type=EventType.SCHEDULE_INVALID, data={"job_id": "j1"}))

    assert len(down.alerts) == 1
    assert len(up.alerts) == 1


@pytest.mark.asyncio
async def test_file_channel_appends(tmp_path):
    channel = FileAlertChannel(tmp_path / "nested" / "alerts.log")
    for job_id in ("j1", "j2"):
        await channel.deliver(Alert(kind="schedule:invalid", summary=f"job {job_id} broken"))

    lines = channel.log_path.read_text().splitlines()
    assert len(lines) == 2
    assert lines[1].endswith("[schedule:invalid] job j2 broken")


@pytest.mark.asyncio
async def test_webhook_channel_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    channel = WebhookAlertChannel("https://ops.example.test/hook", client=client)

    assert await channel.deliver(Alert(kind="pipeline:error", summary="boom")) is True
    assert seen[0]["kind"] == "pipeline:error"
    assert seen[0]["summary"] == "boom"
    await client.aclose()


@pytest.mark.asyncio
async def test_webhook_channel_reports_failure():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    channel = WebhookAlertChannel("https://ops.example.test/hook", client=client)
    assert await channel.deliver(Alert(kind="pipeline:error", summary="boom")) is False
    await client.aclose()
