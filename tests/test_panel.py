"""Tests for panel rendering, publishing and the render serializer."""

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import ALICE, BOB, READY_IP, RecordingPublisher

from dedi_engine.vultr.core.panel_store import PanelLocation, PanelState, PanelStore
from dedi_engine.vultr.core.state import InstanceStatus, SelfDestructTimer
from dedi_engine.vultr.instances.discovery import ExclusionPolicy
from dedi_engine.vultr.orchestration.panel import (
    FilePanelPublisher,
    PanelRenderer,
    PanelService,
    RenderSerializer,
    timer_label,
)
from dedi_engine.vultr.orchestration.scheduler import TaskScheduler
from dedi_engine.vultr.utils.exceptions import ProviderTransientError


class GatedRender:
    """Render function that blocks until released."""

    def __init__(self) -> None:
        self.calls = 0
        self.gate = asyncio.Event()

    async def __call__(self) -> None:
        self.calls += 1
        await self.gate.wait()


@pytest.mark.asyncio
@pytest.mark.parametrize("burst", [1, 2, 10])
async def test_burst_during_render_causes_exactly_one_more(clock, burst):
    scheduler = TaskScheduler(clock)
    render = GatedRender()
    serializer = RenderSerializer(render, scheduler, coalesce_delay=1.0)

    first = asyncio.ensure_future(serializer.request_render("first"))
    await asyncio.sleep(0)
    assert serializer.in_progress

    for i in range(burst):
        await serializer.request_render(f"burst-{i}")
    assert render.calls == 1
    assert serializer.pending

    render.gate.set()
    await first
    await scheduler.drain()

    assert render.calls == 2
    assert not serializer.in_progress
    assert not serializer.pending


@pytest.mark.asyncio
async def test_no_follow_up_without_requests(clock):
    scheduler = TaskScheduler(clock)
    render = GatedRender()
    render.gate.set()
    serializer = RenderSerializer(render, scheduler)

    await serializer.request_render()
    await scheduler.drain()

    assert render.calls == 1
    assert len(scheduler) == 0


@pytest.mark.asyncio
async def test_failed_render_releases_the_guard(clock):
    scheduler = TaskScheduler(clock)
    attempts = []

    async def flaky() -> None:
        attempts.append(1)
        if len(attempts) == 1:
            raise OSError("disk full")

    serializer = RenderSerializer(flaky, scheduler)

    await serializer.request_render()
    assert not serializer.in_progress

    await serializer.request_render()
    assert len(attempts) == 2
    assert serializer.render_count == 1


@pytest.fixture
def renderer(provider, registry, clock):
    return PanelRenderer(ExclusionPolicy(provider), registry, clock)


@pytest.mark.asyncio
async def test_render_lists_active_servers(renderer, provider, registry, clock):
    provider.add_instance("i-1", date_created=(clock.now() - timedelta(minutes=90)).isoformat())
    registry.upsert("i-1", ALICE, InstanceStatus.RUNNING, {"name": "Game Night", "ip": READY_IP})
    registry.get("i-1").self_destruct_timer = SelfDestructTimer(
        expires_at=clock.now() + timedelta(minutes=42, seconds=7),
        initial_duration=timedelta(minutes=180),
    )
    registry.upsert("i-2", BOB, InstanceStatus.CREATING)

    content = await renderer.render()

    assert "Game Night" in content
    assert f"http://{READY_IP}:34522" in content
    assert "⏰💣 42:07" in content
    # 2 started hours at 7.30/730 per hour
    assert "$0.02" in content
    assert "Alice" in content
    assert "Bob's Server" in content
    assert "pending" in content
    assert "Running: 1 | Stopped: 0 | Total: 1" in content


@pytest.mark.asyncio
async def test_render_lists_recently_destroyed(renderer, registry):
    registry.upsert("i-1", ALICE, InstanceStatus.RUNNING, {"name": "Old Box"})
    registry.set_status("i-1", InstanceStatus.DESTROYED)

    content = await renderer.render()

    assert "No active servers." in content
    assert "Recently destroyed:" in content
    assert "Old Box" in content


@pytest.mark.asyncio
async def test_render_survives_provider_outage(renderer, provider, registry):
    provider.list_errors = [ProviderTransientError("down", 503)]
    registry.upsert("i-1", ALICE, InstanceStatus.RUNNING)

    content = await renderer.render()

    assert "Alice's Server" in content
    assert "unavailable" in content


@pytest.mark.asyncio
async def test_render_hides_excluded_instances_from_counts(provider, registry, clock):
    provider.add_instance("host")
    provider.add_instance("i-1")
    renderer = PanelRenderer(ExclusionPolicy(provider, exclude_instance_id="host"), registry, clock)

    content = await renderer.render()

    assert "Total: 1" in content


@pytest.mark.parametrize(
    "minutes, expected",
    [(120, "⏰💣"), (9, "⚠️💣"), (4, "🔴💣"), (-1, "EXPIRED")],
)
def test_timer_label_markers(registry, clock, minutes, expected):
    record = registry.upsert("i-1", ALICE, InstanceStatus.RUNNING)
    record.self_destruct_timer = SelfDestructTimer(
        expires_at=clock.now() + timedelta(minutes=minutes),
        initial_duration=timedelta(minutes=180),
    )

    assert timer_label(record, clock.now()).startswith(expected)


def test_timer_label_without_timer(registry, clock):
    record = registry.upsert("i-1", ALICE, InstanceStatus.CREATING)

    assert timer_label(record, clock.now()) == "No timer"


@pytest.mark.asyncio
async def test_file_publisher_writes_content(tmp_path):
    publisher = FilePanelPublisher(tmp_path / "panel.txt")

    location = await publisher.publish("hello panel", None)

    assert (tmp_path / "panel.txt").read_text(encoding="utf-8") == "hello panel"
    assert location.message_id == "panel.txt"


@pytest.mark.asyncio
async def test_panel_service_persists_location(renderer, tmp_path, clock):
    store = PanelStore(tmp_path / "panel_data.json")
    publisher = RecordingPublisher()
    service = PanelService(renderer, publisher, store, clock)

    await service.refresh()

    restored = PanelService(renderer, publisher, store, clock).restore()
    assert restored.location == publisher.location
    assert restored.last_update == clock.now()


def test_panel_store_ignores_unknown_keys(tmp_path):
    state_file = tmp_path / "panel_data.json"
    state_file.write_text(
        json.dumps(
            {
                "messageId": "m-1",
                "channelId": "c-1",
                "lastUpdate": "2026-10-18T12:00:00+00:00",
                "theme": "dark",
            }
        )
    )

    state = PanelStore(state_file).load()

    assert state.location == PanelLocation(channel_id="c-1", message_id="m-1")
    assert state.last_update.hour == 12


def test_panel_store_treats_corrupt_file_as_empty(tmp_path):
    state_file = tmp_path / "panel_data.json"
    state_file.write_text("{not json")

    state = PanelStore(state_file).load()

    assert state == PanelState()


def test_panel_store_missing_file_is_empty(tmp_path):
    assert PanelStore(tmp_path / "absent.json").load() == PanelState()
