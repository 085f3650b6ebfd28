"""Tests for the status reconciliation poller."""

import pytest

from conftest import ALICE, READY_IP

from dedi_engine.vultr.core.notifications import NotificationKind
from dedi_engine.vultr.core.state import InstanceStatus
from dedi_engine.vultr.instances.discovery import ExclusionPolicy
from dedi_engine.vultr.instances.monitoring import PollOutcome, StatusPoller
from dedi_engine.vultr.utils.exceptions import (
    NotFoundError,
    ProviderPermanentError,
    ProviderTransientError,
)


@pytest.fixture
def ready_ids():
    return []


@pytest.fixture
def poller(provider, registry, notifier, settings, clock, ready_ids):
    return StatusPoller(
        ExclusionPolicy(provider),
        registry,
        notifier,
        settings,
        clock,
        on_ready=ready_ids.append,
    )


@pytest.fixture
def pending(provider, registry):
    provider.add_instance(
        "i-1", status="pending", power_status="stopped", main_ip="0.0.0.0"
    )
    registry.upsert("i-1", ALICE, InstanceStatus.CREATING, {"name": "Test"})
    return "i-1"


@pytest.mark.asyncio
async def test_ready_instance_notifies_once_and_starts_timer(
    poller, pending, notifier, registry, ready_ids
):
    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.READY
    ready = notifier.of_kind(NotificationKind.READY)
    assert len(ready) == 1
    assert ready[0].recipient_id == ALICE.requester_id
    assert f"http://{READY_IP}:34522" in ready[0].message
    assert f"https://{READY_IP}:8080" in ready[0].message
    assert ready_ids == [pending]

    record = registry.get(pending)
    assert record.status is InstanceStatus.RUNNING
    assert record.ip == READY_IP


@pytest.mark.asyncio
async def test_restoring_instance_is_never_started(poller, pending, provider, notifier):
    provider.get_patches[pending] = [
        {"status": "active", "power_status": "stopped"},
        {"status": "active", "power_status": "stopped"},
        {"status": "active", "power_status": "stopped"},
        {"status": "active", "power_status": "running", "main_ip": "0.0.0.0"},
        {"status": "active", "power_status": "running", "main_ip": READY_IP},
    ]

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.READY
    assert result.attempts == 5
    assert provider.calls_to("start_instance") == []
    # One progress message per phase, not per poll
    assert len(notifier.of_kind(NotificationKind.PROGRESS)) == 2
    assert len(notifier.of_kind(NotificationKind.READY)) == 1


@pytest.mark.asyncio
async def test_placeholder_address_is_not_ready(poller, pending, provider, registry):
    provider.auto_boot = False
    provider.instances[pending].update(status="active", power_status="running")

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert registry.get(pending).self_destruct_timer is None


@pytest.mark.asyncio
async def test_poll_times_out_at_ceiling(poller, pending, provider, notifier, clock, settings):
    provider.auto_boot = False
    started = clock.now()

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert (clock.now() - started).total_seconds() <= settings.timings.status_ceiling
    assert clock.sleeps[0] == 10.0
    assert set(clock.sleeps[1:]) == {45.0}
    assert len(notifier.of_kind(NotificationKind.TIMEOUT)) == 1
    assert len(notifier.of_kind(NotificationKind.PROGRESS)) == 1
    assert notifier.of_kind(NotificationKind.READY) == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried(poller, pending, provider, notifier):
    provider.get_errors = [
        ProviderTransientError("rate limited", 429),
        ProviderTransientError("timeout"),
    ]

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.READY
    assert result.attempts == 3
    assert notifier.of_kind(NotificationKind.FAILED) == []


@pytest.mark.asyncio
async def test_errors_until_ceiling_report_unable_to_monitor(poller, pending, provider, notifier):
    provider.get_errors = [ProviderTransientError("down", 503) for _ in range(100)]

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.TIMED_OUT
    timeouts = notifier.of_kind(NotificationKind.TIMEOUT)
    assert len(timeouts) == 1
    assert "Unable to monitor" in timeouts[0].message


@pytest.mark.asyncio
async def test_vanished_instance_exits_quietly(poller, pending, provider, notifier, registry):
    provider.get_errors = [NotFoundError("gone", 404)]

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.GONE
    assert notifier.notifications == []
    assert registry.get(pending).status is InstanceStatus.TERMINATED


@pytest.mark.asyncio
async def test_permanent_error_fails_once(poller, pending, provider, notifier):
    provider.get_errors = [ProviderPermanentError("unauthorized", 401)]

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.ERROR
    assert len(notifier.of_kind(NotificationKind.FAILED)) == 1
    assert len(provider.calls_to("get_instance")) == 1


@pytest.mark.asyncio
async def test_excluded_instance_is_not_polled(provider, registry, notifier, settings, clock):
    provider.add_instance("host")
    registry.upsert("host", ALICE, InstanceStatus.CREATING)
    poller = StatusPoller(
        ExclusionPolicy(provider, exclude_instance_id="host"), registry, notifier, settings, clock
    )

    result = await poller.poll("host")

    assert result.outcome is PollOutcome.ERROR
    assert registry.get("host").status is InstanceStatus.CREATING


@pytest.mark.asyncio
async def test_notification_failures_do_not_break_polling(
    provider, registry, settings, clock, pending
):
    from conftest import RecordingNotifier

    poller = StatusPoller(
        ExclusionPolicy(provider), registry, RecordingNotifier(fail=True), settings, clock
    )

    result = await poller.poll(pending)

    assert result.outcome is PollOutcome.READY
