"""Tests for snapshot naming and the snapshot poller."""

import pytest

from conftest import START

from dedi_engine.vultr.core.notifications import NotificationKind
from dedi_engine.vultr.instances.snapshots import (
    SnapshotOutcome,
    SnapshotPoller,
    clean_snapshot_name,
    snapshot_description,
)
from dedi_engine.vultr.utils.exceptions import ProviderPermanentError, ProviderTransientError


@pytest.fixture
def poller(provider, notifier, settings, clock):
    return SnapshotPoller(provider, notifier, settings, clock)


@pytest.fixture
def pending(provider):
    provider.snapshots.append(
        {"id": "snap-1", "description": "[PUBLIC] Map Pack | v2", "status": "pending"}
    )
    return "snap-1"


def test_snapshot_description_prefixes():
    assert snapshot_description("Backup") == "[PRIVATE] Backup"
    assert snapshot_description("Map Pack", "v2", public=True) == "[PUBLIC] Map Pack | v2"


def test_clean_snapshot_name():
    assert clean_snapshot_name("[PUBLIC] Map Pack | v2") == "Map Pack | v2"
    assert clean_snapshot_name("[PRIVATE] Backup |") == "Backup"
    assert clean_snapshot_name("Plain") == "Plain"
    assert clean_snapshot_name("[PRIVATE] ") == "Unnamed Snapshot"
    assert clean_snapshot_name(None) == "Unnamed Snapshot"


@pytest.mark.asyncio
async def test_complete_snapshot_reports_size_and_time(poller, pending, provider, notifier, clock):
    provider.snapshot_patches[pending] = [
        {"status": "pending"},
        {"status": "pending"},
        {"status": "complete", "size": 25},
    ]

    result = await poller.poll(pending, "Map Pack", "user-1", "i-1")

    assert result.outcome is SnapshotOutcome.COMPLETE
    assert result.attempts == 3
    assert clock.sleeps[0] == 15.0
    # One progress message per status, not per poll
    assert len(notifier.of_kind(NotificationKind.PROGRESS)) == 1
    ready = notifier.of_kind(NotificationKind.READY)
    assert len(ready) == 1
    assert ready[0].recipient_id == "user-1"
    assert ready[0].instance_id == "i-1"
    assert "Size: 25 GB" in ready[0].message
    assert "Available to all users" in ready[0].message
    assert "Total creation time: 1 minutes" in ready[0].message


@pytest.mark.asyncio
async def test_unlisted_snapshot_keeps_polling(poller, provider, notifier):
    listed = {"id": "snap-2", "description": "[PRIVATE] Late", "status": "complete"}
    calls = []
    list_snapshots = provider.list_snapshots

    async def listing():
        calls.append(1)
        if len(calls) == 3:
            provider.snapshots.append(listed)
        return await list_snapshots()

    provider.list_snapshots = listing

    result = await poller.poll("snap-2", "Late", "user-1")

    assert result.outcome is SnapshotOutcome.COMPLETE
    assert result.attempts == 3
    assert notifier.of_kind(NotificationKind.PROGRESS) == []
    assert "Private snapshot" in notifier.of_kind(NotificationKind.READY)[0].message


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["error", "failed"])
async def test_failed_snapshot(poller, pending, provider, notifier, status):
    provider.snapshot_patches[pending] = [{"status": status}]

    result = await poller.poll(pending, "Map Pack", "user-1")

    assert result.outcome is SnapshotOutcome.FAILED
    assert result.error == status
    failed = notifier.of_kind(NotificationKind.FAILED)
    assert len(failed) == 1
    assert status in failed[0].message


@pytest.mark.asyncio
async def test_stuck_snapshot_times_out_within_ceiling(poller, pending, notifier, clock):
    result = await poller.poll(pending, "Map Pack", "user-1")

    assert result.outcome is SnapshotOutcome.TIMED_OUT
    assert result.attempts == 60
    assert (clock.now() - START).total_seconds() <= 30 * 60
    timeout = notifier.of_kind(NotificationKind.TIMEOUT)
    assert len(timeout) == 1
    assert "30-minute creation limit" in timeout[0].message


@pytest.mark.asyncio
async def test_transient_errors_are_retried(poller, pending, provider, notifier):
    provider.snapshot_errors = [ProviderTransientError("busy", 503)] * 2
    provider.snapshot_patches[pending] = [{"status": "complete", "size": 10}]

    result = await poller.poll(pending, "Map Pack", "user-1")

    assert result.outcome is SnapshotOutcome.COMPLETE
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_errors_until_ceiling_report_monitoring_failure(poller, pending, provider, notifier):
    provider.snapshot_errors = [ProviderTransientError("busy", 503)] * 100

    result = await poller.poll(pending, "Map Pack", "user-1")

    assert result.outcome is SnapshotOutcome.TIMED_OUT
    assert result.error is not None
    assert "Unable to monitor snapshot" in notifier.of_kind(NotificationKind.TIMEOUT)[0].message


@pytest.mark.asyncio
async def test_permanent_error_stops_polling(poller, pending, provider, notifier):
    provider.snapshot_errors = [ProviderPermanentError("Unauthorized", 401)]

    result = await poller.poll(pending, "Map Pack", "user-1")

    assert result.outcome is SnapshotOutcome.FAILED
    assert result.attempts == 1
    assert len(notifier.of_kind(NotificationKind.FAILED)) == 1
