"""
Snapshot creation tracking for the Vultr orchestration system.

Snapshot descriptions carry a visibility prefix: "[PUBLIC] name | note" or
"[PRIVATE] name". A `SnapshotPoller.poll` call follows one snapshot from
pending to complete, failed or timed out.
"""

import re
from dataclasses import dataclass
from enum import Enum

from ...types import SnapshotData
from ..core.api import VultrProvider
from ..core.notifications import Notification, NotificationKind, Notifier, deliver
from ..utils.clock import Clock, elapsed_seconds
from ..utils.config import OrchestratorSettings
from ..utils.exceptions import ProviderError, ProviderPermanentError
from ..utils.logging import get_logger, log_function_call

logger = get_logger(__name__)

PUBLIC_PREFIX = "[PUBLIC]"
PRIVATE_PREFIX = "[PRIVATE]"
FAILED_STATUSES = ("error", "failed")

_PREFIX_PATTERN = re.compile(r"^\[(PUBLIC|PRIVATE)\]\s*")
_TRAILING_SEPARATOR = re.compile(r"\s*\|\s*$")


def snapshot_description(name: str, description: str = "", public: bool = False) -> str:
    prefix = PUBLIC_PREFIX if public else PRIVATE_PREFIX
    if description:
        return f"{prefix} {name} | {description}"
    return f"{prefix} {name}"


def clean_snapshot_name(description: str | None) -> str:
    """Display name of a snapshot without its visibility prefix."""
    cleaned = _PREFIX_PATTERN.sub("", description or "")
    cleaned = _TRAILING_SEPARATOR.sub("", cleaned).strip()
    return cleaned or "Unnamed Snapshot"


def is_public_snapshot(snapshot: SnapshotData) -> bool:
    return (snapshot.get("description") or "").startswith(PUBLIC_PREFIX)


class SnapshotOutcome(Enum):
    """How a snapshot poll ended."""

    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class SnapshotResult:
    """Final state of one snapshot poll."""

    outcome: SnapshotOutcome
    snapshot_id: str
    attempts: int
    snapshot: SnapshotData | None = None
    error: str | None = None


class SnapshotPoller:
    """Polls the snapshot listing until a new snapshot settles."""

    def __init__(
        self,
        provider: VultrProvider,
        notifier: Notifier,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
    ) -> None:
        self.provider = provider
        self.notifier = notifier
        self.settings = settings
        self.clock = clock or Clock()

    async def _notify(
        self,
        kind: NotificationKind,
        instance_id: str | None,
        recipient_id: str | None,
        message: str,
    ) -> None:
        await deliver(self.notifier, Notification(kind, instance_id, recipient_id, message))

    async def _find(self, snapshot_id: str) -> SnapshotData | None:
        for snapshot in await self.provider.list_snapshots():
            if snapshot.get("id") == snapshot_id:
                return snapshot
        return None

    @log_function_call
    async def poll(
        self,
        snapshot_id: str,
        name: str,
        recipient_id: str | None = None,
        instance_id: str | None = None,
    ) -> SnapshotResult:
        """Poll until the snapshot is complete, failed or the ceiling passes.

        A snapshot missing from the listing is still being registered and
        keeps the poll going. Transient API errors are retried until the
        ceiling.
        """
        timings = self.settings.timings
        started_at = self.clock.now()
        last_status: str | None = None
        last_error: str | None = None
        attempts = 0

        await self.clock.sleep(timings.snapshot_initial_delay)

        while True:
            attempts += 1
            try:
                snapshot = await self._find(snapshot_id)
            except ProviderPermanentError as e:
                logger.error(f"❌ Cannot monitor snapshot {snapshot_id}: {e}")
                await self._notify(
                    NotificationKind.FAILED,
                    instance_id,
                    recipient_id,
                    f"❌ Unable to monitor snapshot {name!r}: {e}",
                )
                return SnapshotResult(
                    SnapshotOutcome.FAILED, snapshot_id, attempts, error=str(e)
                )
            except ProviderError as e:
                last_error = str(e)
                logger.warning(f"Snapshot check {attempts} for {snapshot_id} failed: {e}")
            else:
                last_error = None
                if snapshot is None:
                    logger.info(f"Snapshot {snapshot_id} not listed yet")
                else:
                    status = snapshot.get("status") or "pending"
                    if status == "complete":
                        return await self._complete(
                            snapshot, name, recipient_id, instance_id, started_at, attempts
                        )
                    if status in FAILED_STATUSES:
                        return await self._failed(
                            snapshot, name, recipient_id, instance_id, attempts
                        )
                    if status != last_status:
                        logger.info(f"Snapshot {snapshot_id} is {status}")
                        await self._notify(
                            NotificationKind.PROGRESS,
                            instance_id,
                            recipient_id,
                            f"⏳ Snapshot {name!r} status: {status} "
                            f"({self._elapsed_minutes(started_at)}min elapsed)",
                        )
                        last_status = status

            elapsed = elapsed_seconds(self.clock, started_at)
            if elapsed + timings.snapshot_poll_interval > timings.snapshot_ceiling:
                return await self._timed_out(
                    snapshot_id, name, recipient_id, instance_id, attempts, last_error
                )

            await self.clock.sleep(timings.snapshot_poll_interval)

    def _elapsed_minutes(self, started_at) -> int:
        return int(elapsed_seconds(self.clock, started_at) // 60)

    async def _complete(
        self,
        snapshot: SnapshotData,
        name: str,
        recipient_id: str | None,
        instance_id: str | None,
        started_at,
        attempts: int,
    ) -> SnapshotResult:
        minutes = self._elapsed_minutes(started_at)
        visibility = (
            "🌍 Available to all users"
            if is_public_snapshot(snapshot)
            else "🔒 Private snapshot for admin use"
        )
        logger.info(f"✅ Snapshot {snapshot['id']} completed after {minutes} minutes")
        await self._notify(
            NotificationKind.READY,
            instance_id,
            recipient_id,
            f"✅ Snapshot {name!r} is complete!\n"
            f"Size: {snapshot.get('size') or 'Unknown'} GB\n"
            f"ID: {snapshot['id']}\n"
            f"{visibility}\n"
            f"Total creation time: {minutes} minutes",
        )
        return SnapshotResult(
            SnapshotOutcome.COMPLETE, snapshot["id"], attempts, snapshot=snapshot
        )

    async def _failed(
        self,
        snapshot: SnapshotData,
        name: str,
        recipient_id: str | None,
        instance_id: str | None,
        attempts: int,
    ) -> SnapshotResult:
        status = snapshot.get("status")
        logger.error(f"❌ Snapshot {snapshot['id']} failed with status: {status}")
        await self._notify(
            NotificationKind.FAILED,
            instance_id,
            recipient_id,
            f"❌ Snapshot {name!r} creation failed (status: {status}). "
            "Please try again.",
        )
        return SnapshotResult(
            SnapshotOutcome.FAILED, snapshot["id"], attempts, snapshot=snapshot, error=status
        )

    async def _timed_out(
        self,
        snapshot_id: str,
        name: str,
        recipient_id: str | None,
        instance_id: str | None,
        attempts: int,
        last_error: str | None,
    ) -> SnapshotResult:
        minutes = int(self.settings.timings.snapshot_ceiling // 60)
        if last_error:
            message = (
                f"❌ Unable to monitor snapshot {name!r} (API errors). "
                "It may still complete; check the Vultr dashboard."
            )
        else:
            message = (
                f"⏰ Snapshot {name!r} exceeded the {minutes}-minute creation limit. "
                "Check the Vultr dashboard manually."
            )
        logger.warning(f"⏰ Snapshot poll for {snapshot_id} gave up after {attempts} checks")
        await self._notify(NotificationKind.TIMEOUT, instance_id, recipient_id, message)
        return SnapshotResult(
            SnapshotOutcome.TIMED_OUT, snapshot_id, attempts, error=last_error
        )
