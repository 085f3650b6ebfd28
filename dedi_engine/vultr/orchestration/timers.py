"""
Self-destruct timers for the Vultr orchestration system.

A single sweep runs every `timer_sweep_interval` seconds over the active
records, sending the 10 and 5 minute warnings and deleting expired instances.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.notifications import Notification, NotificationKind, Notifier, deliver
from ..core.state import (
    WARNING_FIRST,
    WARNING_FINAL,
    InstanceRecord,
    InstanceRegistry,
    InstanceStatus,
    SelfDestructTimer,
)
from ..instances.discovery import ExclusionPolicy
from ..instances.lifecycle import is_proof_of_absence
from ..utils.clock import Clock
from ..utils.config import OrchestratorSettings
from ..utils.exceptions import (
    InstanceExcludedError,
    NoActiveTimer,
    NotFoundError,
    ProviderError,
)
from ..utils.logging import get_logger, log_function_call

logger = get_logger(__name__)


def format_remaining_time(remaining: timedelta) -> str:
    """H:MM:SS above an hour, M:SS below, 0:00 once expired."""
    total_seconds = int(remaining.total_seconds())
    if total_seconds <= 0:
        return "0:00"

    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


@dataclass
class SweepResult:
    """What one sweep did."""

    warned: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    retry: list[str] = field(default_factory=list)


class SelfDestructTimerEngine:
    """Owns every self-destruct timer in the registry."""

    def __init__(
        self,
        policy: ExclusionPolicy,
        registry: InstanceRegistry,
        notifier: Notifier,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
        is_busy: Callable[[str], bool] | None = None,
        on_expired: Callable[[str], Any] | None = None,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.notifier = notifier
        self.settings = settings
        self.clock = clock or Clock()
        self.is_busy = is_busy or (lambda instance_id: False)
        self.on_expired = on_expired

    def initialize_timer(
        self, instance_id: str, duration: timedelta | None = None
    ) -> SelfDestructTimer | None:
        """Start the timer for a running instance; a second call is a no-op."""
        record = self.registry.get(instance_id)
        if record is None or not record.is_active:
            return None
        if record.self_destruct_timer is not None:
            logger.debug(f"Timer already set for {instance_id}, keeping it")
            return record.self_destruct_timer

        duration = duration or self.settings.self_destruct_initial
        record.self_destruct_timer = SelfDestructTimer(
            expires_at=self.clock.now() + duration,
            initial_duration=duration,
        )
        record.last_updated = self.clock.now()
        logger.info(
            f"⏰ Self-destruct timer set for {instance_id}: "
            f"{int(duration.total_seconds() // 60)} minutes"
        )
        return record.self_destruct_timer

    def extend(self, instance_id: str) -> datetime:
        """Push the deadline back by the fixed extension; warnings stay recorded."""
        record = self.registry.get(instance_id)
        if record is None or record.self_destruct_timer is None:
            raise NoActiveTimer(instance_id)

        timer = record.self_destruct_timer
        timer.expires_at += self.settings.self_destruct_extension
        timer.extended_count += 1
        record.last_updated = self.clock.now()

        logger.info(
            f"Timer for {instance_id} extended to {timer.expires_at.isoformat()} "
            f"(extension #{timer.extended_count})"
        )
        return timer.expires_at

    async def _notify(self, record: InstanceRecord, kind: NotificationKind, message: str) -> None:
        await deliver(
            self.notifier,
            Notification(kind, record.id, record.creator.requester_id, message),
        )

    @log_function_call
    async def sweep(self) -> SweepResult:
        """Check every active timer once."""
        result = SweepResult()
        now = self.clock.now()
        first_threshold = self.settings.timings.first_warning_minutes
        final_threshold = self.settings.timings.final_warning_minutes

        for record in self.registry.list_active():
            timer = record.self_destruct_timer
            if timer is None:
                continue

            remaining_minutes = timer.remaining(now).total_seconds() / 60

            if remaining_minutes <= 0:
                if self.is_busy(record.id):
                    logger.info(f"Skipping expiry of {record.id}, action in progress")
                    result.skipped.append(record.id)
                elif await self._expire(record):
                    result.expired.append(record.id)
                else:
                    result.retry.append(record.id)

            elif (
                final_threshold < remaining_minutes <= first_threshold
                and WARNING_FIRST not in timer.warnings_sent
            ):
                timer.warnings_sent.add(WARNING_FIRST)
                await self._warn(record, first_threshold)
                result.warned.append(record.id)

            elif (
                remaining_minutes <= final_threshold
                and WARNING_FINAL not in timer.warnings_sent
            ):
                # The final warning retires the first one too, so it never follows
                timer.warnings_sent.update((WARNING_FIRST, WARNING_FINAL))
                await self._warn(record, final_threshold)
                result.warned.append(record.id)

        self.registry.prune(self.settings.destroyed_retention)
        return result

    async def _warn(self, record: InstanceRecord, minutes: int) -> None:
        logger.info(f"⚠️ Sending {minutes}-minute warning for {record.id}")
        await self._notify(
            record,
            NotificationKind.WARNING,
            f"⚠️ Server {record.name!r} will self-destruct in {minutes} minutes! "
            "Extend the timer to keep it running.",
        )

    async def _expire(self, record: InstanceRecord) -> bool:
        """Delete an expired instance; False leaves it for the next sweep."""
        logger.info(f"🔥 Timer expired for {record.id}, destroying")
        try:
            await self.policy.get_instance(record.id)
        except NotFoundError:
            logger.info(f"Instance {record.id} already gone, marking destroyed")
            self.registry.set_status(record.id, InstanceStatus.DESTROYED)
            return True
        except InstanceExcludedError:
            logger.warning(f"Dropping timer of protected instance {record.id}")
            record.self_destruct_timer = None
            return False
        except ProviderError as e:
            logger.error(f"❌ Could not verify {record.id} before expiry: {e}")
            return False

        try:
            await self.policy.provider.delete_instance(record.id)
        except ProviderError as e:
            if not is_proof_of_absence(e):
                logger.error(f"❌ Failed to destroy expired {record.id}, will retry: {e}")
                return False

        self.registry.set_status(record.id, InstanceStatus.DESTROYED)
        logger.info(f"🗑️ Self-destructed instance {record.id}")
        await self._notify(
            record,
            NotificationKind.EXPIRED,
            f"💥 Server {record.name!r} has self-destructed after its timer expired.",
        )
        if self.on_expired is not None:
            self.on_expired(record.id)
        return True

    async def run(self) -> None:
        """Sweep forever on the fixed cadence; cancel the task to stop."""
        timings = self.settings.timings
        await self.clock.sleep(timings.timer_initial_delay)
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in self-destruct sweep: {e}")
            await self.clock.sleep(timings.timer_sweep_interval)
