"""
Status reconciliation for freshly provisioned instances.

One `StatusPoller.poll` call drives one instance from creation to ready,
timed out or failed. Many polls may run side by side on the event loop.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..core.notifications import Notification, NotificationKind, Notifier, deliver
from ..core.state import InstanceRegistry, InstanceStatus
from ..utils.clock import Clock, elapsed_seconds
from ..utils.config import OrchestratorSettings
from ..utils.exceptions import (
    InstanceExcludedError,
    NotFoundError,
    ProviderError,
    ProviderPermanentError,
)
from ..utils.logging import get_logger, log_function_call
from .discovery import ExclusionPolicy, InstanceInfo

logger = get_logger(__name__)

REMOTE_DESKTOP_PORT = 8080
WEB_PORT = 34522


class PollPhase(Enum):
    """Where a new instance is on its way to ready."""

    CREATING = "creating"
    RESTORING = "restoring"
    BOOTING = "booting"
    READY = "ready"


class PollOutcome(Enum):
    """How a status poll ended."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    ERROR = "error"
    GONE = "gone"


PHASE_MESSAGES = {
    PollPhase.CREATING: "⏳ Server is being created...",
    PollPhase.RESTORING: "⏳ Restoring server from snapshot, this can take a while...",
    PollPhase.BOOTING: "⏳ Server is booting, waiting for a network address...",
}


@dataclass
class PollResult:
    """Final state of one status poll."""

    outcome: PollOutcome
    instance_id: str
    attempts: int
    instance: InstanceInfo | None = None
    error: str | None = None


def classify_phase(instance: InstanceInfo) -> PollPhase:
    if instance.is_ready:
        return PollPhase.READY
    if instance.is_restoring:
        return PollPhase.RESTORING
    if instance.status == "active":
        return PollPhase.BOOTING
    return PollPhase.CREATING


def connection_urls(ip: str) -> dict[str, str]:
    return {
        "remote_desktop": f"https://{ip}:{REMOTE_DESKTOP_PORT}",
        "web": f"http://{ip}:{WEB_PORT}",
    }


def ready_message(name: str, ip: str) -> str:
    urls = connection_urls(ip)
    return (
        f"✅ Server {name!r} is ready!\n"
        f"IP: {ip}\n"
        f"Remote desktop: {urls['remote_desktop']}\n"
        f"Web: {urls['web']}"
    )


class StatusPoller:
    """Polls the provider until an instance is ready or the ceiling passes."""

    def __init__(
        self,
        policy: ExclusionPolicy,
        registry: InstanceRegistry,
        notifier: Notifier,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
        on_ready: Callable[[str], Any] | None = None,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.notifier = notifier
        self.settings = settings
        self.clock = clock or Clock()
        self.on_ready = on_ready

    async def _notify(
        self, kind: NotificationKind, instance_id: str, recipient_id: str | None, message: str
    ) -> None:
        await deliver(self.notifier, Notification(kind, instance_id, recipient_id, message))

    def _recipient(self, instance_id: str) -> str | None:
        record = self.registry.get(instance_id)
        return record.creator.requester_id if record else None

    @log_function_call
    async def poll(self, instance_id: str) -> PollResult:
        """Poll until ready, gone, failed or timed out.

        The poller never powers the instance on: an active but stopped
        instance is still restoring from its snapshot.
        """
        timings = self.settings.timings
        recipient_id = self._recipient(instance_id)
        started_at = self.clock.now()
        last_phase: PollPhase | None = None
        last_error: str | None = None
        attempts = 0

        await self.clock.sleep(timings.status_initial_delay)

        while True:
            attempts += 1
            try:
                instance = await self.policy.get_instance(instance_id)
            except NotFoundError:
                logger.info(f"Instance {instance_id} no longer exists, stopping status poll")
                self.registry.set_status(instance_id, InstanceStatus.TERMINATED)
                return PollResult(PollOutcome.GONE, instance_id, attempts)
            except (ProviderPermanentError, InstanceExcludedError) as e:
                logger.error(f"❌ Cannot monitor instance {instance_id}: {e}")
                await self._notify(
                    NotificationKind.FAILED,
                    instance_id,
                    recipient_id,
                    f"❌ Unable to monitor server {instance_id}: {e}",
                )
                return PollResult(PollOutcome.ERROR, instance_id, attempts, error=str(e))
            except ProviderError as e:
                last_error = str(e)
                logger.warning(f"Status check {attempts} for {instance_id} failed: {e}")
            else:
                last_error = None
                phase = classify_phase(instance)
                if phase is PollPhase.READY:
                    return await self._ready(instance, recipient_id, attempts)

                self.registry.set_status(
                    instance_id,
                    InstanceStatus.CREATING,
                    {"ip": instance.main_ip if instance.has_address else None},
                )
                if phase is not last_phase:
                    logger.info(f"Instance {instance_id} is {phase.value}")
                    await self._notify(
                        NotificationKind.PROGRESS,
                        instance_id,
                        recipient_id,
                        PHASE_MESSAGES[phase],
                    )
                    last_phase = phase

            elapsed = elapsed_seconds(self.clock, started_at)
            if elapsed + timings.status_poll_interval > timings.status_ceiling:
                return await self._timed_out(instance_id, recipient_id, attempts, last_error)

            await self.clock.sleep(timings.status_poll_interval)

    async def _ready(
        self, instance: InstanceInfo, recipient_id: str | None, attempts: int
    ) -> PollResult:
        record = self.registry.set_status(
            instance.id,
            InstanceStatus.RUNNING,
            {"ip": instance.main_ip, "region": instance.region or None},
        )
        name = record.name if record else instance.label or instance.id
        logger.info(f"✅ Instance {instance.id} ready at {instance.main_ip}")

        await self._notify(
            NotificationKind.READY,
            instance.id,
            recipient_id,
            ready_message(name, instance.main_ip),
        )
        if self.on_ready is not None:
            self.on_ready(instance.id)
        return PollResult(PollOutcome.READY, instance.id, attempts, instance=instance)

    async def _timed_out(
        self,
        instance_id: str,
        recipient_id: str | None,
        attempts: int,
        last_error: str | None,
    ) -> PollResult:
        minutes = int(self.settings.timings.status_ceiling // 60)
        if last_error:
            message = f"❌ Unable to monitor server {instance_id}: {last_error}"
        else:
            message = (
                f"⚠️ Server {instance_id} did not become ready within {minutes} minutes. "
                "Please check its status manually."
            )
        logger.warning(f"⏰ Status poll for {instance_id} timed out after {attempts} checks")
        await self._notify(NotificationKind.TIMEOUT, instance_id, recipient_id, message)
        return PollResult(
            PollOutcome.TIMED_OUT, instance_id, attempts, error=last_error
        )
