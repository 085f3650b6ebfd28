"""
Instance lifecycle management for the Vultr orchestration system.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ...types import ActionResult
from ..core.api import VultrProvider
from ..core.state import InstanceRegistry, InstanceStatus
from ..utils.clock import Clock, elapsed_seconds
from ..utils.config import OrchestratorSettings
from ..utils.exceptions import (
    BadRequestError,
    InstanceExcludedError,
    NotFoundError,
    ProviderError,
    ProviderPermanentError,
)
from ..utils.logging import get_logger, log_function_call
from .discovery import ExclusionPolicy

logger = get_logger(__name__)


class DestructionOutcome(Enum):
    """How a destruction poll ended."""

    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


@dataclass
class DestructionResult:
    outcome: DestructionOutcome
    instance_id: str
    ticks: int


def is_proof_of_absence(error: ProviderError) -> bool:
    """404 and 403 both mean the instance is gone for deletion purposes."""
    return isinstance(error, NotFoundError) or (
        isinstance(error, ProviderPermanentError) and error.status_code == 403
    )


class DestructionPoller:
    """Re-issues deletes until the provider stops reporting the instance."""

    def __init__(
        self,
        provider: VultrProvider,
        registry: InstanceRegistry,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.settings = settings
        self.clock = clock or Clock()

    async def _tick(self, instance_id: str) -> bool:
        """One existence check plus delete; True once the instance is gone."""
        try:
            await self.provider.get_instance(instance_id)
        except ProviderError as e:
            if is_proof_of_absence(e):
                return True
            if isinstance(e, ProviderPermanentError):
                raise
            logger.warning(f"Could not check instance {instance_id}: {e}")
            return False

        try:
            await self.provider.delete_instance(instance_id)
            logger.info(f"Delete issued for instance {instance_id}, awaiting confirmation")
        except BadRequestError:
            logger.info(f"Instance {instance_id} busy, delete will be retried")
        except ProviderError as e:
            if is_proof_of_absence(e):
                return True
            if isinstance(e, ProviderPermanentError):
                raise
            logger.warning(f"Delete of instance {instance_id} failed: {e}")
        return False

    @log_function_call
    async def confirm_destruction(self, instance_id: str) -> DestructionResult:
        """Delete and re-check until absent or the ceiling passes.

        Authentication failures propagate; every other provider error is
        retried on the next tick.
        """
        timings = self.settings.timings
        started_at = self.clock.now()
        ticks = 0

        await self.clock.sleep(timings.destroy_initial_delay)

        while True:
            ticks += 1
            if await self._tick(instance_id):
                self.registry.set_status(instance_id, InstanceStatus.DESTROYED)
                logger.info(f"🗑️ Instance {instance_id} confirmed destroyed after {ticks} checks")
                return DestructionResult(DestructionOutcome.CONFIRMED, instance_id, ticks)

            elapsed = elapsed_seconds(self.clock, started_at)
            if elapsed + timings.destroy_poll_interval > timings.destroy_ceiling:
                logger.warning(f"⏰ Could not confirm destruction of {instance_id}")
                return DestructionResult(DestructionOutcome.TIMED_OUT, instance_id, ticks)

            await self.clock.sleep(timings.destroy_poll_interval)


class PowerController:
    """Start, stop and restart actions that wait for the target power state."""

    def __init__(
        self,
        policy: ExclusionPolicy,
        registry: InstanceRegistry,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
        on_running: Callable[[str], Any] | None = None,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.settings = settings
        self.clock = clock or Clock()
        self.on_running = on_running

    @property
    def provider(self) -> VultrProvider:
        return self.policy.provider

    async def wait_for_power_status(self, instance_id: str, target: str) -> bool:
        """Poll until power_status equals target; False on ceiling or exclusion."""
        timings = self.settings.timings
        started_at = self.clock.now()

        while elapsed_seconds(self.clock, started_at) < timings.power_ceiling:
            try:
                instance = await self.policy.get_instance(instance_id)
            except InstanceExcludedError:
                return False
            except ProviderError as e:
                logger.error(f"Error checking instance status for {instance_id}: {e}")
            else:
                logger.debug(
                    f"Waiting for status: {instance.power_status}, expecting: {target}"
                )
                if instance.power_status == target:
                    return True
            await self.clock.sleep(timings.power_poll_interval)

        return False

    async def _run(
        self, instance_id: str, verb: str, action: Callable[[str], Any], target: str
    ) -> ActionResult:
        logger.info(f"{verb.capitalize()} instance {instance_id}")
        try:
            await self.policy.get_instance(instance_id)
            await action(instance_id)
        except (ProviderError, InstanceExcludedError) as e:
            logger.error(f"❌ Failed to {verb} instance {instance_id}: {e}")
            return {
                "status": "FAILED",
                "instance_id": instance_id,
                "message": f"There was an error trying to {verb} the server.",
                "error": str(e),
            }

        if not await self.wait_for_power_status(instance_id, target):
            return {
                "status": "FAILED",
                "instance_id": instance_id,
                "message": f"Failed to confirm the server is {target}. "
                "Please check its status manually.",
                "error": None,
            }

        status = InstanceStatus.from_power_status(target)
        self.registry.set_status(instance_id, status)
        if status is InstanceStatus.RUNNING and self.on_running is not None:
            self.on_running(instance_id)

        logger.info(f"✅ Instance {instance_id} is {target}")
        return {
            "status": "SUCCESS",
            "instance_id": instance_id,
            "message": f"Server is {target}.",
            "error": None,
        }

    async def start(self, instance_id: str) -> ActionResult:
        return await self._run(instance_id, "start", self.provider.start_instance, "running")

    async def stop(self, instance_id: str) -> ActionResult:
        return await self._run(instance_id, "stop", self.provider.halt_instance, "stopped")

    async def restart(self, instance_id: str) -> ActionResult:
        """Reboot and wait until the instance reports running again."""
        return await self._run(
            instance_id, "restart", self.provider.reboot_instance, "running"
        )
