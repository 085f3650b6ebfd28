"""
Instance provisioning for the Vultr orchestration system.

A provisioned instance is either returned with its firewall group verified
on the provider side, or deleted before the failure is raised.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ...types import ProviderInstance
from ..core.api import VultrProvider
from ..core.billing import parse_provider_datetime
from ..utils.clock import Clock
from ..utils.config import OrchestratorSettings, is_uuid
from ..utils.exceptions import (
    BadRequestError,
    ConfigurationError,
    ImageNotFoundError,
    NotFoundError,
    ProviderError,
    ProviderTransientError,
    SecurityAttachmentFailed,
    ValidationError,
)
from ..utils.logging import get_logger, log_execution_time, log_function_call

logger = get_logger(__name__)


@dataclass
class InstanceHandle:
    """A freshly created instance with its firewall group verified."""

    id: str
    label: str
    region: str
    plan: str
    snapshot_id: str
    firewall_group_id: str
    main_ip: str = ""
    status: str = "pending"
    power_status: str = ""
    ddos_protection: bool = False
    attach_attempts: int = 0
    features: list[str] = field(default_factory=list)


class Provisioner:
    """Creates hardened instances from snapshots."""

    def __init__(
        self,
        provider: VultrProvider,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.clock = clock or Clock()

    def check_security_config(self) -> str:
        """Return the firewall group id or raise ConfigurationError."""
        firewall_group_id = self.settings.firewall_group_id
        if not firewall_group_id:
            raise ConfigurationError(
                "SECURITY ERROR: VULTR_FIREWALL_GROUP_ID is not configured. "
                "Cannot create instance without firewall protection."
            )
        if not is_uuid(firewall_group_id):
            raise ConfigurationError(
                f"SECURITY ERROR: Invalid firewall group ID format: {firewall_group_id}"
            )
        return firewall_group_id

    async def validate(self, image_ref: str | None, region: str) -> str:
        """Check the snapshot and region exist; returns the snapshot id to use."""
        snapshot_id = image_ref or self.settings.default_snapshot_id
        if not snapshot_id:
            raise ValidationError("No snapshot given and VULTR_SNAPSHOT_ID is not set")

        snapshots = await self.provider.list_snapshots()
        if not any(s.get("id") == snapshot_id for s in snapshots):
            raise ImageNotFoundError(f"Snapshot {snapshot_id} not found", 404)

        regions = await self.provider.list_regions()
        if regions and not any(r.get("id") == region for r in regions):
            raise ValidationError(f"Unknown region: {region}")

        return snapshot_id

    @log_execution_time
    async def provision(
        self,
        image_ref: str | None,
        name: str,
        region: str | None = None,
        on_created: Callable[[str, str, str], Any] | None = None,
    ) -> InstanceHandle:
        """Create an instance from a snapshot and attach the firewall group.

        Raises ConfigurationError, ValidationError (ImageNotFoundError for a
        missing snapshot), ProviderError, or SecurityAttachmentFailed. In the
        last case the instance has already been deleted.

        on_created is called with the instance id, region and snapshot id as
        soon as the provider returns the new instance, before the firewall is
        attached.
        """
        firewall_group_id = self.check_security_config()
        region = region or self.settings.default_region
        snapshot_id = await self.validate(image_ref, region)

        logger.info(f"🔒 Creating instance {name!r} from {snapshot_id} in {region}")
        instance = await self._create(snapshot_id, name, region)
        instance_id = instance["id"]
        if on_created is not None:
            on_created(instance_id, region, snapshot_id)
        logger.info(f"Instance {instance_id} created, attaching firewall {firewall_group_id}")

        verified, attempts = await self.attach_firewall(instance_id, firewall_group_id)
        ddos_protection = await self.enable_ddos_protection(instance_id)

        handle = InstanceHandle(
            id=instance_id,
            label=name,
            region=region,
            plan=self.settings.plan,
            snapshot_id=snapshot_id,
            firewall_group_id=firewall_group_id,
            main_ip=verified.get("main_ip") or "",
            status=verified.get("status") or "pending",
            power_status=verified.get("power_status") or "",
            ddos_protection=ddos_protection,
            attach_attempts=attempts,
            features=list(verified.get("features") or []),
        )
        logger.info(f"✅ Instance {instance_id} provisioned with verified firewall")
        return handle

    async def _create(self, snapshot_id: str, label: str, region: str) -> ProviderInstance:
        started_at = self.clock.now()
        try:
            instance = await self.provider.create_instance(
                snapshot_id, label, region, self.settings.plan
            )
        except BadRequestError as e:
            raise ValidationError(f"Provider rejected instance creation: {e}") from e
        except NotFoundError as e:
            raise ImageNotFoundError(str(e), e.status_code, e.body) from e

        if instance.get("id"):
            return instance

        logger.error(f"❌ Empty create response for {label!r}, checking for orphans")
        await self._remove_orphans(label, region, started_at)
        raise ProviderTransientError(
            f"Invalid response from Vultr API when creating {label!r}"
        )

    async def _remove_orphans(self, label: str, region: str, since: datetime) -> None:
        """Delete instances a malformed create response may have left behind."""
        try:
            instances = await self.provider.list_instances()
        except ProviderError as e:
            logger.error(f"Could not list instances to check for orphans: {e}")
            return

        for instance in instances:
            created_at = parse_provider_datetime(instance.get("date_created"))
            if (
                instance.get("label") == label
                and instance.get("region") == region
                and created_at is not None
                and created_at >= since.replace(microsecond=0)
            ):
                logger.warning(f"Deleting orphaned instance {instance.get('id')}")
                await self._delete_best_effort(instance["id"])

    @log_function_call
    async def attach_firewall(
        self, instance_id: str, firewall_group_id: str
    ) -> tuple[ProviderInstance, int]:
        """Attach and verify the firewall group, or delete the instance.

        Only a re-fetched instance reporting the requested group counts as
        success. Returns the verifying instance payload and the attempt count.
        """
        timings = self.settings.timings
        max_attempts = timings.security_attach_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                logger.info(
                    f"Firewall attach attempt {attempt}/{max_attempts} for {instance_id}"
                )
                await self.provider.update_instance(
                    instance_id, firewall_group_id=firewall_group_id
                )
                await self.clock.sleep(timings.security_settle)

                instance = await self.provider.get_instance(instance_id)
                if instance.get("firewall_group_id") == firewall_group_id:
                    logger.info(f"✅ Firewall verified on {instance_id} (attempt {attempt})")
                    return instance, attempt

                logger.warning(
                    f"Firewall verification failed on {instance_id}: expected "
                    f"{firewall_group_id}, got {instance.get('firewall_group_id') or 'none'}"
                )
                if attempt < max_attempts:
                    await self.clock.sleep(timings.security_verify_backoff)

            except ProviderError as e:
                logger.warning(f"Firewall attach attempt {attempt} failed: {e}")
                if attempt < max_attempts:
                    await self.clock.sleep(timings.security_error_backoff)

        logger.error(
            f"❌ Firewall could not be verified on {instance_id} after "
            f"{max_attempts} attempts, destroying instance"
        )
        await self._delete_best_effort(instance_id)
        raise SecurityAttachmentFailed(instance_id, max_attempts)

    async def enable_ddos_protection(self, instance_id: str) -> bool:
        """Best-effort DDoS protection; failures are logged only."""
        try:
            await self.provider.update_instance(instance_id, ddos_protection=True)
            await self.clock.sleep(self.settings.timings.ddos_settle)
            instance = await self.provider.get_instance(instance_id)
        except ProviderError as e:
            logger.warning(f"Failed to enable DDoS protection on {instance_id}: {e}")
            return False

        enabled = "ddos_protection" in (instance.get("features") or [])
        if enabled:
            logger.info(f"DDoS protection enabled on {instance_id}")
        else:
            logger.warning(f"DDoS protection not confirmed on {instance_id}")
        return enabled

    async def _delete_best_effort(self, instance_id: str) -> None:
        try:
            await self.provider.delete_instance(instance_id)
            logger.info(f"🗑️ Deleted instance {instance_id}")
        except ProviderError as e:
            logger.error(f"Failed to delete instance {instance_id}: {e}")
