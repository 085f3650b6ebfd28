"""
Instance discovery and self-protection for the Vultr orchestration system.
"""

from dataclasses import dataclass, field
from typing import Any

from ...types import ProviderInstance
from ..core.api import VultrProvider
from ..core.state import UNKNOWN_CREATOR, InstanceRegistry, InstanceStatus
from ..utils.exceptions import InstanceExcludedError, ProviderError
from ..utils.logging import get_logger, log_function_call

logger = get_logger(__name__)

PLACEHOLDER_ADDRESSES = ("", "0.0.0.0")


@dataclass
class InstanceInfo:
    """Instance information from the Vultr API."""

    id: str
    label: str
    region: str
    plan: str
    status: str
    power_status: str
    main_ip: str
    firewall_group_id: str
    snapshot_id: str
    date_created: str
    features: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_address(self) -> bool:
        return self.main_ip not in PLACEHOLDER_ADDRESSES

    @property
    def is_ready(self) -> bool:
        """Active, powered on, and reachable on a real address."""
        return (
            self.status == "active"
            and self.power_status == "running"
            and self.has_address
        )

    @property
    def is_restoring(self) -> bool:
        """Active but powered off: the snapshot is still being restored."""
        return self.status == "active" and self.power_status == "stopped"


def parse_instance_data(raw_data: ProviderInstance) -> InstanceInfo:
    """Parse raw instance data into InstanceInfo."""
    return InstanceInfo(
        id=str(raw_data.get("id", "")),
        label=raw_data.get("label") or "",
        region=raw_data.get("region") or "",
        plan=raw_data.get("plan") or "",
        status=raw_data.get("status") or "unknown",
        power_status=raw_data.get("power_status") or "unknown",
        main_ip=raw_data.get("main_ip") or "",
        firewall_group_id=raw_data.get("firewall_group_id") or "",
        snapshot_id=raw_data.get("snapshot_id") or "",
        date_created=raw_data.get("date_created") or "",
        features=list(raw_data.get("features") or []),
        metadata=dict(raw_data),
    )


class ExclusionPolicy:
    """Keeps the host instance and excluded snapshots out of management."""

    def __init__(
        self,
        provider: VultrProvider,
        exclude_instance_id: str | None = None,
        exclude_snapshot_id: str | None = None,
    ) -> None:
        self.provider = provider
        self.exclude_instance_id = exclude_instance_id
        self.exclude_snapshot_id = exclude_snapshot_id
        self._current_instance_id: str | None = None
        self._resolved = False

    async def current_instance_id(self) -> str | None:
        """Host instance id from the metadata service, falling back to config."""
        if not self._resolved:
            self._current_instance_id = (
                await self.provider.get_current_instance_id()
                or self.exclude_instance_id
            )
            self._resolved = True
        return self._current_instance_id

    async def is_excluded(self, instance: ProviderInstance) -> bool:
        instance_id = str(instance.get("id", ""))
        if instance_id and instance_id in (
            await self.current_instance_id(),
            self.exclude_instance_id,
        ):
            return True
        return bool(
            self.exclude_snapshot_id
            and instance.get("snapshot_id") == self.exclude_snapshot_id
        )

    async def filter(self, instances: list[ProviderInstance]) -> list[ProviderInstance]:
        kept = []
        for instance in instances:
            if await self.is_excluded(instance):
                logger.info(
                    f"Auto-excluded instance {instance.get('id')} "
                    f"({instance.get('label') or 'Unnamed'}) from management"
                )
                continue
            kept.append(instance)
        return kept

    async def get_instance(self, instance_id: str) -> InstanceInfo:
        """Fetch one instance, refusing excluded ones."""
        raw = await self.provider.get_instance(instance_id)
        if await self.is_excluded(raw):
            logger.info(f"Access denied to protected instance {instance_id}")
            raise InstanceExcludedError(instance_id)
        return parse_instance_data(raw)

    async def list_instances(self) -> list[InstanceInfo]:
        """All manageable provider instances."""
        raw_instances = await self.filter(await self.provider.list_instances())
        return [parse_instance_data(raw) for raw in raw_instances]


@dataclass
class ReconcileResult:
    """What a registry reconciliation sweep changed."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)


@log_function_call
async def reconcile_registry(
    policy: ExclusionPolicy, registry: InstanceRegistry
) -> ReconcileResult:
    """Converge the registry with the provider's instance list.

    Untracked provider instances are recovered with an unknown creator;
    tracked active records the provider no longer lists become terminated,
    and terminated records listed again are tracked from their power status.
    A provider failure leaves the registry untouched.
    """
    result = ReconcileResult()
    try:
        instances = await policy.list_instances()
    except ProviderError as e:
        logger.error(f"Error syncing with Vultr API, keeping local data: {e}")
        return result

    seen = set()
    for instance in instances:
        seen.add(instance.id)
        status = InstanceStatus.from_power_status(instance.power_status)
        record = registry.get(instance.id)

        if record is not None and record.status is not InstanceStatus.DESTROYED:
            if record.status is InstanceStatus.TERMINATED:
                # a listing can drop an instance transiently
                logger.info(f"Instance {instance.id} listed again, tracking resumed")
            registry.set_status(
                instance.id,
                status,
                {"ip": instance.main_ip or record.ip, "region": instance.region or record.region},
            )
            result.updated.append(instance.id)
        elif record is None:
            registry.upsert(
                instance.id,
                UNKNOWN_CREATOR,
                status,
                {
                    "ip": instance.main_ip or None,
                    "name": instance.label or "Unknown Server",
                    "region": instance.region or None,
                    "recovered": True,
                },
            )
            result.added.append(instance.id)
            logger.info(f"Discovered untracked instance: {instance.id}")

    for record in registry.list_active():
        if record.id not in seen:
            registry.set_status(record.id, InstanceStatus.TERMINATED)
            result.terminated.append(record.id)
            logger.info(f"Instance {record.id} no longer listed by provider, marked terminated")

    logger.info(
        f"Reconciled registry: {len(result.added)} added, {len(result.updated)} updated, "
        f"{len(result.terminated)} terminated"
    )
    return result
