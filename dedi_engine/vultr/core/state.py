"""
In-memory instance registry for the Vultr orchestration system.

The registry is the orchestrator-side view of every instance it knows about.
All operations are synchronous and do no I/O; callers run on a single event
loop, so no locking is needed between suspension points.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..utils.clock import Clock
from ..utils.logging import get_logger

logger = get_logger(__name__)


class InstanceStatus(Enum):
    """Provider-reported lifecycle state of a tracked instance."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    DESTROYED = "destroyed"

    @classmethod
    def from_power_status(cls, power_status: str | None) -> "InstanceStatus":
        """Map a provider power_status onto the registry enum."""
        if power_status == "running":
            return cls.RUNNING
        if power_status == "stopped":
            return cls.STOPPED
        return cls.CREATING

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.TERMINATED, InstanceStatus.DESTROYED)


WARNING_FIRST = "10min"
WARNING_FINAL = "5min"


@dataclass(frozen=True)
class Creator:
    """Requester that asked for the instance."""

    requester_id: str
    display_name: str


UNKNOWN_CREATOR = Creator(requester_id="unknown", display_name="Unknown")


@dataclass
class SelfDestructTimer:
    """Deadline after which the instance is deleted automatically."""

    expires_at: datetime
    initial_duration: timedelta
    extended_count: int = 0
    warnings_sent: set[str] = field(default_factory=set)

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now


@dataclass
class InstanceRecord:
    """Canonical orchestrator-side view of one provisioned instance."""

    id: str
    creator: Creator
    status: InstanceStatus
    created_at: datetime
    last_updated: datetime
    name: str = ""
    ip: str | None = None
    region: str | None = None
    recovered: bool = False
    destroyed_at: datetime | None = None
    self_destruct_timer: SelfDestructTimer | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


# Fields callers may patch through upsert/set_status
_PATCHABLE = {
    f.name for f in fields(InstanceRecord) if f.name not in ("id", "creator", "metadata")
}


class InstanceRegistry:
    """Map of instance id to InstanceRecord."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or Clock()
        self._records: dict[str, InstanceRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._records

    def _apply(self, record: InstanceRecord, metadata: dict[str, Any]) -> None:
        for key, value in metadata.items():
            if key in _PATCHABLE:
                setattr(record, key, value)
            else:
                record.metadata[key] = value

    def upsert(
        self,
        instance_id: str,
        creator: Creator,
        status: InstanceStatus,
        metadata: dict[str, Any] | None = None,
    ) -> InstanceRecord:
        """Insert a record or merge into the existing one.

        Fields absent from metadata keep their current values. The creator of
        an existing record is never replaced.
        """
        now = self.clock.now()
        metadata = dict(metadata or {})
        record = self._records.get(instance_id)

        if record is None:
            record = InstanceRecord(
                id=instance_id,
                creator=creator,
                status=status,
                created_at=now,
                last_updated=now,
                name=metadata.pop("name", None) or f"{creator.display_name}'s Server",
            )
            self._apply(record, metadata)
            self._records[instance_id] = record
            logger.debug(f"Tracking new instance {instance_id} ({status.value})")
            return record

        if record.status is InstanceStatus.DESTROYED:
            logger.warning(f"Ignoring upsert for destroyed instance {instance_id}")
            return record

        record.status = status
        self._apply(record, metadata)
        record.last_updated = now
        return record

    def set_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        metadata: dict[str, Any] | None = None,
    ) -> InstanceRecord | None:
        """Update status plus an optional metadata patch; None if untracked."""
        record = self._records.get(instance_id)
        if record is None:
            return None

        if record.status is InstanceStatus.DESTROYED:
            logger.debug(f"Instance {instance_id} already destroyed, not updating")
            return record

        record.status = status
        if status is InstanceStatus.DESTROYED:
            record.destroyed_at = self.clock.now()
            record.self_destruct_timer = None
        self._apply(record, metadata or {})
        record.last_updated = self.clock.now()
        return record

    def remove(self, instance_id: str) -> InstanceRecord | None:
        """Stop tracking an instance; None if it was not tracked."""
        record = self._records.pop(instance_id, None)
        if record is not None:
            logger.debug(f"Stopped tracking instance {instance_id}")
        return record

    def get(self, instance_id: str) -> InstanceRecord | None:
        return self._records.get(instance_id)

    def list_all(self) -> list[InstanceRecord]:
        return list(self._records.values())

    def list_active(self) -> list[InstanceRecord]:
        """Records that are neither terminated nor destroyed."""
        return [r for r in self._records.values() if r.is_active]

    def list_by_creator(self, requester_id: str) -> list[InstanceRecord]:
        return [
            r for r in self._records.values() if r.creator.requester_id == requester_id
        ]

    def list_recently_destroyed(self) -> list[InstanceRecord]:
        return [
            r for r in self._records.values() if r.status is InstanceStatus.DESTROYED
        ]

    def prune(self, retention: timedelta) -> list[str]:
        """Drop destroyed records older than the retention window."""
        cutoff = self.clock.now() - retention
        pruned = [
            r.id
            for r in self._records.values()
            if r.status is InstanceStatus.DESTROYED
            and r.destroyed_at is not None
            and r.destroyed_at < cutoff
        ]
        for instance_id in pruned:
            del self._records[instance_id]

        if pruned:
            logger.info(f"Pruned {len(pruned)} destroyed instance(s) from registry")
        return pruned
