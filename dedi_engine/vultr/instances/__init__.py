"""
Instance management modules for the Vultr orchestration system.
"""

from .discovery import (
    ExclusionPolicy,
    InstanceInfo,
    ReconcileResult,
    parse_instance_data,
    reconcile_registry,
)
from .lifecycle import (
    DestructionOutcome,
    DestructionPoller,
    DestructionResult,
    PowerController,
)
from .monitoring import (
    PollOutcome,
    PollPhase,
    PollResult,
    StatusPoller,
    connection_urls,
)
from .provisioning import InstanceHandle, Provisioner
from .snapshots import (
    SnapshotOutcome,
    SnapshotPoller,
    SnapshotResult,
    clean_snapshot_name,
    snapshot_description,
)

__all__ = [
    "ExclusionPolicy",
    "InstanceInfo",
    "ReconcileResult",
    "parse_instance_data",
    "reconcile_registry",
    "DestructionOutcome",
    "DestructionPoller",
    "DestructionResult",
    "PowerController",
    "PollOutcome",
    "PollPhase",
    "PollResult",
    "StatusPoller",
    "connection_urls",
    "InstanceHandle",
    "Provisioner",
    "SnapshotOutcome",
    "SnapshotPoller",
    "SnapshotResult",
    "clean_snapshot_name",
    "snapshot_description",
]
