"""
Clean, minimal type definitions for the dedi-engine project.

Only the provider payload shapes the orchestrator actually reads.
"""

from typing import Literal, TypedDict


# --- Provider Payloads ---
class ProviderInstance(TypedDict, total=False):
    """Instance object as returned by the Vultr v2 API."""

    id: str
    label: str
    region: str
    plan: str
    status: str  # pending | active | suspended | resizing
    power_status: str  # running | stopped
    server_status: str
    main_ip: str
    date_created: str
    snapshot_id: str
    firewall_group_id: str
    features: list[str]


class PlanData(TypedDict, total=False):
    """Plan entry with pricing."""

    id: str
    monthly_cost: float
    vcpu_count: int
    ram: int


class SnapshotData(TypedDict, total=False):
    """Snapshot entry."""

    id: str
    description: str
    status: str
    date_created: str
    size: int


class RegionData(TypedDict, total=False):
    """Region entry."""

    id: str
    city: str
    country: str
    continent: str
    options: list[str]


# --- Operation Results ---
class CostSummary(TypedDict):
    """Month-to-date cost over all provider instances."""

    total: float
    count: int


class ServerStats(TypedDict):
    """Power-state counts shown in the panel header."""

    running: int
    stopped: int
    total: int


class ActionResult(TypedDict):
    """Outcome of an operator power action."""

    status: Literal["SUCCESS", "FAILED"]
    instance_id: str
    message: str
    error: str | None
