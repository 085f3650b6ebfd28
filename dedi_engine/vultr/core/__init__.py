"""
Core modules for the Vultr orchestration system.
"""

from .api import VultrClient, VultrProvider
from .billing import format_cost, instance_cost, month_to_date_cost, plan_prices
from .notifications import (
    LoggingNotifier,
    Notification,
    NotificationKind,
    Notifier,
    deliver,
)
from .panel_store import PanelLocation, PanelState, PanelStore
from .state import (
    UNKNOWN_CREATOR,
    Creator,
    InstanceRecord,
    InstanceRegistry,
    InstanceStatus,
    SelfDestructTimer,
)

__all__ = [
    "VultrProvider",
    "VultrClient",
    "format_cost",
    "instance_cost",
    "month_to_date_cost",
    "plan_prices",
    "Notifier",
    "LoggingNotifier",
    "Notification",
    "NotificationKind",
    "deliver",
    "PanelLocation",
    "PanelState",
    "PanelStore",
    "Creator",
    "UNKNOWN_CREATOR",
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceStatus",
    "SelfDestructTimer",
]
