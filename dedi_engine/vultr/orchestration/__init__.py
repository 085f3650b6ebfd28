"""
Orchestration modules for the Vultr orchestration system.
"""

from .coordinator import (
    Acknowledgment,
    OrchestrationState,
    Orchestrator,
    StatusReport,
    create_orchestrator,
)
from .panel import (
    FilePanelPublisher,
    PanelPublisher,
    PanelRenderer,
    PanelService,
    RenderSerializer,
)
from .scheduler import Task, TaskScheduler, TaskType
from .timers import SelfDestructTimerEngine, SweepResult, format_remaining_time

__all__ = [
    "Orchestrator",
    "Acknowledgment",
    "StatusReport",
    "OrchestrationState",
    "create_orchestrator",
    "PanelPublisher",
    "FilePanelPublisher",
    "PanelRenderer",
    "PanelService",
    "RenderSerializer",
    "TaskScheduler",
    "TaskType",
    "Task",
    "SelfDestructTimerEngine",
    "SweepResult",
    "format_remaining_time",
]
