"""
Vultr instance lifecycle orchestration.

This package provisions firewalled instances from snapshots, watches them
become ready, destroys them when their self-destruct timers run out and keeps
a shared panel of everything that is running.
"""

__version__ = "1.0.0"
__author__ = "Dedi Engine Team"

from .core.state import Creator, InstanceRegistry, InstanceStatus
from .orchestration.coordinator import Orchestrator, create_orchestrator
from .utils.config import load_config, settings_from_config
from .utils.logging import setup_logging

__all__ = [
    "Orchestrator",
    "create_orchestrator",
    "Creator",
    "InstanceRegistry",
    "InstanceStatus",
    "load_config",
    "settings_from_config",
    "setup_logging",
]
