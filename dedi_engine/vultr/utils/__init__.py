"""
Utility modules for the Vultr orchestration system.
"""

from .clock import Clock, elapsed_seconds
from .config import (
    OrchestratorSettings,
    Timings,
    is_uuid,
    load_config,
    settings_from_config,
    validate_config,
)
from .exceptions import (
    BadRequestError,
    ConfigurationError,
    ImageNotFoundError,
    InstanceExcludedError,
    NoActiveTimer,
    NotFoundError,
    OperationInProgress,
    PermissionDeniedError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
    SecurityAttachmentFailed,
    ValidationError,
    VultrError,
)
from .logging import get_logger, log_execution_time, log_function_call, setup_logging

__all__ = [
    "VultrError",
    "ConfigurationError",
    "ValidationError",
    "ProviderError",
    "ProviderTransientError",
    "ProviderPermanentError",
    "BadRequestError",
    "NotFoundError",
    "ImageNotFoundError",
    "SecurityAttachmentFailed",
    "NoActiveTimer",
    "InstanceExcludedError",
    "OperationInProgress",
    "PermissionDeniedError",
    "Clock",
    "elapsed_seconds",
    "setup_logging",
    "get_logger",
    "log_function_call",
    "log_execution_time",
    "load_config",
    "validate_config",
    "is_uuid",
    "settings_from_config",
    "OrchestratorSettings",
    "Timings",
]
