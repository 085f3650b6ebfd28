"""
Custom exceptions for the Vultr orchestration system.
"""

from typing import Any


class VultrError(Exception):
    """Base exception for all orchestration errors."""

    pass


class ConfigurationError(VultrError):
    """Exception raised for missing or malformed mandatory configuration."""

    pass


class ValidationError(VultrError):
    """Exception raised for bad image or region references."""

    pass


class ProviderError(VultrError):
    """Exception raised when the provider rejects or fails a request."""

    def __init__(
        self, message: str, status_code: int | None = None, body: Any = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderTransientError(ProviderError):
    """Rate limit, busy or malformed response; worth retrying later."""

    pass


class ProviderPermanentError(ProviderError):
    """Authentication or permission failure; never retried."""

    pass


class BadRequestError(ProviderError):
    """Provider answered 400."""

    pass


class NotFoundError(ProviderError):
    """The requested resource does not exist on the provider."""

    pass


class ImageNotFoundError(NotFoundError, ValidationError):
    """The snapshot reference passed to provisioning does not exist."""

    pass


class SecurityAttachmentFailed(VultrError):
    """The firewall group could not be verified on a new instance."""

    def __init__(self, instance_id: str, attempts: int) -> None:
        super().__init__(
            f"Firewall could not be attached to {instance_id} after {attempts} "
            "attempts. Instance was destroyed for security."
        )
        self.instance_id = instance_id
        self.attempts = attempts


class NoActiveTimer(VultrError):
    """The instance has no self-destruct timer to extend."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Instance {instance_id} has no active self-destruct timer")
        self.instance_id = instance_id


class InstanceExcludedError(VultrError):
    """The instance is protected from management."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Instance {instance_id} is excluded from management")
        self.instance_id = instance_id


class OperationInProgress(VultrError):
    """Another operator action is already running for the instance."""

    def __init__(self, instance_id: str, operation: str) -> None:
        super().__init__(f"Instance {instance_id} is busy: {operation} in progress")
        self.instance_id = instance_id
        self.operation = operation


class PermissionDeniedError(VultrError):
    """The requester is not allowed to perform the action."""

    def __init__(self, requester_id: str, action: str) -> None:
        super().__init__(f"User {requester_id} is not allowed to {action}")
        self.requester_id = requester_id
        self.action = action
