"""
Outbound user notifications.

Delivery itself belongs to the front-end; the orchestrator only hands
`Notification` objects to a `Notifier`.
"""

from dataclasses import dataclass
from enum import Enum

from ..utils.logging import get_logger

logger = get_logger(__name__)


class NotificationKind(Enum):
    """What a notification is about."""

    PROGRESS = "progress"
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"
    WARNING = "warning"
    EXPIRED = "expired"
    DESTROYED = "destroyed"
    EXTENDED = "extended"


@dataclass(frozen=True)
class Notification:
    """A message for one requester about one instance."""

    kind: NotificationKind
    instance_id: str | None
    recipient_id: str | None
    message: str


class Notifier:
    """Delivers notifications to requesters."""

    async def notify(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of a chat front-end."""

    async def notify(self, notification: Notification) -> None:
        logger.info(
            f"[{notification.kind.value}] to {notification.recipient_id or 'channel'}: "
            f"{notification.message}"
        )


async def deliver(notifier: Notifier, notification: Notification) -> bool:
    """Send a notification; delivery failures are logged, never raised."""
    try:
        await notifier.notify(notification)
        return True
    except Exception as e:
        logger.error(
            f"Failed to deliver {notification.kind.value} notification for "
            f"{notification.instance_id}: {e}"
        )
        return False
