"""
Warden - Notification Sender

Delivery of verification codes and reset links is an external concern.
Managers hand a Notification to whatever NotificationSender they were
built with, after their transaction has committed. Delivery is
fire-and-forget: a failing sender is logged and never undoes the
committed state change; retries belong to the sender.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from warden.auth.models import User
from warden.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    """
    Attributes:
        template: Message kind, e.g. "email_verify" or "password_reset"
        channel: "email" or "sms"
        context: Values the template needs (codes, links, expiry)
    """
    template: str
    channel: str = "email"
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    def send(self, user: User, notification: Notification) -> None:
        ...


class LoggingNotificationSender:
    """Default sender: records that a message would be sent, never its secret."""

    def send(self, user: User, notification: Notification) -> None:
        logger.info(
            "notification_queued",
            user_id=user.id,
            template=notification.template,
            channel=notification.channel,
        )


class RecordingNotificationSender:
    """Keeps notifications in memory; useful for tests and local runs."""

    def __init__(self):
        self.sent: List[tuple] = []

    def send(self, user: User, notification: Notification) -> None:
        self.sent.append((user.id, notification))


def dispatch(sender: NotificationSender, user: User, notification: Notification) -> bool:
    """
    Send without letting delivery problems reach the caller.

    Returns:
        True if the sender accepted the notification
    """
    try:
        sender.send(user, notification)
        return True
    except Exception as e:
        logger.error(
            "notification_failed",
            user_id=user.id,
            template=notification.template,
            error=str(e),
        )
        return False
