"""User notifications for extraction outcomes."""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    BLOCKED_PROVIDER = "BLOCKED_PROVIDER"
    BATCH_FAILED = "BATCH_FAILED"
    BATCH_COMPLETED = "BATCH_COMPLETED"


class Notifier(ABC):
    """Delivers messages to a user. Subclasses decide the channel."""

    @abstractmethod
    async def notify(
        self,
        user_id: str,
        message: str,
        kind: NotificationKind,
        related_id: Optional[str] = None
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log."""

    async def notify(self, user_id, message, kind, related_id=None):
        logger.info(f"[NOTIFY] {kind.value} user={user_id} related={related_id or '-'}: {message}")


async def safe_notify(
    notifier: Optional[Notifier],
    user_id: str,
    message: str,
    kind: NotificationKind,
    related_id: Optional[str] = None
) -> None:
    """Send a notification; delivery problems are logged, never raised."""
    if notifier is None:
        return
    try:
        await notifier.notify(user_id, message, kind, related_id)
    except Exception as e:
        logger.warning(f"[NOTIFY] Failed to deliver {kind.value} to {user_id}: {e}")
