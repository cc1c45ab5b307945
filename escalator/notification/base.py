"""Base class for the notification dispatch collaborator."""

from abc import ABC, abstractmethod
from typing import Any

from escalator.models.notification import NotificationPriority


class Notifier(ABC):
    """Hands notifications to the delivery service.

    Delivery, retries and channel selection belong to that service; a
    notifier only has to accept the request or raise
    ``NotificationDispatchError``.
    """

    @abstractmethod
    async def notify(
        self,
        recipients: list[str],
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        channels: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Dispatch a notification.

        Returns:
            Request identifier assigned to the notification
        """

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass
