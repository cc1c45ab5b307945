"""Base class for the item source of truth."""

from abc import ABC, abstractmethod
from typing import Any

from escalator.models.item import ItemType, WorkItem, Workspace, WorkspaceMember


class ItemStore(ABC):
    """Read/write access to workspace items owned by another service.

    Implementations raise ``TransientStorageError`` for failures worth
    retrying and ``ConfigurationError`` when the service rejects a write.
    """

    @abstractmethod
    async def get_item(self, item_type: ItemType, item_id: str) -> WorkItem | None:
        """Fetch an item, None if it does not exist."""

    @abstractmethod
    async def list_open_items(self, workspace_id: str, item_type: ItemType) -> list[WorkItem]:
        """List items of a workspace that are not in a closed status."""

    @abstractmethod
    async def update_item(self, item_type: ItemType, item_id: str, changes: dict[str, Any]) -> WorkItem:
        """Write fields of an item and return the updated snapshot."""

    @abstractmethod
    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        """Fetch a workspace, None if it does not exist."""

    @abstractmethod
    async def list_members(self, workspace_id: str, roles: list[str]) -> list[WorkspaceMember]:
        """List workspace members holding any of the given roles."""

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass
