"""Item store backed by the workspace REST API."""

from typing import Any

import httpx

from escalator.core.config import get_settings
from escalator.core.errors import ConfigurationError, TransientStorageError
from escalator.core.logging import get_logger
from escalator.items.base import ItemStore
from escalator.models.item import ItemType, WorkItem, Workspace, WorkspaceMember

logger = get_logger(__name__)

ITEM_ROUTES = {
    ItemType.TASK: "tasks",
    ItemType.BUDGET_REQUEST: "budget-requests",
    ItemType.RESOURCE_REQUEST: "resource-requests",
}


class HttpItemStore(ItemStore):
    """Workspace item API client."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        """Initialize HTTP client.

        Args:
            client: Preconfigured client (optional, built from settings otherwise)
        """
        settings = get_settings()
        headers = {}
        if settings.item_api_key:
            headers["Authorization"] = f"Bearer {settings.item_api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=settings.item_api_url,
            headers=headers,
            timeout=settings.item_api_timeout,
        )

    async def get_item(self, item_type: ItemType, item_id: str) -> WorkItem | None:
        data = await self._request("GET", f"/items/{ITEM_ROUTES[item_type]}/{item_id}")
        if data is None:
            return None
        return WorkItem.model_validate({**data, "item_type": item_type})

    async def list_open_items(self, workspace_id: str, item_type: ItemType) -> list[WorkItem]:
        data = await self._request(
            "GET",
            f"/items/{ITEM_ROUTES[item_type]}",
            params={"workspace_id": workspace_id, "open": "true"},
        )
        items = [WorkItem.model_validate({**row, "item_type": item_type}) for row in data or []]
        # The API filter is advisory; closed items must never escalate
        return [item for item in items if not item.is_closed]

    async def update_item(self, item_type: ItemType, item_id: str, changes: dict[str, Any]) -> WorkItem:
        data = await self._request(
            "PATCH",
            f"/items/{ITEM_ROUTES[item_type]}/{item_id}",
            json=changes,
        )
        if data is None:
            raise ConfigurationError(f"{item_type.value} {item_id} no longer exists")
        return WorkItem.model_validate({**data, "item_type": item_type})

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        data = await self._request("GET", f"/workspaces/{workspace_id}")
        return Workspace.model_validate(data) if data is not None else None

    async def list_members(self, workspace_id: str, roles: list[str]) -> list[WorkspaceMember]:
        if not roles:
            return []
        data = await self._request(
            "GET",
            f"/workspaces/{workspace_id}/members",
            params={"role": ",".join(roles)},
        )
        return [WorkspaceMember.model_validate(row) for row in data or []]

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request and map failures onto the engine's error taxonomy.

        Returns:
            Decoded JSON body, or None on 404
        """
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Item API unreachable", method=method, url=url, error=str(e))
            raise TransientStorageError(f"Item API unreachable: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Item API unavailable", method=method, url=url, status=response.status_code)
            raise TransientStorageError(f"Item API returned {response.status_code}")
        if response.status_code >= 400:
            raise ConfigurationError(
                f"Item API rejected {method} {url}: {response.status_code} {response.text[:200]}"
            )
        return response.json()
