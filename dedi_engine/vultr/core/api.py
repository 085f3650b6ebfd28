"""
Vultr v2 REST API access for the orchestration system.

`VultrProvider` is the interface every component depends on; `VultrClient`
implements it over httpx. All transport failures and non-2xx responses are
converted into the provider error taxonomy before leaving this module.
"""

from typing import Any

import httpx

from ...types import PlanData, ProviderInstance, RegionData, SnapshotData
from ..utils.config import DEFAULT_API_URL
from ..utils.exceptions import (
    BadRequestError,
    NotFoundError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)


class VultrProvider:
    """Asynchronous provider operations consumed by the orchestrator."""

    async def create_instance(
        self, snapshot_id: str, label: str, region: str, plan: str
    ) -> ProviderInstance:
        raise NotImplementedError

    async def get_instance(self, instance_id: str) -> ProviderInstance:
        raise NotImplementedError

    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        raise NotImplementedError

    async def delete_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    async def start_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    async def halt_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    async def reboot_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    async def list_instances(self) -> list[ProviderInstance]:
        raise NotImplementedError

    async def list_plans(self) -> list[PlanData]:
        raise NotImplementedError

    async def list_snapshots(self) -> list[SnapshotData]:
        raise NotImplementedError

    async def create_snapshot(self, instance_id: str, description: str) -> SnapshotData:
        raise NotImplementedError

    async def list_regions(self) -> list[RegionData]:
        raise NotImplementedError

    async def get_current_instance_id(self) -> str | None:
        return None

    async def close(self) -> None:
        return None


def _error_for_response(response: httpx.Response) -> ProviderError:
    """Translate an error response into the provider taxonomy."""
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text

    detail = body.get("error") if isinstance(body, dict) else body
    message = f"Vultr API error ({response.status_code}): {detail or response.reason_phrase}"
    status = response.status_code

    if status == 400:
        return BadRequestError(message, status, body)
    if status in (401, 403):
        return ProviderPermanentError(message, status, body)
    if status == 404:
        return NotFoundError(message, status, body)
    if status == 429 or status >= 500:
        return ProviderTransientError(message, status, body)
    return ProviderError(message, status, body)


class VultrClient(VultrProvider):
    """httpx-backed implementation of VultrProvider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_URL,
        metadata_url: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.metadata_url = metadata_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def __aenter__(self) -> "VultrClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform one API call and return the decoded JSON body ({} if empty)."""
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")
        try:
            response = await self._client.request(
                method, url, headers=self._headers, json=json_body, params=params
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Vultr API timeout on {method} {path}: {e}")
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Vultr API transport error on {method} {path}: {e}")

        if response.is_error:
            raise _error_for_response(response)

        if not response.content.strip():
            return {}

        try:
            data = response.json()
        except ValueError as e:
            logger.debug(f"Raw output: {response.text[:200]}...")
            raise ProviderTransientError(f"Failed to parse JSON from {method} {path}: {e}")

        if not isinstance(data, dict):
            raise ProviderTransientError(f"Unexpected response shape from {method} {path}")
        return data

    async def _list(self, path: str, key: str) -> list[Any]:
        """Collect every page of a cursor-paginated listing."""
        items: list[Any] = []
        params: dict[str, Any] = {"per_page": 100}

        while True:
            data = await self._request("GET", path, params=params)
            items.extend(data.get(key) or [])

            cursor = ((data.get("meta") or {}).get("links") or {}).get("next")
            if not cursor:
                return items
            params = {"per_page": 100, "cursor": cursor}

    async def create_instance(
        self, snapshot_id: str, label: str, region: str, plan: str
    ) -> ProviderInstance:
        data = await self._request(
            "POST",
            "/instances",
            json_body={
                "snapshot_id": snapshot_id,
                "label": label,
                "region": region,
                "plan": plan,
            },
        )
        if not data:
            return {}
        return data.get("instance") or {}

    async def get_instance(self, instance_id: str) -> ProviderInstance:
        data = await self._request("GET", f"/instances/{instance_id}")
        instance = data.get("instance")
        if not instance:
            raise ProviderTransientError(
                f"Vultr API returned no instance body for {instance_id}"
            )
        return instance

    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        await self._request("PATCH", f"/instances/{instance_id}", json_body=fields)

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/instances/{instance_id}")

    async def start_instance(self, instance_id: str) -> None:
        await self._request("POST", f"/instances/{instance_id}/start")

    async def halt_instance(self, instance_id: str) -> None:
        await self._request("POST", f"/instances/{instance_id}/halt")

    async def reboot_instance(self, instance_id: str) -> None:
        await self._request("POST", f"/instances/{instance_id}/reboot")

    async def list_instances(self) -> list[ProviderInstance]:
        return await self._list("/instances", "instances")

    async def list_plans(self) -> list[PlanData]:
        return await self._list("/plans", "plans")

    async def list_snapshots(self) -> list[SnapshotData]:
        return await self._list("/snapshots", "snapshots")

    async def create_snapshot(self, instance_id: str, description: str) -> SnapshotData:
        data = await self._request(
            "POST",
            "/snapshots",
            json_body={"instance_id": instance_id, "description": description},
        )
        return data.get("snapshot") or {}

    async def list_regions(self) -> list[RegionData]:
        return await self._list("/regions", "regions")

    async def get_current_instance_id(self) -> str | None:
        """Ask the metadata service which instance this process runs on."""
        if not self.metadata_url:
            return None
        try:
            response = await self._client.get(self.metadata_url, timeout=2.0)
        except httpx.HTTPError:
            logger.info(
                "Could not auto-detect current server (running outside Vultr "
                "or metadata service unavailable)"
            )
            return None

        if response.status_code != 200:
            return None

        instance_id = response.text.strip()
        if instance_id:
            logger.info(f"Auto-detected current server instance ID: {instance_id}")
        return instance_id or None
