"""Async client for the CRM object API (HubSpot-style v3/v4 REST)."""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, cast

import httpx
import structlog

from billing_sync.config import get_settings
from billing_sync.crm.retry import RetryPolicy, call_with_retry, is_transient

logger = structlog.get_logger(__name__)

SEARCH_PAGE_LIMIT = 100
BATCH_LIMIT = 100
ASSOCIATIONS_PAGE_LIMIT = 500

# HubSpot-defined association type id (ticket -> deal)
TICKET_TO_DEAL = 28


class CRMError(Exception):
    """Base exception for CRM API errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class NotFoundError(CRMError):
    """Record does not exist (404)."""

    pass


class AuthenticationError(CRMError):
    """Token rejected (401/403)."""

    pass


class RateLimitError(CRMError):
    """Rate limit exceeded (429)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        details: Any = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code, details=details)
        self.retry_after = retry_after


@dataclass(frozen=True)
class Association:
    """Link a newly created record to an existing one."""

    to_id: str
    type_id: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "to": {"id": str(self.to_id)},
            "types": [
                {"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": self.type_id}
            ],
        }


def _chunks(items: list[Any], size: int) -> Iterable[list[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class CRMClient:
    """Async client for CRM records with bearer-token auth and retry."""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.crm_api_url).rstrip("/")
        self._access_token = access_token or settings.crm_access_token.get_secret_value()
        self._timeout = timeout or settings.crm_timeout
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CRMClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._access_token}",
        }

    # === Transport ===

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make one request and map error statuses to exceptions."""
        client = await self._get_client()
        response = await client.request(
            method=method,
            url=path,
            params=params,
            json=json,
            headers=self._get_headers(),
        )

        if response.status_code == 429:
            raw_retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(raw_retry_after) if raw_retry_after else None
            except ValueError:
                retry_after = None
            raise RateLimitError(
                f"Rate limited on {method} {path}",
                status_code=429,
                details={"retry_after": retry_after},
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            message = f"CRM error {response.status_code} on {method} {path}"
            if isinstance(error_detail, dict) and error_detail.get("message"):
                message = f"{message}: {error_detail['message']}"
            if response.status_code == 404:
                raise NotFoundError(message, status_code=404, details=error_detail)
            if response.status_code in (401, 403):
                raise AuthenticationError(
                    message, status_code=response.status_code, details=error_detail
                )
            raise CRMError(message, status_code=response.status_code, details=error_detail)

        if not response.content:
            return {}
        data = response.json()
        if not isinstance(data, dict):
            raise CRMError(f"Invalid response format from {method} {path}")
        return cast(dict[str, Any], data)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a request, retrying transient failures."""
        try:
            return await call_with_retry(
                lambda: self._send(method, path, params=params, json=json),
                self._retry_policy,
                classify=is_transient,
                operation=f"{method} {path}",
            )
        except httpx.RequestError as e:
            raise CRMError(f"Request failed: {e}") from e

    # === Reads ===

    async def get_object(
        self, object_type: str, object_id: str, properties: list[str] | None = None
    ) -> dict[str, Any]:
        """Read one record by id."""
        params: dict[str, Any] = {}
        if properties:
            params["properties"] = ",".join(properties)
        return await self._request(
            "GET", f"/crm/v3/objects/{object_type}/{object_id}", params=params or None
        )

    async def batch_read(
        self, object_type: str, ids: list[str], properties: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Read many records by id, in chunks."""
        results: list[dict[str, Any]] = []
        unique_ids = list(dict.fromkeys(str(i) for i in ids if i))
        for chunk in _chunks(unique_ids, BATCH_LIMIT):
            data = await self._request(
                "POST",
                f"/crm/v3/objects/{object_type}/batch/read",
                json={
                    "properties": properties or [],
                    "inputs": [{"id": object_id} for object_id in chunk],
                },
            )
            results.extend(data.get("results", []))
        return results

    async def search(
        self,
        object_type: str,
        filters: list[dict[str, Any]],
        properties: list[str] | None = None,
        after: str | None = None,
        limit: int = SEARCH_PAGE_LIMIT,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Run one search page.

        Returns:
            The page's records and the cursor of the next page (None at the end).
        """
        body: dict[str, Any] = {
            "filterGroups": [{"filters": filters}] if filters else [],
            "properties": properties or [],
            "limit": limit,
        }
        if after:
            body["after"] = after
        data = await self._request("POST", f"/crm/v3/objects/{object_type}/search", json=body)
        next_after = (data.get("paging") or {}).get("next", {}).get("after")
        return data.get("results", []), (str(next_after) if next_after else None)

    async def search_all(
        self,
        object_type: str,
        filters: list[dict[str, Any]],
        properties: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Run a search across every page."""
        results: list[dict[str, Any]] = []
        after: str | None = None
        while True:
            page, after = await self.search(object_type, filters, properties, after=after)
            results.extend(page)
            if not after:
                return results

    async def get_associated_ids(
        self, from_type: str, from_id: str, to_type: str
    ) -> list[str]:
        """Ids of every record of ``to_type`` associated with a record."""
        ids: list[str] = []
        after: str | None = None
        while True:
            params: dict[str, Any] = {"limit": ASSOCIATIONS_PAGE_LIMIT}
            if after:
                params["after"] = after
            data = await self._request(
                "GET",
                f"/crm/v4/objects/{from_type}/{from_id}/associations/{to_type}",
                params=params,
            )
            for item in data.get("results", []):
                to_id = item.get("toObjectId") or item.get("id")
                if to_id:
                    ids.append(str(to_id))
            after = (data.get("paging") or {}).get("next", {}).get("after")
            if not after:
                return list(dict.fromkeys(ids))

    async def get_property_names(self, object_type: str) -> list[str]:
        """Names of every property defined on an object type."""
        data = await self._request("GET", f"/crm/v3/properties/{object_type}")
        return [str(p["name"]) for p in data.get("results", []) if p.get("name")]

    # === Writes ===

    async def update_object(
        self, object_type: str, object_id: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        """Partially update one record."""
        return await self._request(
            "PATCH",
            f"/crm/v3/objects/{object_type}/{object_id}",
            json={"properties": properties},
        )

    async def batch_update(
        self, object_type: str, updates: list[tuple[str, dict[str, Any]]]
    ) -> list[dict[str, Any]]:
        """Update many records, in chunks."""
        results: list[dict[str, Any]] = []
        for chunk in _chunks(updates, BATCH_LIMIT):
            data = await self._request(
                "POST",
                f"/crm/v3/objects/{object_type}/batch/update",
                json={
                    "inputs": [
                        {"id": str(object_id), "properties": props} for object_id, props in chunk
                    ]
                },
            )
            results.extend(data.get("results", []))
        return results

    async def create_object(
        self,
        object_type: str,
        properties: dict[str, Any],
        associations: list[Association] | None = None,
    ) -> dict[str, Any]:
        """Create a record, optionally associated with others."""
        body: dict[str, Any] = {"properties": properties}
        if associations:
            body["associations"] = [a.to_payload() for a in associations]
        return await self._request("POST", f"/crm/v3/objects/{object_type}", json=body)

    async def batch_create(
        self,
        object_type: str,
        inputs: list[tuple[dict[str, Any], list[Association]]],
    ) -> list[dict[str, Any]]:
        """Create many records, in chunks."""
        results: list[dict[str, Any]] = []
        for chunk in _chunks(inputs, BATCH_LIMIT):
            payload = []
            for props, associations in chunk:
                item: dict[str, Any] = {"properties": props}
                if associations:
                    item["associations"] = [a.to_payload() for a in associations]
                payload.append(item)
            data = await self._request(
                "POST",
                f"/crm/v3/objects/{object_type}/batch/create",
                json={"inputs": payload},
            )
            results.extend(data.get("results", []))
        return results

    async def archive_object(self, object_type: str, object_id: str) -> None:
        """Archive (soft delete) one record."""
        await self._request("DELETE", f"/crm/v3/objects/{object_type}/{object_id}")
