"""Pytest configuration and fixtures."""

import itertools
import os
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("CRM_ACCESS_TOKEN", "pat-test-token")
os.environ.setdefault("CRM_API_URL", "http://crm.test")
os.environ.setdefault("LOG_FORMAT", "console")

from billing_sync.config.pipelines import (  # noqa: E402
    DEFAULT_PIPELINES_FILE,
    PipelineConfig,
    parse_pipeline_config,
)
from billing_sync.crm.client import Association, CRMError, NotFoundError  # noqa: E402
from billing_sync.crm.properties import ObjectType  # noqa: E402

MANUAL_PIPELINE = "875213463"
MANUAL_NEW = "1311451807"
MANUAL_INVOICED = "1311451809"
MANUAL_CANCELLED = "1311451813"
MANUAL_FORECAST_25 = "1311451803"
MANUAL_FORECAST_95 = "1311451806"
AUTO_PIPELINE = "875177783"
AUTO_READY = "1311404151"
AUTO_FORECAST_95 = "1311404150"


class FakeCRM:
    """In-memory stand-in for CRMClient.

    Records live in ``objects[type][id]``; associations in
    ``associations[(from_type, from_id, to_type)]``. Every call is recorded in
    ``calls`` and ``failures`` maps ``(method, object_id)`` to an exception to
    raise.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, dict[str, Any]]] = {}
        self.associations: dict[tuple[str, str, str], list[str]] = {}
        self.schemas: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._ids = itertools.count(900000)

    # --- fixtures helpers ---

    def add(self, object_type: str, object_id: str, **properties: Any) -> dict[str, Any]:
        record = {"id": str(object_id), "properties": {k: v for k, v in properties.items()}}
        self.objects.setdefault(object_type, {})[str(object_id)] = record
        return record

    def associate(self, from_type: str, from_id: str, to_type: str, to_id: str) -> None:
        self.associations.setdefault((from_type, str(from_id), to_type), []).append(str(to_id))

    def props(self, object_type: str, object_id: str) -> dict[str, Any]:
        return self.objects[object_type][str(object_id)]["properties"]

    def tickets(self) -> list[dict[str, Any]]:
        return list(self.objects.get(ObjectType.TICKETS, {}).values())

    def write_calls(self) -> list[tuple[str, str, Any]]:
        writes = {"update_object", "batch_update", "create_object", "batch_create", "archive_object"}
        return [c for c in self.calls if c[0] in writes]

    def _maybe_fail(self, method: str, object_id: str = "*") -> None:
        error = self.failures.get((method, str(object_id))) or self.failures.get((method, "*"))
        if error is not None:
            raise error

    # --- CRMClient surface ---

    async def get_object(self, object_type: str, object_id: str, properties: list[str] | None = None) -> dict[str, Any]:
        self.calls.append(("get_object", object_type, object_id))
        self._maybe_fail("get_object", object_id)
        record = self.objects.get(object_type, {}).get(str(object_id))
        if record is None:
            raise NotFoundError(f"{object_type} {object_id} not found", status_code=404)
        return {"id": record["id"], "properties": dict(record["properties"])}

    async def batch_read(self, object_type: str, ids: list[str], properties: list[str] | None = None) -> list[dict[str, Any]]:
        self.calls.append(("batch_read", object_type, list(ids)))
        self._maybe_fail("batch_read")
        store = self.objects.get(object_type, {})
        return [
            {"id": store[i]["id"], "properties": dict(store[i]["properties"])}
            for i in ids
            if i in store
        ]

    async def search_all(self, object_type: str, filters: list[dict[str, Any]], properties: list[str] | None = None) -> list[dict[str, Any]]:
        self.calls.append(("search_all", object_type, filters))
        self._maybe_fail("search_all")
        results = []
        for record in self.objects.get(object_type, {}).values():
            props = record["properties"]
            matched = True
            for f in filters:
                value = str(props.get(f["propertyName"], "") or "")
                if f["operator"] == "EQ" and value != f["value"]:
                    matched = False
                if f["operator"] == "NEQ" and value == f["value"]:
                    matched = False
            if matched:
                results.append({"id": record["id"], "properties": dict(props)})
        return results

    async def get_associated_ids(self, from_type: str, from_id: str, to_type: str) -> list[str]:
        self.calls.append(("get_associated_ids", from_type, from_id))
        self._maybe_fail("get_associated_ids", from_id)
        live = self.objects.get(to_type, {})
        return [i for i in self.associations.get((from_type, str(from_id), to_type), []) if i in live]

    async def get_property_names(self, object_type: str) -> list[str]:
        self.calls.append(("get_property_names", object_type, None))
        if object_type not in self.schemas:
            raise CRMError("schema unavailable", status_code=503)
        return list(self.schemas[object_type])

    async def update_object(self, object_type: str, object_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update_object", object_type, (str(object_id), dict(properties))))
        self._maybe_fail("update_object", object_id)
        record = self.objects.get(object_type, {}).get(str(object_id))
        if record is None:
            raise NotFoundError(f"{object_type} {object_id} not found", status_code=404)
        record["properties"].update(properties)
        return record

    async def batch_update(self, object_type: str, updates: list[tuple[str, dict[str, Any]]]) -> list[dict[str, Any]]:
        self.calls.append(("batch_update", object_type, [(i, dict(p)) for i, p in updates]))
        self._maybe_fail("batch_update")
        results = []
        for object_id, props in updates:
            record = self.objects[object_type][str(object_id)]
            record["properties"].update(props)
            results.append(record)
        return results

    async def create_object(self, object_type: str, properties: dict[str, Any], associations: list[Association] | None = None) -> dict[str, Any]:
        self.calls.append(("create_object", object_type, dict(properties)))
        self._maybe_fail("create_object", properties.get("of_ticket_key", "*"))
        return self._create(object_type, properties, associations)

    async def batch_create(self, object_type: str, inputs: list[tuple[dict[str, Any], list[Association]]]) -> list[dict[str, Any]]:
        self.calls.append(("batch_create", object_type, [dict(p) for p, _ in inputs]))
        self._maybe_fail("batch_create")
        return [self._create(object_type, props, assocs) for props, assocs in inputs]

    async def archive_object(self, object_type: str, object_id: str) -> None:
        self.calls.append(("archive_object", object_type, str(object_id)))
        self._maybe_fail("archive_object", object_id)
        if str(object_id) not in self.objects.get(object_type, {}):
            raise NotFoundError(f"{object_type} {object_id} not found", status_code=404)
        del self.objects[object_type][str(object_id)]

    def _create(self, object_type: str, properties: dict[str, Any], associations: list[Association] | None) -> dict[str, Any]:
        new_id = str(next(self._ids))
        record = self.add(object_type, new_id, createdate="2026-01-02T00:00:00Z", **properties)
        for association in associations or []:
            self.associate(ObjectType.DEALS, association.to_id, object_type, new_id)
        return record


@pytest.fixture
def fake_crm() -> FakeCRM:
    """An empty in-memory CRM."""
    return FakeCRM()


@pytest.fixture
def pipelines() -> PipelineConfig:
    """Pipeline configuration from the bundled YAML file."""
    return parse_pipeline_config(DEFAULT_PIPELINES_FILE)


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client
