#!/usr/bin/env python3
"""ThingsBoard (legacy system) REST client.

Thin resource layer over RestClient: it knows the ThingsBoard endpoints
for devices, tenants and customer assignment, and converts between the
flat id fields used inside the service and ThingsBoard's
``{"id": ..., "entityType": ...}`` references on the wire.

Error contract:
    - Mutations (create/update/delete/assign/unassign) never raise for
      API or network failures. They return an OperationResult with
      ``success=False`` and a redacted error message.
    - Reads (get/list/count) raise typed exceptions; ``get_*`` returns
      None for a 404.

Usage:
    sessions = LegacySessionManager(url, username, password)
    async with LegacyClient(sessions, url) as client:
        result = await client.create_device({"id": "d1", "name": "Sensor A", "type": "sensor"})
        if not result.success:
            logger.error(result.error)
"""
import logging
from typing import Any, Optional

from ..sync.domain.entities import OperationResult, SyncOperation
from .auth import LegacySessionManager
from .client import PaginationConfig, RestClient
from .exceptions import NotFoundError, NplSyncError
from .redaction import redact_text

logger = logging.getLogger(__name__)

DEVICE_REFS = {
    "id": "DEVICE",
    "tenantId": "TENANT",
    "customerId": "CUSTOMER",
    "deviceProfileId": "DEVICE_PROFILE",
    "firmwareId": "OTA_PACKAGE",
    "softwareId": "OTA_PACKAGE",
    "externalId": "DEVICE",
}

TENANT_REFS = {
    "id": "TENANT",
    "tenantProfileId": "TENANT_PROFILE",
}

LIST_PAGINATION = PaginationConfig(page_size=100)


def to_wire(shape: dict[str, Any], refs: dict[str, str]) -> dict[str, Any]:
    """Drop empty fields and wrap id fields as entity references."""
    body = {}
    for key, value in shape.items():
        if value is None:
            continue
        if key in refs and isinstance(value, str):
            body[key] = {"id": value, "entityType": refs[key]}
        else:
            body[key] = value
    return body


class LegacyClient(RestClient):
    """ThingsBoard device, tenant and assignment endpoints."""

    def __init__(
        self,
        sessions: LegacySessionManager,
        base_url: str,
        timeout_seconds: float = 10.0,
        **kwargs,
    ):
        super().__init__(
            sessions,
            base_url,
            timeout_seconds=timeout_seconds,
            name="thingsboard",
            **kwargs,
        )
        self.sessions = sessions

    async def test_connection(self) -> bool:
        """Probe the login endpoint. Never raises."""
        try:
            self.sessions.invalidate()
            await self.sessions.get_token()
        except NplSyncError as e:
            logger.error(f"ThingsBoard connection test failed: {redact_text(str(e))}")
            return False
        logger.info("ThingsBoard connection test successful")
        return True

    async def _mutate(
        self,
        operation: SyncOperation,
        entity_id: Optional[str],
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
    ) -> OperationResult:
        try:
            data = await self._request_with_retry(method, endpoint, json_body=json_body)
        except NplSyncError as e:
            error = redact_text(str(e))
            logger.error(f"ThingsBoard {operation.value} failed for {entity_id}: {error}")
            return OperationResult(
                success=False,
                operation=operation.value,
                entity_id=entity_id,
                error=error,
            )

        logger.info(f"ThingsBoard {operation.value} succeeded for {entity_id}")
        return OperationResult(
            success=True,
            operation=operation.value,
            entity_id=entity_id,
            data=data,
        )

    # ----------------------------------------
    # Devices
    # ----------------------------------------

    async def create_device(self, shape: dict[str, Any]) -> OperationResult:
        return await self._mutate(
            SyncOperation.CREATE,
            shape.get("id"),
            "POST",
            "/api/device",
            json_body=to_wire(shape, DEVICE_REFS),
        )

    async def update_device(self, device_id: str, shape: dict[str, Any]) -> OperationResult:
        body = to_wire({**shape, "id": device_id}, DEVICE_REFS)
        return await self._mutate(
            SyncOperation.UPDATE, device_id, "PUT", f"/api/device/{device_id}", json_body=body
        )

    async def delete_device(self, device_id: str) -> OperationResult:
        return await self._mutate(
            SyncOperation.DELETE, device_id, "DELETE", f"/api/device/{device_id}"
        )

    async def get_device(self, device_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self.get(f"/api/device/{device_id}")
        except NotFoundError:
            return None

    async def list_devices(self) -> list[dict[str, Any]]:
        return await self.fetch_all("/api/tenant/devices", LIST_PAGINATION)

    async def count_devices(self) -> int:
        data = await self.get("/api/tenant/devices", params={"pageSize": 1, "page": 0}) or {}
        return int(data.get("totalElements", len(data.get("data", []))))

    async def assign_device_to_customer(self, device_id: str, customer_id: str) -> OperationResult:
        return await self._mutate(
            SyncOperation.ASSIGN,
            device_id,
            "POST",
            f"/api/customer/{customer_id}/device/{device_id}",
        )

    async def unassign_device_from_customer(self, device_id: str, customer_id: str) -> OperationResult:
        return await self._mutate(
            SyncOperation.UNASSIGN,
            device_id,
            "DELETE",
            f"/api/customer/{customer_id}/device/{device_id}",
        )

    # ----------------------------------------
    # Tenants
    # ----------------------------------------

    async def create_tenant(self, shape: dict[str, Any]) -> OperationResult:
        return await self._mutate(
            SyncOperation.CREATE,
            shape.get("id"),
            "POST",
            "/api/tenant",
            json_body=to_wire(shape, TENANT_REFS),
        )

    async def update_tenant(self, tenant_id: str, shape: dict[str, Any]) -> OperationResult:
        body = to_wire({**shape, "id": tenant_id}, TENANT_REFS)
        return await self._mutate(
            SyncOperation.UPDATE, tenant_id, "PUT", f"/api/tenant/{tenant_id}", json_body=body
        )

    async def delete_tenant(self, tenant_id: str) -> OperationResult:
        return await self._mutate(
            SyncOperation.DELETE, tenant_id, "DELETE", f"/api/tenant/{tenant_id}"
        )

    async def get_tenant(self, tenant_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self.get(f"/api/tenant/{tenant_id}")
        except NotFoundError:
            return None

    async def list_tenants(self) -> list[dict[str, Any]]:
        return await self.fetch_all("/api/tenants", LIST_PAGINATION)

    async def count_tenants(self) -> int:
        data = await self.get("/api/tenants", params={"pageSize": 1, "page": 0}) or {}
        return int(data.get("totalElements", len(data.get("data", []))))


__all__ = ["LegacyClient", "to_wire", "DEVICE_REFS", "TENANT_REFS"]
