"""ThingsBoard adapters for the legacy-side ports.

These adapters implement ILegacyGateway (and IDeviceAssignmentGateway
for devices) by delegating to LegacyClient.
"""

from typing import TYPE_CHECKING, Any

from ..domain.entities import OperationResult
from ..domain.ports import IDeviceAssignmentGateway, ILegacyGateway

if TYPE_CHECKING:
    from ...api.legacy_client import LegacyClient


class LegacyDeviceGateway(ILegacyGateway, IDeviceAssignmentGateway):
    """ThingsBoard device endpoints behind the gateway ports."""

    def __init__(self, client: "LegacyClient"):
        self.client = client

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        return await self.client.get_device(entity_id)

    async def list_all(self) -> list[dict[str, Any]]:
        return await self.client.list_devices()

    async def count(self) -> int:
        return await self.client.count_devices()

    async def create(self, shape: dict[str, Any]) -> OperationResult:
        return await self.client.create_device(shape)

    async def update(self, entity_id: str, shape: dict[str, Any]) -> OperationResult:
        return await self.client.update_device(entity_id, shape)

    async def delete(self, entity_id: str) -> OperationResult:
        return await self.client.delete_device(entity_id)

    async def assign(self, device_id: str, customer_id: str) -> OperationResult:
        return await self.client.assign_device_to_customer(device_id, customer_id)

    async def unassign(self, device_id: str, customer_id: str) -> OperationResult:
        return await self.client.unassign_device_from_customer(device_id, customer_id)


class LegacyTenantGateway(ILegacyGateway):
    """ThingsBoard tenant endpoints behind the gateway port."""

    def __init__(self, client: "LegacyClient"):
        self.client = client

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        return await self.client.get_tenant(entity_id)

    async def list_all(self) -> list[dict[str, Any]]:
        return await self.client.list_tenants()

    async def count(self) -> int:
        return await self.client.count_tenants()

    async def create(self, shape: dict[str, Any]) -> OperationResult:
        return await self.client.create_tenant(shape)

    async def update(self, entity_id: str, shape: dict[str, Any]) -> OperationResult:
        return await self.client.update_tenant(entity_id, shape)

    async def delete(self, entity_id: str) -> OperationResult:
        return await self.client.delete_tenant(entity_id)
