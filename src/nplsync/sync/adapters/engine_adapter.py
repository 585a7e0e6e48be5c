"""NPL engine adapters for the source-side port.

These adapters implement ISourceReader by wrapping EngineClient and
mapping the engine's JSON into domain entities. Records that cannot be
mapped (no id) are logged and skipped rather than failing the read.
"""

import logging
from typing import TYPE_CHECKING, Any

from ..domain.entities import Device, Tenant
from ..domain.ports import ISourceReader

if TYPE_CHECKING:
    from ...api.engine_client import EngineClient

logger = logging.getLogger(__name__)


def _map_records(records: list[dict[str, Any]], factory, kind: str) -> list:
    entities = []
    for raw in records:
        if not isinstance(raw, dict) or not raw.get("id"):
            logger.warning(f"Skipping engine {kind} record without id")
            continue
        entities.append(factory(raw))
    return entities


class EngineDeviceSource(ISourceReader[Device]):
    def __init__(self, client: "EngineClient"):
        self.client = client

    async def fetch_all(self) -> list[Device]:
        return _map_records(await self.client.list_devices(), Device.from_dict, "device")

    async def count(self) -> int:
        return await self.client.count_devices()


class EngineTenantSource(ISourceReader[Tenant]):
    def __init__(self, client: "EngineClient"):
        self.client = client

    async def fetch_all(self) -> list[Tenant]:
        return _map_records(await self.client.list_tenants(), Tenant.from_dict, "tenant")

    async def count(self) -> int:
        return await self.client.count_tenants()
