"""Adapters layer - Infrastructure implementations of the domain ports.

This layer contains:
- EngineDeviceSource / EngineTenantSource: NPL engine reads (ISourceReader)
- LegacyDeviceGateway / LegacyTenantGateway: ThingsBoard writes (ILegacyGateway)
- DeviceTranslator / TenantTranslator: Canonical <-> legacy shapes
"""

from .engine_adapter import EngineDeviceSource, EngineTenantSource
from .legacy_adapter import LegacyDeviceGateway, LegacyTenantGateway
from .translator import (
    DeviceTranslator,
    TenantTranslator,
    diff_shapes,
    limits_to_profile_id,
    profile_id_to_limits,
)

__all__ = [
    "EngineDeviceSource",
    "EngineTenantSource",
    "LegacyDeviceGateway",
    "LegacyTenantGateway",
    "DeviceTranslator",
    "TenantTranslator",
    "diff_shapes",
    "limits_to_profile_id",
    "profile_id_to_limits",
]
