"""Use cases layer - Business logic for applying and reconciling changes."""

from .entity_sync import DeviceSyncService, EntitySyncService, TenantSyncService

__all__ = [
    "EntitySyncService",
    "DeviceSyncService",
    "TenantSyncService",
]
