"""Sync module - Clean Architecture implementation of NPL to ThingsBoard sync.

Architecture:
    domain/     - Pure domain entities, events and port interfaces
    use_cases/  - Business logic (apply one change, reconcile a domain)
    adapters/   - Infrastructure implementations (ThingsBoard, NPL engine,
                  entity translation)

Only the domain layer is re-exported here; the API clients import domain
entities, so pulling adapters in at package import would be circular.
"""

from .domain import (
    Device,
    EventType,
    OperationResult,
    ReconcileResult,
    SyncDomain,
    SyncEvent,
    SyncOperation,
    SyncStatus,
    Tenant,
    TenantLimits,
)

__all__ = [
    "Device",
    "Tenant",
    "TenantLimits",
    "OperationResult",
    "ReconcileResult",
    "SyncStatus",
    "SyncDomain",
    "SyncOperation",
    "EventType",
    "SyncEvent",
]
