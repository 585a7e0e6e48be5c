"""Domain layer - Pure domain entities, events and port interfaces.

This layer contains:
- Entities: Devices, tenants and sync results
- Events: The SyncEvent envelope and its payload variants
- Ports: Abstract interfaces defining contracts for adapters

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    Device,
    OperationResult,
    ReconcileResult,
    SnapshotCache,
    SyncDomain,
    SyncOperation,
    SyncStatus,
    Tenant,
    TenantLimits,
)
from .events import (
    AssignmentPayload,
    BulkPayload,
    EntityIdPayload,
    EntityPayload,
    EventKind,
    EventMetadata,
    EventType,
    RawEvent,
    SyncEvent,
    UnmappedEvent,
)
from .ports import (
    IDeviceAssignmentGateway,
    IEntityTranslator,
    ILegacyGateway,
    ISourceReader,
)

__all__ = [
    # Entities
    "Device",
    "Tenant",
    "TenantLimits",
    "SnapshotCache",
    # Results
    "OperationResult",
    "ReconcileResult",
    "SyncStatus",
    "SyncDomain",
    "SyncOperation",
    # Events
    "EventKind",
    "EventType",
    "EventMetadata",
    "RawEvent",
    "SyncEvent",
    "UnmappedEvent",
    "EntityPayload",
    "EntityIdPayload",
    "AssignmentPayload",
    "BulkPayload",
    # Ports
    "ISourceReader",
    "ILegacyGateway",
    "IDeviceAssignmentGateway",
    "IEntityTranslator",
]
