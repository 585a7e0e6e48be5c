"""Domain entities for sync operations.

These are pure data structures with no infrastructure dependencies.
Entities use the source-of-truth (NPL engine) vocabulary; the legacy
(ThingsBoard) wire shape is produced by the translators.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Device:
    """Canonical device record.

    ``credentials`` is a secret: it travels into the legacy system only
    through the dedicated credentials flow, never inside the device body,
    and it never appears in logs.
    """

    id: str
    name: str = ""
    type: str = ""
    tenant_id: str | None = None
    customer_id: str | None = None
    credentials: str | None = field(default=None, repr=False)
    label: str | None = None
    device_profile_id: str | None = None
    firmware_id: str | None = None
    software_id: str | None = None
    external_id: str | None = None
    version: int | None = None
    additional_info: Any = None
    created_time: int | None = None
    device_data: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Device":
        """Build from the engine's camelCase JSON shape."""
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            type=data.get("type") or "",
            tenant_id=_opt_str(data.get("tenantId")),
            customer_id=_opt_str(data.get("customerId")),
            credentials=_opt_str(data.get("credentials")),
            label=_opt_str(data.get("label")),
            device_profile_id=_opt_str(data.get("deviceProfileId")),
            firmware_id=_opt_str(data.get("firmwareId")),
            software_id=_opt_str(data.get("softwareId")),
            external_id=_opt_str(data.get("externalId")),
            version=_opt_int(data.get("version")),
            additional_info=data.get("additionalInfo"),
            created_time=_opt_int(data.get("createdTime")),
            device_data=data.get("deviceData"),
        )

    def to_dict(self, include_credentials: bool = False) -> dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "tenantId": self.tenant_id,
            "customerId": self.customer_id,
            "label": self.label,
            "deviceProfileId": self.device_profile_id,
            "firmwareId": self.firmware_id,
            "softwareId": self.software_id,
            "externalId": self.external_id,
            "version": self.version,
            "additionalInfo": self.additional_info,
            "createdTime": self.created_time,
            "deviceData": self.device_data,
        }
        if include_credentials:
            out["credentials"] = self.credentials
        return out

    @property
    def is_assigned(self) -> bool:
        return self.customer_id is not None


@dataclass
class TenantLimits:
    """Numeric resource limits carried by an engine tenant."""

    max_users: int | None = None
    max_devices: int | None = None
    max_assets: int | None = None
    max_customers: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TenantLimits":
        data = data if isinstance(data, dict) else {}
        return cls(
            max_users=_opt_int(data.get("maxUsers")),
            max_devices=_opt_int(data.get("maxDevices")),
            max_assets=_opt_int(data.get("maxAssets")),
            max_customers=_opt_int(data.get("maxCustomers")),
        )

    def to_dict(self) -> dict[str, int | None]:
        return {
            "maxUsers": self.max_users,
            "maxDevices": self.max_devices,
            "maxAssets": self.max_assets,
            "maxCustomers": self.max_customers,
        }

    def as_tuple(self) -> tuple[int | None, ...]:
        return (self.max_users, self.max_devices, self.max_assets, self.max_customers)


@dataclass
class Tenant:
    """Canonical tenant record."""

    id: str
    name: str = ""
    title: str | None = None
    region: str | None = None
    country: str | None = None
    state_name: str | None = None
    city: str | None = None
    address: str | None = None
    address2: str | None = None
    zip: str | None = None
    phone: str | None = None
    email: str | None = None
    limits: TenantLimits = field(default_factory=TenantLimits)
    created_time: Any = None
    additional_info: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tenant":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            title=_opt_str(data.get("title")),
            region=_opt_str(data.get("region")),
            country=_opt_str(data.get("country")),
            state_name=_opt_str(data.get("stateName")),
            city=_opt_str(data.get("city")),
            address=_opt_str(data.get("address")),
            address2=_opt_str(data.get("address2")),
            zip=_opt_str(data.get("zip")),
            phone=_opt_str(data.get("phone")),
            email=_opt_str(data.get("email")),
            limits=TenantLimits.from_dict(data.get("limits")),
            created_time=data.get("createdTime"),
            additional_info=data.get("additionalInfo"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "title": self.title,
            "region": self.region,
            "country": self.country,
            "stateName": self.state_name,
            "city": self.city,
            "address": self.address,
            "address2": self.address2,
            "zip": self.zip,
            "phone": self.phone,
            "email": self.email,
            "limits": self.limits.to_dict(),
            "createdTime": self.created_time,
            "additionalInfo": self.additional_info,
        }


class SyncDomain(str, Enum):
    DEVICE = "device"
    TENANT = "tenant"


class SyncOperation(str, Enum):
    """Single-entity mutation kinds applied to the legacy system."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    UNASSIGN = "unassign"


@dataclass
class OperationResult:
    """Outcome of one legacy mutation.

    ``skipped`` marks calls that never reached the legacy system (another
    mutation or sweep on the same domain was in flight, or there was
    nothing to change).
    """

    success: bool
    operation: str
    entity_id: str | None = None
    data: Any = None
    error: str | None = None
    skipped: bool = False

    @property
    def deferred(self) -> bool:
        """Skipped because the domain was busy; the change still has to be applied."""
        return self.skipped and not self.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "operation": self.operation,
            "entityId": self.entity_id,
            "error": self.error,
            "skipped": self.skipped,
        }


@dataclass
class ReconcileResult:
    """Counters for one reconciliation sweep."""

    domain: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.skipped and self.failed == 0 and not self.errors

    @property
    def deferred(self) -> bool:
        return self.skipped

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationSeconds": self.duration_seconds,
        }


@dataclass
class SyncStatus:
    """Point-in-time comparison of one domain across both systems."""

    domain: str
    source_count: int = 0
    legacy_count: int = 0
    reconciliation_in_progress: bool = False
    last_reconciled_at: datetime | None = None
    error: str | None = None

    @property
    def in_sync(self) -> bool:
        return self.error is None and self.source_count == self.legacy_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "sourceCount": self.source_count,
            "legacyCount": self.legacy_count,
            "inSync": self.in_sync,
            "reconciliationInProgress": self.reconciliation_in_progress,
            "lastReconciledAt": (
                self.last_reconciled_at.isoformat() if self.last_reconciled_at else None
            ),
            "error": self.error,
        }


class SnapshotCache:
    """Last-known legacy shape per entity id.

    Process-local and never authoritative: a miss means "ask the legacy
    system", never "the entity does not exist".
    """

    def __init__(self):
        self._items: dict[str, dict[str, Any]] = {}

    def get(self, entity_id: str) -> dict[str, Any] | None:
        return self._items.get(entity_id)

    def put(self, entity_id: str, shape: dict[str, Any]) -> None:
        self._items[entity_id] = dict(shape)

    def discard(self, entity_id: str) -> None:
        self._items.pop(entity_id, None)

    def replace_all(self, shapes: dict[str, dict[str, Any]]) -> None:
        self._items = {k: dict(v) for k, v in shapes.items()}

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._items

    def __len__(self) -> int:
        return len(self._items)
