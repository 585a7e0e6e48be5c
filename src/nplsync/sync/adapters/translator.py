"""Entity translators between the engine's canonical shape and ThingsBoard's.

This adapter implements IEntityTranslator for devices and tenants. All
functions are pure: no I/O, no clocks, no logging.

Key rules:
- Device credentials never enter the legacy shape and are replaced by
  ``[REDACTED]`` in log representations.
- ThingsBoard wraps ids as ``{"id": "...", "entityType": "DEVICE"}``;
  those references are unwrapped on the way in and plain ids are sent on
  the way out.
- Tenant numeric limits map onto three named tenant profiles. The mapping
  is lossy in both directions (see ``limits_to_profile_id``).
"""

import json
from typing import Any

from ...api.redaction import REDACTED, redact_mapping
from ..domain.entities import Device, Tenant, TenantLimits
from ..domain.ports import IEntityTranslator

# Fields that change without any business edit and never trigger an update
VOLATILE_FIELDS = frozenset({"id", "createdTime", "version"})

# ============================================
# Tenant profile tiers
# ============================================

PREMIUM_PROFILE_ID = "premium-profile-id"
STANDARD_PROFILE_ID = "standard-profile-id"
DEFAULT_PROFILE_ID = "default-profile-id"

# Highest tier first; thresholds are (maxUsers, maxDevices, maxAssets, maxCustomers)
PROFILE_TIERS: list[tuple[str, TenantLimits]] = [
    (PREMIUM_PROFILE_ID, TenantLimits(200, 2000, 1000, 100)),
    (STANDARD_PROFILE_ID, TenantLimits(100, 1000, 500, 50)),
    (DEFAULT_PROFILE_ID, TenantLimits(50, 500, 250, 25)),
]


def limits_to_profile_id(limits: TenantLimits | None) -> str:
    """Pick the tenant profile for a set of numeric limits.

    Floor bucketing: the tenant gets the highest tier whose every threshold
    is at or below the tenant's corresponding limit. A tenant that clears
    the premium user threshold but not the premium device threshold lands
    in the best tier it fully clears. Missing or non-numeric limits never
    clear a threshold, so they fall through to the default profile.
    """
    if limits is None:
        return DEFAULT_PROFILE_ID

    values = limits.as_tuple()
    for profile_id, threshold in PROFILE_TIERS[:-1]:
        if all(
            isinstance(value, int) and value >= minimum
            for value, minimum in zip(values, threshold.as_tuple())
        ):
            return profile_id
    return DEFAULT_PROFILE_ID


def profile_id_to_limits(profile_id: str | None) -> TenantLimits:
    """Representative limits for a profile. Unknown profiles get default limits.

    Not an inverse of ``limits_to_profile_id``: a tenant with 150 users
    comes back with the standard tier's 100.
    """
    for tier_id, threshold in PROFILE_TIERS:
        if tier_id == profile_id:
            return TenantLimits(*threshold.as_tuple())
    return TenantLimits(*PROFILE_TIERS[-1][1].as_tuple())


# ============================================
# Shared helpers
# ============================================

def unwrap_ref(value: Any) -> Any:
    """Return the plain id from a ThingsBoard entity reference."""
    if isinstance(value, dict) and "id" in value:
        return value["id"]
    return value


def _normalize(value: Any) -> Any:
    """Canonical form for comparison: blank strings are None, JSON text is parsed."""
    if value == "" or value == {}:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                parsed = json.loads(stripped)
            except ValueError:
                return value
            return parsed or None
    return value


def diff_shapes(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    changes = {}
    for key in desired.keys() | current.keys():
        if key in VOLATILE_FIELDS:
            continue
        want = _normalize(desired.get(key))
        have = _normalize(current.get(key))
        if want != have:
            changes[key] = (want, have)
    return changes


# ============================================
# Devices
# ============================================

class DeviceTranslator(IEntityTranslator[Device]):
    """Device <-> ThingsBoard device body."""

    # Fields compared for updates; credentials and deviceData are excluded
    LEGACY_FIELDS = (
        "name",
        "type",
        "tenantId",
        "customerId",
        "label",
        "deviceProfileId",
        "firmwareId",
        "softwareId",
        "externalId",
        "additionalInfo",
    )

    def from_source(self, data: dict[str, Any]) -> Device:
        return Device.from_dict(data)

    def entity_id(self, entity: Device) -> str:
        return entity.id

    def to_legacy_shape(self, entity: Device) -> dict[str, Any]:
        shape = {
            "id": entity.id,
            "name": entity.name,
            "type": entity.type,
            "tenantId": entity.tenant_id,
            "customerId": entity.customer_id,
            "label": entity.label,
            "deviceProfileId": entity.device_profile_id,
            "firmwareId": entity.firmware_id,
            "softwareId": entity.software_id,
            "externalId": entity.external_id,
            "additionalInfo": _normalize(entity.additional_info),
        }
        if entity.version is not None:
            shape["version"] = entity.version
        if entity.created_time is not None:
            shape["createdTime"] = entity.created_time
        return shape

    def to_canonical_shape(self, legacy: dict[str, Any]) -> Device:
        return Device(
            id=str(unwrap_ref(legacy.get("id"))),
            name=legacy.get("name") or "",
            type=legacy.get("type") or "",
            tenant_id=unwrap_ref(legacy.get("tenantId")),
            customer_id=unwrap_ref(legacy.get("customerId")),
            label=legacy.get("label"),
            device_profile_id=unwrap_ref(legacy.get("deviceProfileId")),
            firmware_id=unwrap_ref(legacy.get("firmwareId")),
            software_id=unwrap_ref(legacy.get("softwareId")),
            external_id=unwrap_ref(legacy.get("externalId")),
            version=legacy.get("version"),
            additional_info=legacy.get("additionalInfo"),
            created_time=legacy.get("createdTime"),
        )

    def normalize_legacy(self, legacy: dict[str, Any]) -> dict[str, Any]:
        """Flatten a raw ThingsBoard device into the shape ``to_legacy_shape`` emits."""
        return self.to_legacy_shape(self.to_canonical_shape(legacy))

    def to_log_repr(self, entity: Device) -> dict[str, Any]:
        record = redact_mapping(entity.to_dict())
        record["credentials"] = REDACTED if entity.credentials else None
        return record

    def diff(self, desired: dict[str, Any], current: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
        return diff_shapes(
            {k: desired.get(k) for k in self.LEGACY_FIELDS},
            {k: current.get(k) for k in self.LEGACY_FIELDS},
        )


# ============================================
# Tenants
# ============================================

class TenantTranslator(IEntityTranslator[Tenant]):
    """Tenant <-> ThingsBoard tenant body."""

    LEGACY_FIELDS = (
        "name",
        "title",
        "region",
        "country",
        "state",
        "city",
        "address",
        "address2",
        "zip",
        "phone",
        "email",
        "additionalInfo",
        "tenantProfileId",
    )

    def from_source(self, data: dict[str, Any]) -> Tenant:
        return Tenant.from_dict(data)

    def entity_id(self, entity: Tenant) -> str:
        return entity.id

    def to_legacy_shape(self, entity: Tenant) -> dict[str, Any]:
        shape = {
            "id": entity.id,
            "name": entity.name,
            "title": entity.title,
            "region": entity.region,
            "country": entity.country,
            "state": entity.state_name,
            "city": entity.city,
            "address": entity.address,
            "address2": entity.address2,
            "zip": entity.zip,
            "phone": entity.phone,
            "email": entity.email,
            "additionalInfo": _normalize(entity.additional_info),
            "tenantProfileId": limits_to_profile_id(entity.limits),
        }
        if entity.created_time is not None:
            shape["createdTime"] = entity.created_time
        return shape

    def to_canonical_shape(self, legacy: dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(unwrap_ref(legacy.get("id"))),
            name=legacy.get("name") or "",
            title=legacy.get("title"),
            region=legacy.get("region"),
            country=legacy.get("country"),
            state_name=legacy.get("state"),
            city=legacy.get("city"),
            address=legacy.get("address"),
            address2=legacy.get("address2"),
            zip=legacy.get("zip"),
            phone=legacy.get("phone"),
            email=legacy.get("email"),
            limits=profile_id_to_limits(unwrap_ref(legacy.get("tenantProfileId"))),
            created_time=legacy.get("createdTime"),
            additional_info=legacy.get("additionalInfo"),
        )

    def normalize_legacy(self, legacy: dict[str, Any]) -> dict[str, Any]:
        shape = self.to_legacy_shape(self.to_canonical_shape(legacy))
        # Keep the profile id as stored instead of round-tripping through limits
        profile = unwrap_ref(legacy.get("tenantProfileId"))
        if profile:
            shape["tenantProfileId"] = profile
        return shape

    def to_log_repr(self, entity: Tenant) -> dict[str, Any]:
        return redact_mapping(entity.to_dict())

    def diff(self, desired: dict[str, Any], current: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
        return diff_shapes(
            {k: desired.get(k) for k in self.LEGACY_FIELDS},
            {k: current.get(k) for k in self.LEGACY_FIELDS},
        )
