"""Static routing from engine frames to SyncEvents and queues.

Every business notification or command the service understands has one
entry in ``EVENT_ROUTES``. ``build_sync_event`` turns a RawEvent into a
``(SyncEvent, queue_name)`` pair, or into an ``UnmappedEvent`` when no
route exists or the frame lacks the data the route needs.

Notifications carry positional arguments (``arguments[i].value``);
commands carry named ``parameters``.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Union

from ..api.exceptions import EventDecodeError
from ..sync.domain.events import (
    AssignmentPayload,
    BulkPayload,
    EntityIdPayload,
    EntityPayload,
    EventKind,
    EventMetadata,
    EventType,
    Payload,
    RawEvent,
    SyncEvent,
    UnmappedEvent,
)

logger = logging.getLogger(__name__)

DEVICE_QUEUE = "device-sync"
TENANT_QUEUE = "tenant-sync"

# Commands that change business state; every other command is engine noise
BUSINESS_COMMANDS = frozenset({
    "saveDevice",
    "deleteDevice",
    "assignDeviceToCustomer",
    "unassignDeviceFromCustomer",
    "saveTenant",
    "deleteTenant",
})


def is_business_event(raw: RawEvent) -> bool:
    """All notifications are business events; commands only if whitelisted."""
    if raw.is_notify:
        return True
    if raw.is_command:
        return raw.name in BUSINESS_COMMANDS
    return False


# ============================================
# Payload extractors
# ============================================

def _blank_credentials(entity: dict[str, Any]) -> dict[str, Any]:
    entity = dict(entity)
    if "credentials" in entity:
        entity["credentials"] = ""
    return entity


def _entity_payload(value: Any) -> EntityPayload:
    if not isinstance(value, dict) or not value.get("id"):
        raise EventDecodeError("Event carries no entity with an id")
    return EntityPayload(entity=_blank_credentials(value))


def _id_payload(value: Any) -> EntityIdPayload:
    if isinstance(value, dict):
        value = value.get("id")
    if not value:
        raise EventDecodeError("Event carries no entity id")
    return EntityIdPayload(entity_id=str(value))


def _bulk_payload(value: Any) -> BulkPayload:
    value = value if isinstance(value, dict) else {}
    affected = value.get("importedCount", value.get("deletedCount", 0))
    try:
        return BulkPayload(
            affected_count=int(affected or 0),
            failed_count=int(value.get("failedCount") or 0),
        )
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Bulk counts are not integers: {e}", cause=e)


def _assignment_payload(device_id: Any, customer_id: Any, require_customer: bool) -> AssignmentPayload:
    if not device_id:
        raise EventDecodeError("Assignment event carries no device id")
    if require_customer and not customer_id:
        raise EventDecodeError("Assignment event carries no customer id")
    return AssignmentPayload(
        device_id=str(device_id),
        customer_id=str(customer_id) if customer_id else None,
    )


def _first_param(raw: RawEvent, *names: str) -> Any:
    for name in names:
        value = raw.parameters.get(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Route:
    event_type: EventType
    queue: str
    extract: Callable[[RawEvent], Payload]


NOTIFY_ROUTES: dict[str, Route] = {
    "deviceSaved": Route(EventType.DEVICE_CREATED, DEVICE_QUEUE, lambda r: _entity_payload(r.argument(0))),
    "deviceCreated": Route(EventType.DEVICE_CREATED, DEVICE_QUEUE, lambda r: _entity_payload(r.argument(0))),
    "deviceUpdated": Route(EventType.DEVICE_UPDATED, DEVICE_QUEUE, lambda r: _entity_payload(r.argument(0))),
    "deviceDeleted": Route(EventType.DEVICE_DELETED, DEVICE_QUEUE, lambda r: _id_payload(r.argument(0))),
    "deviceAssigned": Route(
        EventType.DEVICE_ASSIGNED,
        DEVICE_QUEUE,
        lambda r: _assignment_payload(r.argument(0), r.argument(1), require_customer=True),
    ),
    "deviceUnassigned": Route(
        EventType.DEVICE_UNASSIGNED,
        DEVICE_QUEUE,
        lambda r: _assignment_payload(r.argument(0), r.argument(1), require_customer=False),
    ),
    "devicesBulkImported": Route(EventType.DEVICES_BULK_IMPORTED, DEVICE_QUEUE, lambda r: _bulk_payload(r.argument(0))),
    "devicesBulkDeleted": Route(EventType.DEVICES_BULK_DELETED, DEVICE_QUEUE, lambda r: _bulk_payload(r.argument(0))),
    "tenantCreated": Route(EventType.TENANT_CREATED, TENANT_QUEUE, lambda r: _entity_payload(r.argument(0))),
    "tenantUpdated": Route(EventType.TENANT_UPDATED, TENANT_QUEUE, lambda r: _entity_payload(r.argument(0))),
    "tenantDeleted": Route(EventType.TENANT_DELETED, TENANT_QUEUE, lambda r: _id_payload(r.argument(0))),
    "tenantsBulkImported": Route(EventType.TENANTS_BULK_IMPORTED, TENANT_QUEUE, lambda r: _bulk_payload(r.argument(0))),
    "tenantsBulkDeleted": Route(EventType.TENANTS_BULK_DELETED, TENANT_QUEUE, lambda r: _bulk_payload(r.argument(0))),
}

COMMAND_ROUTES: dict[str, Route] = {
    "saveDevice": Route(EventType.DEVICE_UPDATED, DEVICE_QUEUE, lambda r: _entity_payload(r.parameters.get("device"))),
    "deleteDevice": Route(EventType.DEVICE_DELETED, DEVICE_QUEUE, lambda r: _id_payload(_first_param(r, "id", "deviceId"))),
    "assignDeviceToCustomer": Route(
        EventType.DEVICE_ASSIGNED,
        DEVICE_QUEUE,
        lambda r: _assignment_payload(
            r.parameters.get("deviceId"), r.parameters.get("customerId"), require_customer=True
        ),
    ),
    "unassignDeviceFromCustomer": Route(
        EventType.DEVICE_UNASSIGNED,
        DEVICE_QUEUE,
        lambda r: _assignment_payload(
            r.parameters.get("deviceId"), r.parameters.get("customerId"), require_customer=False
        ),
    ),
    "saveTenant": Route(EventType.TENANT_UPDATED, TENANT_QUEUE, lambda r: _entity_payload(r.parameters.get("tenant"))),
    "deleteTenant": Route(EventType.TENANT_DELETED, TENANT_QUEUE, lambda r: _id_payload(_first_param(r, "id", "tenantId"))),
}

EVENT_ROUTES: dict[str, dict[str, Route]] = {
    EventKind.NOTIFY.value: NOTIFY_ROUTES,
    EventKind.COMMAND.value: COMMAND_ROUTES,
}

QUEUE_FOR_TYPE: dict[EventType, str] = {
    route.event_type: route.queue
    for routes in EVENT_ROUTES.values()
    for route in routes.values()
}


def build_sync_event(raw: RawEvent) -> Union[tuple[SyncEvent, str], UnmappedEvent]:
    """Envelope a business frame.

    Returns:
        ``(event, queue_name)`` for routed frames, otherwise an UnmappedEvent
    """
    route = EVENT_ROUTES.get(raw.kind, {}).get(raw.name or "")
    if route is None:
        return UnmappedEvent(kind=raw.kind, name=raw.name, reason="no route", raw=raw.raw)

    try:
        payload = route.extract(raw)
    except EventDecodeError as e:
        return UnmappedEvent(kind=raw.kind, name=raw.name, reason=e.message, raw=raw.raw)

    metadata = EventMetadata(
        timestamp=raw.timestamp or datetime.now(UTC).isoformat(),
        protocol_instance_id=raw.protocol_id,
        acting_user_id=raw.user_id,
        tenant_id=raw.tenant_id,
    )
    event = SyncEvent(event_type=route.event_type, payload=payload, metadata=metadata)
    return event, route.queue
