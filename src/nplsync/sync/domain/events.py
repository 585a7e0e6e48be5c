"""Event types flowing through the sync pipeline.

Two shapes live here:

    RawEvent   - one decoded frame from the NPL engine event stream,
                 before any business interpretation.
    SyncEvent  - the canonical envelope placed on a durable queue and
                 dispatched to the sync services. Its payload is a tagged
                 union keyed by ``event_type``.

Frames that are business events but have no route become an
``UnmappedEvent`` instead of a SyncEvent, so callers must handle that
case explicitly.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from ...api.exceptions import EventDecodeError

SOURCE_SYSTEM = "npl-engine"


class EventKind(str, Enum):
    NOTIFY = "notify"
    COMMAND = "command"


class EventType(str, Enum):
    """Closed set of business events the service understands."""

    DEVICE_CREATED = "DEVICE_CREATED"
    DEVICE_UPDATED = "DEVICE_UPDATED"
    DEVICE_DELETED = "DEVICE_DELETED"
    DEVICE_ASSIGNED = "DEVICE_ASSIGNED"
    DEVICE_UNASSIGNED = "DEVICE_UNASSIGNED"
    DEVICES_BULK_IMPORTED = "DEVICES_BULK_IMPORTED"
    DEVICES_BULK_DELETED = "DEVICES_BULK_DELETED"
    TENANT_CREATED = "TENANT_CREATED"
    TENANT_UPDATED = "TENANT_UPDATED"
    TENANT_DELETED = "TENANT_DELETED"
    TENANTS_BULK_IMPORTED = "TENANTS_BULK_IMPORTED"
    TENANTS_BULK_DELETED = "TENANTS_BULK_DELETED"

    @property
    def domain(self) -> str:
        return "device" if self.name.startswith("DEVICE") else "tenant"


# ============================================
# Raw stream frames
# ============================================

@dataclass
class RawEvent:
    """One frame from the engine's event stream.

    ``name`` is the notification name for notify frames and the command
    name for command frames. Notify arguments arrive as
    ``[{"name": .., "value": ..}, ...]`` and are kept as a positional list
    of values.
    """

    kind: str
    name: str | None = None
    arguments: list[Any] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    protocol_type: str | None = None
    protocol_id: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    timestamp: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> "RawEvent":
        """Decode a stream frame.

        Raises:
            EventDecodeError: If the frame is not an object, has no ``type``,
                or its name or arguments have the wrong shape
        """
        if not isinstance(frame, dict):
            raise EventDecodeError("Stream frame is not a JSON object")
        kind = frame.get("type")
        if not kind or not isinstance(kind, str):
            raise EventDecodeError("Stream frame has no 'type' field")

        if kind == EventKind.NOTIFY.value:
            name = frame.get("name")
        elif kind == EventKind.COMMAND.value:
            name = frame.get("command")
        else:
            name = frame.get("name") or frame.get("command")
        if name is not None and not isinstance(name, str):
            raise EventDecodeError(f"Stream frame name is not a string: {type(name).__name__}")

        raw_arguments = frame.get("arguments")
        if raw_arguments is None:
            raw_arguments = []
        if not isinstance(raw_arguments, list):
            raise EventDecodeError(
                f"Stream frame arguments are not a list: {type(raw_arguments).__name__}"
            )

        arguments = []
        for arg in raw_arguments:
            arguments.append(arg.get("value") if isinstance(arg, dict) and "value" in arg else arg)

        parameters = frame.get("parameters")
        if not isinstance(parameters, dict):
            parameters = {}

        return cls(
            kind=kind,
            name=name,
            arguments=arguments,
            parameters=parameters,
            protocol_type=frame.get("protocolType"),
            protocol_id=frame.get("protocolId") or frame.get("refId"),
            user_id=frame.get("userId"),
            tenant_id=frame.get("tenantId"),
            timestamp=frame.get("timestamp"),
            raw=frame,
        )

    @property
    def is_notify(self) -> bool:
        return self.kind == EventKind.NOTIFY.value

    @property
    def is_command(self) -> bool:
        return self.kind == EventKind.COMMAND.value

    def argument(self, index: int) -> Any:
        if index < len(self.arguments):
            return self.arguments[index]
        return None


# ============================================
# Payload variants
# ============================================

@dataclass
class EntityPayload:
    """Full entity for *_CREATED / *_UPDATED. Credentials are already blanked."""

    entity: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"entity": self.entity}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityPayload":
        entity = data.get("entity")
        if not isinstance(entity, dict) or not entity.get("id"):
            raise EventDecodeError("Entity payload requires an entity with an id")
        return cls(entity=entity)


@dataclass
class EntityIdPayload:
    """Bare id for *_DELETED."""

    entity_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"entityId": self.entity_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityIdPayload":
        entity_id = data.get("entityId")
        if not entity_id:
            raise EventDecodeError("Delete payload requires entityId")
        return cls(entity_id=str(entity_id))


@dataclass
class AssignmentPayload:
    device_id: str
    customer_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "customerId": self.customer_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssignmentPayload":
        device_id = data.get("deviceId")
        if not device_id:
            raise EventDecodeError("Assignment payload requires deviceId")
        customer_id = data.get("customerId")
        return cls(device_id=str(device_id), customer_id=str(customer_id) if customer_id else None)


@dataclass
class BulkPayload:
    affected_count: int = 0
    failed_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"affectedCount": self.affected_count, "failedCount": self.failed_count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BulkPayload":
        try:
            return cls(
                affected_count=int(data.get("affectedCount") or 0),
                failed_count=int(data.get("failedCount") or 0),
            )
        except (TypeError, ValueError) as e:
            raise EventDecodeError(f"Bulk payload counts are not integers: {e}", cause=e)


Payload = Union[EntityPayload, EntityIdPayload, AssignmentPayload, BulkPayload]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.DEVICE_CREATED: EntityPayload,
    EventType.DEVICE_UPDATED: EntityPayload,
    EventType.DEVICE_DELETED: EntityIdPayload,
    EventType.DEVICE_ASSIGNED: AssignmentPayload,
    EventType.DEVICE_UNASSIGNED: AssignmentPayload,
    EventType.DEVICES_BULK_IMPORTED: BulkPayload,
    EventType.DEVICES_BULK_DELETED: BulkPayload,
    EventType.TENANT_CREATED: EntityPayload,
    EventType.TENANT_UPDATED: EntityPayload,
    EventType.TENANT_DELETED: EntityIdPayload,
    EventType.TENANTS_BULK_IMPORTED: BulkPayload,
    EventType.TENANTS_BULK_DELETED: BulkPayload,
}


# ============================================
# Envelope
# ============================================

def new_event_id() -> str:
    return f"evt-{uuid4()}"


def new_correlation_id() -> str:
    return f"corr-{uuid4()}"


@dataclass
class EventMetadata:
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    correlation_id: str = field(default_factory=new_correlation_id)
    protocol_instance_id: str | None = None
    acting_user_id: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "correlationId": self.correlation_id,
            "protocolInstanceId": self.protocol_instance_id,
            "actingUserId": self.acting_user_id,
            "tenantId": self.tenant_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventMetadata":
        return cls(
            timestamp=data.get("timestamp") or datetime.now(UTC).isoformat(),
            correlation_id=data.get("correlationId") or new_correlation_id(),
            protocol_instance_id=data.get("protocolInstanceId"),
            acting_user_id=data.get("actingUserId"),
            tenant_id=data.get("tenantId"),
        )


@dataclass
class SyncEvent:
    """Canonical envelope for one business change."""

    event_type: EventType
    payload: Payload
    event_id: str = field(default_factory=new_event_id)
    source_system: str = SOURCE_SYSTEM
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.event_type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.event_type.value} requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def domain(self) -> str:
        return self.event_type.domain

    @property
    def correlation_id(self) -> str:
        return self.metadata.correlation_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "eventId": self.event_id,
            "sourceSystem": self.source_system,
            "payload": self.payload.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SyncEvent":
        """Decode a queued envelope.

        Raises:
            EventDecodeError: On unknown event types or malformed payloads
        """
        if not isinstance(data, dict):
            raise EventDecodeError("Envelope is not a JSON object")

        raw_type = data.get("eventType")
        try:
            event_type = EventType(raw_type)
        except ValueError as e:
            raise EventDecodeError(f"Unknown eventType: {raw_type!r}", cause=e)

        payload_data = data.get("payload")
        if not isinstance(payload_data, dict):
            raise EventDecodeError("Envelope payload is not a JSON object")

        metadata = data.get("metadata")
        return cls(
            event_type=event_type,
            payload=PAYLOAD_TYPES[event_type].from_dict(payload_data),
            event_id=data.get("eventId") or new_event_id(),
            source_system=data.get("sourceSystem") or SOURCE_SYSTEM,
            metadata=EventMetadata.from_dict(metadata if isinstance(metadata, dict) else {}),
        )


@dataclass
class UnmappedEvent:
    """A business frame with no route. Logged, never enqueued."""

    kind: str
    name: str | None
    reason: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
