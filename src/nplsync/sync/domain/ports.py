"""Port interfaces for sync operations.

Ports define the contracts between the sync use cases and the
infrastructure. The use cases depend only on these interfaces:

- ISourceReader: read side of the source-of-truth (NPL engine)
- ILegacyGateway: read/write side of the legacy system (ThingsBoard)
- IDeviceAssignmentGateway: customer assignment, devices only
- IEntityTranslator: canonical <-> legacy shape conversion
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from .entities import OperationResult

E = TypeVar("E")


class ISourceReader(ABC, Generic[E]):
    """Port for reading one entity domain from the source of truth."""

    @abstractmethod
    async def fetch_all(self) -> list[E]:
        """Fetch every entity in the domain.

        Raises:
            NplSyncError subclass if the engine cannot be read
        """
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class ILegacyGateway(ABC):
    """Port for one entity domain in the legacy system.

    Reads raise typed exceptions; mutations never raise for API failures
    and report them through ``OperationResult`` instead.
    """

    @abstractmethod
    async def get(self, entity_id: str) -> dict[str, Any] | None:
        """Fetch the current legacy shape, or None if it does not exist."""
        ...

    @abstractmethod
    async def list_all(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def create(self, shape: dict[str, Any]) -> OperationResult:
        ...

    @abstractmethod
    async def update(self, entity_id: str, shape: dict[str, Any]) -> OperationResult:
        ...

    @abstractmethod
    async def delete(self, entity_id: str) -> OperationResult:
        ...


class IDeviceAssignmentGateway(ABC):
    """Port for device-to-customer assignment in the legacy system."""

    @abstractmethod
    async def assign(self, device_id: str, customer_id: str) -> OperationResult:
        ...

    @abstractmethod
    async def unassign(self, device_id: str, customer_id: str) -> OperationResult:
        ...


class IEntityTranslator(ABC, Generic[E]):
    """Port for pure conversion between canonical and legacy shapes."""

    @abstractmethod
    def from_source(self, data: dict[str, Any]) -> E:
        """Build a canonical entity from the engine's JSON shape."""
        ...

    @abstractmethod
    def entity_id(self, entity: E) -> str:
        ...

    @abstractmethod
    def to_legacy_shape(self, entity: E) -> dict[str, Any]:
        """Translate to the legacy wire shape. Never carries secrets."""
        ...

    @abstractmethod
    def to_canonical_shape(self, legacy: dict[str, Any]) -> E:
        ...

    @abstractmethod
    def normalize_legacy(self, legacy: dict[str, Any]) -> dict[str, Any]:
        """Flatten a raw legacy record into the shape ``to_legacy_shape`` emits."""
        ...

    @abstractmethod
    def to_log_repr(self, entity: E) -> dict[str, Any]:
        """Representation safe for logs: secrets are replaced."""
        ...

    @abstractmethod
    def diff(self, desired: dict[str, Any], current: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
        """Field-wise differences between two legacy shapes.

        Volatile fields (ids, versions, creation times) are ignored.

        Returns:
            Mapping of field name to (desired, current) for differing fields
        """
        ...
