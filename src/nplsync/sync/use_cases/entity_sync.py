"""Entity Sync Use Case - applies source-of-truth changes to the legacy system.

One service instance exists per entity domain (devices, tenants). It
depends only on ports, so it is fully testable with in-memory fakes.

Operations:
1. apply_change: apply one create/update/delete, skipping no-op updates
2. apply_assignment: device-to-customer assignment (devices only)
3. reconcile_all: full comparison sweep that converges the legacy system
   onto the source of truth
4. get_sync_status: counts on both sides, never raises

Concurrency:
    A single in-progress flag per service guards apply_change and
    reconcile_all. The flag is tested and set without an intervening
    await, so on one event loop at most one guarded operation runs at a
    time; a second caller is skipped, not queued.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from ...api.exceptions import ErrorCollector, NplSyncError
from ...api.redaction import redact_text
from ..domain.entities import (
    Device,
    OperationResult,
    ReconcileResult,
    SnapshotCache,
    SyncDomain,
    SyncOperation,
    SyncStatus,
    Tenant,
)
from ..domain.ports import (
    IDeviceAssignmentGateway,
    IEntityTranslator,
    ILegacyGateway,
    ISourceReader,
)

logger = logging.getLogger(__name__)

E = TypeVar("E")


class EntitySyncService(Generic[E]):
    """Applies changes for one entity domain.

    Example:
        service = EntitySyncService(
            domain="device",
            source=EngineDeviceSource(engine_client),
            legacy=LegacyDeviceGateway(legacy_client),
            translator=DeviceTranslator(),
        )
        await service.apply_change({"id": "d1", "name": "Sensor A"}, SyncOperation.UPDATE)
        result = await service.reconcile_all()
    """

    def __init__(
        self,
        domain: str,
        source: ISourceReader[E],
        legacy: ILegacyGateway,
        translator: IEntityTranslator[E],
    ):
        self.domain = domain
        self.source = source
        self.legacy = legacy
        self.translator = translator

        self.cache = SnapshotCache()
        self.last_reconciled_at: datetime | None = None
        self._in_progress = False

    # ----------------------------------------
    # Guard
    # ----------------------------------------

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def _try_acquire(self) -> bool:
        if self._in_progress:
            return False
        self._in_progress = True
        return True

    def _release(self) -> None:
        self._in_progress = False

    def reset_cache(self) -> None:
        """Forget every cached legacy shape (called on stream reconnect)."""
        if len(self.cache):
            logger.info(f"Clearing {len(self.cache)} cached {self.domain} snapshots")
        self.cache.clear()

    # ----------------------------------------
    # Single-entity changes
    # ----------------------------------------

    def _coerce(self, entity_or_id: Any, operation: SyncOperation) -> tuple[str, E | None]:
        if isinstance(entity_or_id, str):
            if operation != SyncOperation.DELETE:
                raise ValueError(f"{operation.value} requires an entity, got a bare id")
            return entity_or_id, None
        if isinstance(entity_or_id, dict):
            entity_or_id = self.translator.from_source(entity_or_id)
        return self.translator.entity_id(entity_or_id), entity_or_id

    async def apply_change(self, entity_or_id: Any, operation: SyncOperation) -> OperationResult:
        """Apply one create, update or delete to the legacy system.

        Args:
            entity_or_id: Domain entity, engine JSON dict, or (for delete) a bare id
            operation: CREATE, UPDATE or DELETE

        Returns:
            OperationResult. ``skipped`` is set when another guarded
            operation was in flight or there was nothing to change.
        """
        entity_id, entity = self._coerce(entity_or_id, operation)

        if not self._try_acquire():
            logger.warning(
                f"{self.domain} sync already in progress, skipping "
                f"{operation.value} of {entity_id}"
            )
            return OperationResult(
                success=False,
                operation=operation.value,
                entity_id=entity_id,
                error="sync already in progress",
                skipped=True,
            )

        try:
            logger.info(f"Syncing {self.domain} {entity_id} to legacy ({operation.value})")
            if operation == SyncOperation.DELETE:
                return await self._delete(entity_id)
            if operation in (SyncOperation.CREATE, SyncOperation.UPDATE):
                return await self._upsert(entity_id, entity, operation)
            raise ValueError(f"Unsupported operation for apply_change: {operation.value}")
        finally:
            self._release()

    async def _current_shape(self, entity_id: str) -> dict[str, Any] | None:
        """Cached legacy shape, falling back to a legacy read on a miss."""
        cached = self.cache.get(entity_id)
        if cached is not None:
            return cached

        legacy = await self.legacy.get(entity_id)
        if legacy is None:
            return None

        shape = self.translator.normalize_legacy(legacy)
        self.cache.put(entity_id, shape)
        return shape

    async def _upsert(self, entity_id: str, entity: E, operation: SyncOperation) -> OperationResult:
        desired = self.translator.to_legacy_shape(entity)

        try:
            current = await self._current_shape(entity_id)
        except NplSyncError as e:
            error = redact_text(str(e))
            logger.error(f"Could not read legacy {self.domain} {entity_id}: {error}")
            return OperationResult(
                success=False,
                operation=operation.value,
                entity_id=entity_id,
                error=error,
            )

        if current is None:
            if operation == SyncOperation.UPDATE:
                logger.info(f"Legacy has no {self.domain} {entity_id}, creating it")
            result = await self.legacy.create(desired)
        else:
            changes = self.translator.diff(desired, current)
            if not changes:
                logger.debug(f"{self.domain} {entity_id} unchanged, no legacy call")
                return OperationResult(
                    success=True,
                    operation=operation.value,
                    entity_id=entity_id,
                    skipped=True,
                )
            logger.debug(f"{self.domain} {entity_id} differs in {sorted(changes)}")
            result = await self.legacy.update(entity_id, desired)

        if result.success:
            self.cache.put(entity_id, desired)
        else:
            self.cache.discard(entity_id)
            logger.error(
                f"Failed to {result.operation} {self.domain} {entity_id}: {result.error} "
                f"({self.translator.to_log_repr(entity)})"
            )
        return result

    async def _delete(self, entity_id: str) -> OperationResult:
        try:
            current = await self._current_shape(entity_id)
        except NplSyncError as e:
            error = redact_text(str(e))
            logger.error(f"Could not read legacy {self.domain} {entity_id}: {error}")
            return OperationResult(
                success=False,
                operation=SyncOperation.DELETE.value,
                entity_id=entity_id,
                error=error,
            )

        if current is None:
            logger.info(f"{self.domain} {entity_id} unknown to legacy, nothing to delete")
            return OperationResult(
                success=True,
                operation=SyncOperation.DELETE.value,
                entity_id=entity_id,
                skipped=True,
            )

        result = await self.legacy.delete(entity_id)
        if result.success:
            self.cache.discard(entity_id)
        else:
            logger.error(f"Failed to delete {self.domain} {entity_id}: {result.error}")
        return result

    # ----------------------------------------
    # Reconciliation
    # ----------------------------------------

    async def reconcile_all(self) -> ReconcileResult:
        """Converge the legacy system onto the source of truth.

        Creates entities missing from legacy, updates differing ones, and
        deletes legacy entities the source no longer has. Per-entity
        failures are logged and counted; the sweep always continues.
        """
        if not self._try_acquire():
            logger.warning(f"{self.domain} reconciliation already in progress, skipping")
            return ReconcileResult(domain=self.domain, skipped=True)

        try:
            return await self._sweep()
        finally:
            self._release()

    async def _sweep(self) -> ReconcileResult:
        result = ReconcileResult(domain=self.domain, started_at=datetime.now(UTC))
        logger.info(f"Starting {self.domain} reconciliation at {result.started_at.isoformat()}")

        try:
            source_entities = await self.source.fetch_all()
            legacy_records = await self.legacy.list_all()
        except NplSyncError as e:
            error = redact_text(str(e))
            logger.error(f"{self.domain} reconciliation aborted, fetch failed: {error}")
            result.errors.append(f"fetch failed: {error}")
            result.completed_at = datetime.now(UTC)
            return result

        legacy_by_id: dict[str, dict[str, Any]] = {}
        for record in legacy_records:
            shape = self.translator.normalize_legacy(record)
            legacy_by_id[shape["id"]] = shape

        collector = ErrorCollector()
        snapshots: dict[str, dict[str, Any]] = {}
        source_ids: set[str] = set()

        for entity in source_entities:
            entity_id = self.translator.entity_id(entity)
            source_ids.add(entity_id)
            try:
                desired = self.translator.to_legacy_shape(entity)
                current = legacy_by_id.get(entity_id)

                if current is None:
                    outcome = await self.legacy.create(desired)
                    counter = "created"
                elif self.translator.diff(desired, current):
                    outcome = await self.legacy.update(entity_id, desired)
                    counter = "updated"
                else:
                    result.unchanged += 1
                    snapshots[entity_id] = current
                    continue

                if outcome.success:
                    setattr(result, counter, getattr(result, counter) + 1)
                    snapshots[entity_id] = desired
                else:
                    result.failed += 1
                    collector.add(NplSyncError(outcome.error or "unknown error"), {"entity_id": entity_id})

            except Exception as e:
                result.failed += 1
                collector.add(e, {"entity_id": entity_id})
                logger.warning(f"Reconcile error for {self.domain} {entity_id}: {redact_text(str(e))}")

        for entity_id in legacy_by_id.keys() - source_ids:
            try:
                outcome = await self.legacy.delete(entity_id)
            except Exception as e:
                result.failed += 1
                collector.add(e, {"entity_id": entity_id})
                logger.warning(f"Reconcile delete error for {self.domain} {entity_id}: {redact_text(str(e))}")
                continue

            if outcome.success:
                result.deleted += 1
            else:
                result.failed += 1
                collector.add(NplSyncError(outcome.error or "unknown error"), {"entity_id": entity_id})

        self.cache.replace_all(snapshots)
        result.errors = [redact_text(m) for m in collector.messages()]
        result.completed_at = datetime.now(UTC)
        self.last_reconciled_at = result.completed_at

        if collector.has_errors():
            logger.warning(
                f"{self.domain} reconciliation finished with errors: "
                f"{collector.to_exception(succeeded=result.created + result.updated + result.deleted)}"
            )

        logger.info(
            f"{self.domain} reconciliation completed in {result.duration_seconds:.2f}s: "
            f"{result.created} created, {result.updated} updated, {result.deleted} deleted, "
            f"{result.unchanged} unchanged, {result.failed} failed"
        )
        return result

    # ----------------------------------------
    # Status
    # ----------------------------------------

    async def get_sync_status(self) -> SyncStatus:
        """Counts from both systems. Failures are reported, never raised."""
        try:
            source_count = await self.source.count()
            legacy_count = await self.legacy.count()
        except Exception as e:
            error = redact_text(str(e))
            logger.error(f"Failed to get {self.domain} sync status: {error}")
            return SyncStatus(
                domain=self.domain,
                reconciliation_in_progress=self._in_progress,
                last_reconciled_at=self.last_reconciled_at,
                error=error,
            )

        return SyncStatus(
            domain=self.domain,
            source_count=source_count,
            legacy_count=legacy_count,
            reconciliation_in_progress=self._in_progress,
            last_reconciled_at=self.last_reconciled_at,
        )


class DeviceSyncService(EntitySyncService[Device]):
    """Device domain, plus customer assignment."""

    def __init__(
        self,
        source: ISourceReader[Device],
        legacy: ILegacyGateway,
        translator: IEntityTranslator[Device],
        assignments: IDeviceAssignmentGateway,
    ):
        super().__init__(SyncDomain.DEVICE.value, source, legacy, translator)
        self.assignments = assignments

    async def apply_assignment(
        self,
        device_id: str,
        customer_id: str | None,
        assign: bool,
    ) -> OperationResult:
        """Assign a device to a customer, or remove that assignment.

        An unassign without a customer id uses the customer recorded on
        the legacy device; if it has none there is nothing to do.
        """
        operation = SyncOperation.ASSIGN if assign else SyncOperation.UNASSIGN

        if assign and not customer_id:
            logger.error(f"Cannot assign device {device_id}: no customer id")
            return OperationResult(
                success=False,
                operation=operation.value,
                entity_id=device_id,
                error="customer id required for assignment",
            )

        if not assign and not customer_id:
            try:
                current = await self._current_shape(device_id)
            except NplSyncError as e:
                error = redact_text(str(e))
                logger.error(f"Could not read legacy device {device_id}: {error}")
                return OperationResult(
                    success=False,
                    operation=operation.value,
                    entity_id=device_id,
                    error=error,
                )
            customer_id = (current or {}).get("customerId")
            if not customer_id:
                logger.info(f"Device {device_id} has no customer in legacy, nothing to unassign")
                return OperationResult(
                    success=True,
                    operation=operation.value,
                    entity_id=device_id,
                    skipped=True,
                )

        if assign:
            result = await self.assignments.assign(device_id, customer_id)
        else:
            result = await self.assignments.unassign(device_id, customer_id)

        cached = self.cache.get(device_id)
        if result.success and cached is not None:
            self.cache.put(device_id, {**cached, "customerId": customer_id if assign else None})
        elif not result.success:
            self.cache.discard(device_id)
        return result


class TenantSyncService(EntitySyncService[Tenant]):
    def __init__(
        self,
        source: ISourceReader[Tenant],
        legacy: ILegacyGateway,
        translator: IEntityTranslator[Tenant],
    ):
        super().__init__(SyncDomain.TENANT.value, source, legacy, translator)
