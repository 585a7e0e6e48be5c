"""Tests for the entity sync use cases.

The services only depend on ports, so every test runs against in-memory
fakes of the engine and ThingsBoard.
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from nplsync.api.auth import StaticTokenProvider
from nplsync.api.engine_client import EngineClient
from nplsync.api.exceptions import APIError, ServerError
from nplsync.sync.adapters.engine_adapter import EngineDeviceSource
from nplsync.sync.adapters.translator import (
    STANDARD_PROFILE_ID,
    DeviceTranslator,
    TenantTranslator,
)
from nplsync.sync.domain.entities import Device, OperationResult, SyncOperation, Tenant
from nplsync.sync.domain.ports import IDeviceAssignmentGateway, ILegacyGateway, ISourceReader
from nplsync.sync.use_cases import DeviceSyncService, TenantSyncService


# ============================================
# In-memory fakes
# ============================================

class FakeSource(ISourceReader):
    def __init__(self, entities=None, error: Exception | None = None):
        self.entities = list(entities or [])
        self.error = error

    async def fetch_all(self):
        if self.error:
            raise self.error
        return list(self.entities)

    async def count(self):
        if self.error:
            raise self.error
        return len(self.entities)


class FakeLegacy(ILegacyGateway, IDeviceAssignmentGateway):
    """ThingsBoard stand-in. Records every mutation it receives."""

    def __init__(self, records: dict[str, dict[str, Any]] | None = None):
        self.records = dict(records or {})
        self.calls: list[tuple] = []
        self.failing_ids: set[str] = set()
        self.read_error: Exception | None = None
        self.gate: asyncio.Event | None = None

    def _result(self, operation: str, entity_id: str) -> OperationResult:
        if entity_id in self.failing_ids:
            return OperationResult(
                success=False,
                operation=operation,
                entity_id=entity_id,
                error="Server error (500) for POST /api/device",
            )
        return OperationResult(success=True, operation=operation, entity_id=entity_id)

    async def get(self, entity_id):
        self.calls.append(("get", entity_id))
        if self.read_error:
            raise self.read_error
        return self.records.get(entity_id)

    async def list_all(self):
        if self.read_error:
            raise self.read_error
        return list(self.records.values())

    async def count(self):
        if self.read_error:
            raise self.read_error
        return len(self.records)

    async def create(self, shape):
        if self.gate:
            await self.gate.wait()
        entity_id = shape["id"]
        self.calls.append(("create", entity_id))
        result = self._result("create", entity_id)
        if result.success:
            self.records[entity_id] = dict(shape)
        return result

    async def update(self, entity_id, shape):
        self.calls.append(("update", entity_id))
        result = self._result("update", entity_id)
        if result.success:
            self.records[entity_id] = dict(shape)
        return result

    async def delete(self, entity_id):
        self.calls.append(("delete", entity_id))
        result = self._result("delete", entity_id)
        if result.success:
            self.records.pop(entity_id, None)
        return result

    async def assign(self, device_id, customer_id):
        self.calls.append(("assign", device_id, customer_id))
        return self._result("assign", device_id)

    async def unassign(self, device_id, customer_id):
        self.calls.append(("unassign", device_id, customer_id))
        return self._result("unassign", device_id)

    def mutations(self) -> list[tuple]:
        return [call for call in self.calls if call[0] != "get"]


def tb_device(device_id: str, name: str, customer_id: str | None = None) -> dict[str, Any]:
    """A device the way ThingsBoard returns it."""
    record = {
        "id": {"id": device_id, "entityType": "DEVICE"},
        "name": name,
        "type": "sensor",
        "label": "",
        "createdTime": 1700000000000,
        "version": 3,
    }
    if customer_id:
        record["customerId"] = {"id": customer_id, "entityType": "CUSTOMER"}
    return record


@pytest.fixture
def legacy():
    return FakeLegacy()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def service(source, legacy):
    return DeviceSyncService(source, legacy, DeviceTranslator(), legacy)


# ============================================
# apply_change
# ============================================

class TestApplyChange:
    """Tests for single-entity changes."""

    @pytest.mark.asyncio
    async def test_create_then_identical_update_is_a_noop(self, service, legacy):
        """The d1 'Sensor A' scenario: only the real change reaches legacy."""
        created = await service.apply_change(
            {"id": "d1", "name": "Sensor A", "type": "sensor", "credentials": "tok-1"},
            SyncOperation.CREATE,
        )
        assert created.success
        assert legacy.mutations() == [("create", "d1")]
        assert "credentials" not in legacy.records["d1"]

        same = await service.apply_change({"id": "d1", "name": "Sensor A", "type": "sensor"}, SyncOperation.UPDATE)
        assert same.success
        assert same.skipped
        assert legacy.mutations() == [("create", "d1")]

        renamed = await service.apply_change({"id": "d1", "name": "Sensor B", "type": "sensor"}, SyncOperation.UPDATE)
        assert renamed.success
        assert not renamed.skipped
        assert legacy.mutations() == [("create", "d1"), ("update", "d1")]
        assert legacy.records["d1"]["name"] == "Sensor B"

    @pytest.mark.asyncio
    async def test_update_of_unknown_entity_creates_it(self, service, legacy):
        result = await service.apply_change(Device(id="d9", name="New"), SyncOperation.UPDATE)
        assert result.success
        assert legacy.mutations() == [("create", "d9")]

    @pytest.mark.asyncio
    async def test_update_compares_against_legacy_on_cache_miss(self, service, legacy):
        legacy.records["d1"] = tb_device("d1", "Sensor A")

        result = await service.apply_change(Device(id="d1", name="Sensor A", type="sensor"), SyncOperation.UPDATE)

        assert result.skipped
        assert ("get", "d1") in legacy.calls
        assert legacy.mutations() == []
        assert "d1" in service.cache

    @pytest.mark.asyncio
    async def test_failed_update_drops_cache_entry(self, service, legacy):
        legacy.records["d1"] = tb_device("d1", "Sensor A")
        legacy.failing_ids.add("d1")

        result = await service.apply_change(Device(id="d1", name="Sensor B", type="sensor"), SyncOperation.UPDATE)

        assert not result.success
        assert "d1" not in service.cache

    @pytest.mark.asyncio
    async def test_legacy_read_failure_reported(self, service, legacy):
        legacy.read_error = ServerError("down", status_code=503)
        result = await service.apply_change(Device(id="d1", name="A"), SyncOperation.UPDATE)
        assert not result.success
        assert "down" in result.error
        assert legacy.mutations() == []

    @pytest.mark.asyncio
    async def test_delete(self, service, legacy):
        legacy.records["d1"] = tb_device("d1", "Sensor A")
        result = await service.apply_change("d1", SyncOperation.DELETE)
        assert result.success
        assert "d1" not in legacy.records

    @pytest.mark.asyncio
    async def test_delete_unknown_is_a_noop(self, service, legacy):
        result = await service.apply_change("ghost", SyncOperation.DELETE)
        assert result.success
        assert result.skipped
        assert legacy.mutations() == []

    @pytest.mark.asyncio
    async def test_bare_id_only_for_delete(self, service):
        with pytest.raises(ValueError):
            await service.apply_change("d1", SyncOperation.UPDATE)

    @pytest.mark.asyncio
    async def test_unsupported_operation_releases_guard(self, service):
        with pytest.raises(ValueError):
            await service.apply_change(Device(id="d1"), SyncOperation.ASSIGN)
        assert not service.in_progress

    @pytest.mark.asyncio
    async def test_at_most_one_guarded_operation(self, service, legacy):
        legacy.gate = asyncio.Event()
        first = asyncio.create_task(service.apply_change(Device(id="d1", name="A"), SyncOperation.CREATE))
        await asyncio.sleep(0.01)
        assert service.in_progress

        second = await service.apply_change(Device(id="d2", name="B"), SyncOperation.CREATE)
        sweep = await service.reconcile_all()

        legacy.gate.set()
        assert (await first).success
        assert second.skipped and not second.success
        assert second.error == "sync already in progress"
        assert sweep.skipped
        assert legacy.mutations() == [("create", "d1")]
        assert not service.in_progress


# ============================================
# reconcile_all
# ============================================

class TestReconcileAll:
    """Tests for full reconciliation sweeps."""

    @pytest.mark.asyncio
    async def test_converges_legacy_onto_source(self, service, source, legacy):
        source.entities = [
            Device(id="d1", name="Same", type="sensor"),
            Device(id="d2", name="Renamed", type="sensor"),
            Device(id="d3", name="Missing", type="sensor"),
        ]
        legacy.records = {
            "d1": tb_device("d1", "Same"),
            "d2": tb_device("d2", "Old name"),
            "d4": tb_device("d4", "Orphan"),
        }

        result = await service.reconcile_all()

        assert (result.created, result.updated, result.deleted, result.unchanged, result.failed) == (1, 1, 1, 1, 0)
        assert result.success
        assert sorted(legacy.records) == ["d1", "d2", "d3"]
        assert legacy.records["d2"]["name"] == "Renamed"
        assert service.last_reconciled_at == result.completed_at
        assert len(service.cache) == 3

        again = await service.reconcile_all()
        assert (again.created, again.updated, again.deleted, again.unchanged) == (0, 0, 0, 3)

    @pytest.mark.asyncio
    async def test_entity_dropped_from_source_is_deleted_next_sweep(self, service, source, legacy):
        source.entities = [Device(id="d1", name="Sensor A", type="sensor")]

        first = await service.reconcile_all()
        assert first.created == 1
        assert legacy.records["d1"]["name"] == "Sensor A"

        source.entities = []
        second = await service.reconcile_all()

        assert (second.created, second.updated, second.deleted) == (0, 0, 1)
        assert second.success
        assert "d1" not in legacy.records
        assert "d1" not in service.cache
        assert legacy.mutations() == [("create", "d1"), ("delete", "d1")]

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_run_once(self, service, source, legacy):
        source.entities = [Device(id="d1", name="Sensor A")]
        legacy.gate = asyncio.Event()

        first = asyncio.create_task(service.reconcile_all())
        await asyncio.sleep(0.01)
        assert service.in_progress

        second = await service.reconcile_all()
        assert second.skipped
        assert second.deferred

        legacy.gate.set()
        done = await first
        assert not done.skipped
        assert done.created == 1
        assert [r.skipped for r in (done, second)].count(True) == 1
        assert legacy.mutations() == [("create", "d1")]
        assert not service.in_progress

    @pytest.mark.asyncio
    async def test_sweep_keeps_entities_from_later_pages(self, legacy):
        client = EngineClient(StaticTokenProvider("engine-token"), "http://engine:12000")
        pages = AsyncMock(side_effect=[
            {"items": [{"id": "d1", "name": "Sensor A", "type": "sensor"}], "hasNext": True},
            {"items": [{"id": "d2", "name": "Sensor B", "type": "sensor"}], "hasNext": False},
        ])
        legacy.records = {
            "d1": tb_device("d1", "Sensor A"),
            "d2": tb_device("d2", "Sensor B"),
        }
        service = DeviceSyncService(EngineDeviceSource(client), legacy, DeviceTranslator(), legacy)

        with patch.object(client, "get", new=pages):
            result = await service.reconcile_all()

        assert result.deleted == 0
        assert result.unchanged == 2
        assert sorted(legacy.records) == ["d1", "d2"]
        assert legacy.mutations() == []

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, service, source, legacy):
        source.entities = [Device(id="d1", name="A"), Device(id="d2", name="B")]
        legacy.records = {"d9": tb_device("d9", "Orphan")}
        legacy.failing_ids.add("d1")

        result = await service.reconcile_all()

        assert result.created == 1
        assert result.deleted == 1
        assert result.failed == 1
        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("d1: ")
        assert "Server error (500)" in result.errors[0]
        assert "d1" not in service.cache

    @pytest.mark.asyncio
    async def test_fetch_failure_aborts_sweep(self, service, legacy):
        service.source = FakeSource(error=APIError("engine unavailable", status_code=503))
        legacy.records = {"d1": tb_device("d1", "A")}

        result = await service.reconcile_all()

        assert not result.success
        assert result.errors[0].startswith("fetch failed:")
        assert legacy.mutations() == []
        assert service.last_reconciled_at is None
        assert not service.in_progress

    @pytest.mark.asyncio
    async def test_tenant_sweep_uses_profiles(self, legacy):
        tenants = TenantSyncService(
            FakeSource([Tenant.from_dict({"id": "t1", "name": "Acme", "limits": {
                "maxUsers": 150, "maxDevices": 1500, "maxAssets": 700, "maxCustomers": 60,
            }})]),
            legacy,
            TenantTranslator(),
        )

        result = await tenants.reconcile_all()

        assert result.created == 1
        assert legacy.records["t1"]["tenantProfileId"] == STANDARD_PROFILE_ID
        assert (await tenants.reconcile_all()).unchanged == 1


# ============================================
# get_sync_status
# ============================================

class TestSyncStatus:
    @pytest.mark.asyncio
    async def test_counts(self, service, source, legacy):
        source.entities = [Device(id="d1"), Device(id="d2")]
        legacy.records = {"d1": tb_device("d1", "A")}

        status = await service.get_sync_status()

        assert status.domain == "device"
        assert (status.source_count, status.legacy_count) == (2, 1)
        assert not status.in_sync
        assert status.error is None

    @pytest.mark.asyncio
    async def test_never_raises(self, service, legacy):
        legacy.read_error = ServerError("ThingsBoard down password=hunter2", status_code=503)

        status = await service.get_sync_status()

        assert status.error is not None
        assert "hunter2" not in status.error
        assert not status.in_sync


# ============================================
# apply_assignment
# ============================================

class TestApplyAssignment:
    """Tests for device-to-customer assignment."""

    @pytest.mark.asyncio
    async def test_assign(self, service, legacy):
        result = await service.apply_assignment("d1", "c1", assign=True)
        assert result.success
        assert legacy.mutations() == [("assign", "d1", "c1")]

    @pytest.mark.asyncio
    async def test_assign_requires_customer(self, service, legacy):
        result = await service.apply_assignment("d1", None, assign=True)
        assert not result.success
        assert legacy.mutations() == []

    @pytest.mark.asyncio
    async def test_unassign_uses_legacy_customer(self, service, legacy):
        legacy.records["d1"] = tb_device("d1", "A", customer_id="c7")

        result = await service.apply_assignment("d1", None, assign=False)

        assert result.success
        assert legacy.mutations() == [("unassign", "d1", "c7")]
        assert service.cache.get("d1")["customerId"] is None

    @pytest.mark.asyncio
    async def test_unassign_without_customer_is_a_noop(self, service, legacy):
        legacy.records["d1"] = tb_device("d1", "A")

        result = await service.apply_assignment("d1", None, assign=False)

        assert result.success
        assert result.skipped
        assert legacy.mutations() == []

    @pytest.mark.asyncio
    async def test_assign_updates_cached_shape(self, service, legacy):
        await service.apply_change(Device(id="d1", name="A"), SyncOperation.CREATE)
        await service.apply_assignment("d1", "c1", assign=True)

        assert service.cache.get("d1")["customerId"] == "c1"
        # The engine now reports the assignment; nothing left to update
        result = await service.apply_change(Device(id="d1", name="A", customer_id="c1"), SyncOperation.UPDATE)
        assert result.skipped

    @pytest.mark.asyncio
    async def test_failed_assignment_drops_cache(self, service, legacy):
        await service.apply_change(Device(id="d1", name="A"), SyncOperation.CREATE)
        legacy.failing_ids.add("d1")

        result = await service.apply_assignment("d1", "c1", assign=True)

        assert not result.success
        assert "d1" not in service.cache

    def test_reset_cache(self, service):
        service.cache.put("d1", {"id": "d1"})
        service.reset_cache()
        assert len(service.cache) == 0
