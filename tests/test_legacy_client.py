#!/usr/bin/env python3
"""Unit tests for the ThingsBoard resource client.

Mutations must never raise for API failures; they return an
OperationResult instead. Reads raise, except get_* on 404.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nplsync.api.exceptions import (
    LoginError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from nplsync.api.legacy_client import DEVICE_REFS, TENANT_REFS, LegacyClient, to_wire


@pytest.fixture
def sessions():
    mock = MagicMock()
    mock.get_token = AsyncMock(return_value="tb-token")
    return mock


@pytest.fixture
def client(sessions):
    return LegacyClient(sessions, "http://thingsboard:9090")


@pytest.fixture
def request_mock(client):
    mock = AsyncMock(return_value={"id": {"id": "d1", "entityType": "DEVICE"}})
    with patch.object(client, "_request_with_retry", new=mock):
        yield mock


class TestToWire:
    def test_wraps_ids_and_drops_none(self):
        body = to_wire(
            {"id": "d1", "name": "Sensor A", "customerId": "c1", "label": None},
            DEVICE_REFS,
        )
        assert body == {
            "id": {"id": "d1", "entityType": "DEVICE"},
            "name": "Sensor A",
            "customerId": {"id": "c1", "entityType": "CUSTOMER"},
        }

    def test_already_wrapped_refs_untouched(self):
        ref = {"id": "p1", "entityType": "TENANT_PROFILE"}
        assert to_wire({"tenantProfileId": ref}, TENANT_REFS) == {"tenantProfileId": ref}


class TestDeviceMutations:
    @pytest.mark.asyncio
    async def test_create_device(self, client, request_mock):
        result = await client.create_device({"id": "d1", "name": "Sensor A", "type": "sensor"})

        assert result.success
        assert result.operation == "create"
        assert result.entity_id == "d1"
        method, endpoint = request_mock.await_args.args
        assert (method, endpoint) == ("POST", "/api/device")
        assert request_mock.await_args.kwargs["json_body"]["name"] == "Sensor A"

    @pytest.mark.asyncio
    async def test_update_device_uses_put(self, client, request_mock):
        result = await client.update_device("d1", {"name": "Sensor B"})

        assert result.success
        assert request_mock.await_args.args == ("PUT", "/api/device/d1")
        body = request_mock.await_args.kwargs["json_body"]
        assert body["id"] == {"id": "d1", "entityType": "DEVICE"}

    @pytest.mark.asyncio
    async def test_delete_device(self, client, request_mock):
        result = await client.delete_device("d1")
        assert result.success
        assert request_mock.await_args.args == ("DELETE", "/api/device/d1")

    @pytest.mark.asyncio
    async def test_assign_and_unassign(self, client, request_mock):
        assigned = await client.assign_device_to_customer("d1", "c1")
        assert assigned.operation == "assign"
        assert request_mock.await_args.args == ("POST", "/api/customer/c1/device/d1")

        unassigned = await client.unassign_device_from_customer("d1", "c1")
        assert unassigned.operation == "unassign"
        assert request_mock.await_args.args == ("DELETE", "/api/customer/c1/device/d1")

    @pytest.mark.asyncio
    async def test_failure_becomes_result(self, client):
        error = ValidationError(
            "Validation failed",
            status_code=400,
            response_body='{"password": "hunter2"}',
        )
        with patch.object(client, "_request_with_retry", new=AsyncMock(side_effect=error)):
            result = await client.create_device({"id": "d1", "name": "A"})

        assert not result.success
        assert result.entity_id == "d1"
        assert "Validation failed" in result.error
        assert "hunter2" not in result.error

    @pytest.mark.asyncio
    async def test_server_error_becomes_result(self, client):
        with patch.object(
            client, "_request_with_retry",
            new=AsyncMock(side_effect=ServerError("down", status_code=503)),
        ):
            result = await client.delete_device("d1")
        assert not result.success
        assert result.operation == "delete"


class TestDeviceReads:
    @pytest.mark.asyncio
    async def test_get_device_not_found(self, client):
        with patch.object(client, "get", new=AsyncMock(side_effect=NotFoundError("Device", "d1"))):
            assert await client.get_device("d1") is None

    @pytest.mark.asyncio
    async def test_get_device_propagates_other_errors(self, client):
        with patch.object(client, "get", new=AsyncMock(side_effect=ServerError("down"))):
            with pytest.raises(ServerError):
                await client.get_device("d1")

    @pytest.mark.asyncio
    async def test_list_devices(self, client):
        fetch_all = AsyncMock(return_value=[{"id": "d1"}])
        with patch.object(client, "fetch_all", new=fetch_all):
            assert await client.list_devices() == [{"id": "d1"}]
        assert fetch_all.await_args.args[0] == "/api/tenant/devices"

    @pytest.mark.asyncio
    async def test_count_devices(self, client):
        get = AsyncMock(return_value={"data": [{"id": "d1"}], "totalElements": 42})
        with patch.object(client, "get", new=get):
            assert await client.count_devices() == 42
        assert get.await_args.kwargs["params"]["pageSize"] == 1


class TestTenants:
    @pytest.mark.asyncio
    async def test_create_tenant(self, client, request_mock):
        result = await client.create_tenant({"id": "t1", "title": "Acme"})
        assert result.success
        assert request_mock.await_args.args == ("POST", "/api/tenant")
        assert request_mock.await_args.kwargs["json_body"]["id"]["entityType"] == "TENANT"

    @pytest.mark.asyncio
    async def test_update_and_delete_tenant(self, client, request_mock):
        await client.update_tenant("t1", {"title": "Acme 2"})
        assert request_mock.await_args.args == ("PUT", "/api/tenant/t1")
        await client.delete_tenant("t1")
        assert request_mock.await_args.args == ("DELETE", "/api/tenant/t1")

    @pytest.mark.asyncio
    async def test_list_and_count_tenants(self, client):
        with patch.object(client, "fetch_all", new=AsyncMock(return_value=[])) as fetch_all, \
             patch.object(client, "get", new=AsyncMock(return_value={"totalElements": 3})):
            assert await client.list_tenants() == []
            assert await client.count_tenants() == 3
        assert fetch_all.await_args.args[0] == "/api/tenants"

    @pytest.mark.asyncio
    async def test_get_tenant_not_found(self, client):
        with patch.object(client, "get", new=AsyncMock(side_effect=NotFoundError("Tenant", "t1"))):
            assert await client.get_tenant("t1") is None


class TestConnection:
    @pytest.mark.asyncio
    async def test_success(self, client, sessions):
        assert await client.test_connection() is True
        sessions.invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_failure_never_raises(self, client, sessions):
        sessions.get_token.side_effect = LoginError("denied", status_code=401)
        assert await client.test_connection() is False
