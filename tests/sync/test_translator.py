"""Tests for the device and tenant translators."""

import pytest

from nplsync.sync.adapters.translator import (
    DEFAULT_PROFILE_ID,
    PREMIUM_PROFILE_ID,
    STANDARD_PROFILE_ID,
    DeviceTranslator,
    TenantTranslator,
    limits_to_profile_id,
    profile_id_to_limits,
    unwrap_ref,
)
from nplsync.sync.domain.entities import Device, Tenant, TenantLimits


@pytest.fixture
def devices():
    return DeviceTranslator()


@pytest.fixture
def tenants():
    return TenantTranslator()


class TestProfileTiers:
    """Tests for the lossy limits <-> tenant profile mapping."""

    @pytest.mark.parametrize("limits,expected", [
        (TenantLimits(200, 2000, 1000, 100), PREMIUM_PROFILE_ID),
        (TenantLimits(500, 9000, 5000, 400), PREMIUM_PROFILE_ID),
        (TenantLimits(150, 1500, 700, 60), STANDARD_PROFILE_ID),
        (TenantLimits(100, 1000, 500, 50), STANDARD_PROFILE_ID),
        # Premium users but only standard devices: best tier fully cleared
        (TenantLimits(300, 1200, 1000, 100), STANDARD_PROFILE_ID),
        (TenantLimits(99, 1000, 500, 50), DEFAULT_PROFILE_ID),
        (TenantLimits(10, 10, 10, 10), DEFAULT_PROFILE_ID),
        (TenantLimits(), DEFAULT_PROFILE_ID),
        (None, DEFAULT_PROFILE_ID),
    ])
    def test_limits_to_profile_id(self, limits, expected):
        assert limits_to_profile_id(limits) == expected

    def test_profile_to_limits(self):
        assert profile_id_to_limits(PREMIUM_PROFILE_ID).as_tuple() == (200, 2000, 1000, 100)
        assert profile_id_to_limits(STANDARD_PROFILE_ID).max_users == 100

    def test_unknown_profile_gets_default_limits(self):
        assert profile_id_to_limits("something-else").as_tuple() == (50, 500, 250, 25)
        assert profile_id_to_limits(None).max_devices == 500

    def test_mapping_is_lossy(self):
        limits = TenantLimits(150, 1500, 700, 60)
        assert profile_id_to_limits(limits_to_profile_id(limits)) != limits


class TestUnwrapRef:
    def test_reference(self):
        assert unwrap_ref({"id": "c1", "entityType": "CUSTOMER"}) == "c1"

    def test_plain(self):
        assert unwrap_ref("c1") == "c1"
        assert unwrap_ref(None) is None


class TestDeviceTranslator:
    """Tests for DeviceTranslator."""

    def test_legacy_shape_never_carries_credentials(self, devices):
        device = Device(id="d1", name="Sensor A", type="sensor", credentials="tok-1", device_data={"x": 1})
        shape = devices.to_legacy_shape(device)

        assert "credentials" not in shape
        assert "deviceData" not in shape
        assert "tok-1" not in repr(shape)
        assert shape["name"] == "Sensor A"

    def test_log_repr_redacts_credentials(self, devices):
        record = devices.to_log_repr(Device(id="d1", credentials="tok-1"))
        assert record["credentials"] == "[REDACTED]"
        assert "tok-1" not in repr(record)

    def test_log_repr_without_credentials(self, devices):
        assert devices.to_log_repr(Device(id="d1"))["credentials"] is None

    def test_normalize_unwraps_references(self, devices):
        legacy = {
            "id": {"id": "d1", "entityType": "DEVICE"},
            "name": "Sensor A",
            "type": "sensor",
            "tenantId": {"id": "t1", "entityType": "TENANT"},
            "customerId": {"id": "c1", "entityType": "CUSTOMER"},
            "createdTime": 1700000000000,
        }
        shape = devices.normalize_legacy(legacy)

        assert shape["id"] == "d1"
        assert shape["tenantId"] == "t1"
        assert shape["customerId"] == "c1"
        assert shape["createdTime"] == 1700000000000

    def test_diff_detects_changes(self, devices):
        current = devices.to_legacy_shape(Device(id="d1", name="Sensor A", type="sensor"))
        desired = devices.to_legacy_shape(Device(id="d1", name="Sensor B", type="sensor"))
        assert devices.diff(desired, current) == {"name": ("Sensor B", "Sensor A")}

    def test_diff_ignores_volatile_fields(self, devices):
        current = devices.to_legacy_shape(Device(id="d1", name="A", version=1, created_time=1))
        desired = devices.to_legacy_shape(Device(id="d1", name="A", version=7, created_time=9))
        assert devices.diff(desired, current) == {}

    def test_diff_treats_blank_as_missing(self, devices):
        current = {"name": "A", "label": "", "additionalInfo": "{}"}
        desired = {"name": "A", "label": None, "additionalInfo": None}
        assert devices.diff(desired, current) == {}

    def test_diff_parses_json_text(self, devices):
        current = {"name": "A", "additionalInfo": '{"gateway": true}'}
        desired = {"name": "A", "additionalInfo": {"gateway": True}}
        assert devices.diff(desired, current) == {}

    def test_raw_legacy_matches_its_own_translation(self, devices):
        device = Device(id="d1", name="Sensor A", type="sensor", customer_id="c1")
        legacy = {
            "id": {"id": "d1", "entityType": "DEVICE"},
            "name": "Sensor A",
            "type": "sensor",
            "customerId": {"id": "c1", "entityType": "CUSTOMER"},
            "label": "",
            "version": 4,
        }
        assert devices.diff(devices.to_legacy_shape(device), devices.normalize_legacy(legacy)) == {}


class TestTenantTranslator:
    """Tests for TenantTranslator."""

    def test_to_legacy_shape(self, tenants):
        tenant = Tenant(
            id="t1",
            name="Acme",
            state_name="CA",
            limits=TenantLimits(150, 1500, 700, 60),
        )
        shape = tenants.to_legacy_shape(tenant)

        assert shape["state"] == "CA"
        assert shape["tenantProfileId"] == STANDARD_PROFILE_ID
        assert "limits" not in shape

    def test_to_canonical_shape(self, tenants):
        tenant = tenants.to_canonical_shape({
            "id": {"id": "t1", "entityType": "TENANT"},
            "name": "Acme",
            "state": "CA",
            "tenantProfileId": {"id": PREMIUM_PROFILE_ID, "entityType": "TENANT_PROFILE"},
        })

        assert tenant.id == "t1"
        assert tenant.state_name == "CA"
        assert tenant.limits.max_users == 200

    def test_normalize_keeps_stored_profile(self, tenants):
        shape = tenants.normalize_legacy({
            "id": "t1",
            "name": "Acme",
            "tenantProfileId": {"id": "custom-profile", "entityType": "TENANT_PROFILE"},
        })
        assert shape["tenantProfileId"] == "custom-profile"

    def test_profile_change_is_a_diff(self, tenants):
        legacy = tenants.normalize_legacy({"id": "t1", "name": "Acme", "tenantProfileId": DEFAULT_PROFILE_ID})
        desired = tenants.to_legacy_shape(
            Tenant(id="t1", name="Acme", limits=TenantLimits(200, 2000, 1000, 100))
        )
        assert tenants.diff(desired, legacy) == {
            "tenantProfileId": (PREMIUM_PROFILE_ID, DEFAULT_PROFILE_ID)
        }

    def test_log_repr(self, tenants):
        record = tenants.to_log_repr(Tenant(id="t1", name="Acme", email="ops@acme.test"))
        assert record["email"] == "ops@acme.test"
