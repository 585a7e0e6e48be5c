"""Tests for the health and sync-status HTTP endpoints."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from nplsync.orchestrator.health import create_app
from nplsync.sync.domain.entities import ReconcileResult, SyncDomain, SyncStatus


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.health.return_value = {
        "isRunning": True,
        "brokerHealthy": True,
        "eventStreamActive": False,
        "reconnectAttempts": 2,
        "legacySystemConfigured": True,
        "timestamp": "2026-01-01T00:00:00+00:00",
    }
    orchestrator.get_sync_status = AsyncMock(return_value=[
        SyncStatus(domain="device", source_count=3, legacy_count=3),
        SyncStatus(domain="tenant", source_count=2, legacy_count=1),
    ])
    started = datetime(2026, 1, 1, tzinfo=UTC)
    orchestrator.reconcile = AsyncMock(return_value=ReconcileResult(
        domain="device", created=1, unchanged=2,
        started_at=started, completed_at=started,
    ))
    return orchestrator


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


class TestHealth:
    def test_reports_state(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["isRunning"] is True
        assert body["eventStreamActive"] is False
        assert body["reconnectAttempts"] == 2


class TestSyncStatus:
    def test_lists_domains(self, client):
        response = client.get("/sync/status")

        assert response.status_code == 200
        body = response.json()
        assert [s["domain"] for s in body] == ["device", "tenant"]
        assert body[0]["inSync"] is True
        assert body[1]["inSync"] is False
        assert body[1]["legacyCount"] == 1


class TestReconcile:
    def test_runs_sweep(self, client, orchestrator):
        response = client.post("/sync/device/reconcile")

        assert response.status_code == 200
        orchestrator.reconcile.assert_awaited_once_with(SyncDomain.DEVICE)
        body = response.json()
        assert body["created"] == 1
        assert body["success"] is True
        assert body["durationSeconds"] == 0.0

    def test_unknown_domain(self, client, orchestrator):
        response = client.post("/sync/customer/reconcile")

        assert response.status_code == 404
        orchestrator.reconcile.assert_not_called()
