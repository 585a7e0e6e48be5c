"""FastAPI app for health and sync-status endpoints.

Endpoints:
    GET  /health                    Liveness and connection state (always 200)
    GET  /sync/status               Per-domain source/legacy counts
    POST /sync/{domain}/reconcile   Run a full sweep for one domain

The app is served in-process by a ``uvicorn.Server`` task owned by the
orchestrator, so it shares the orchestrator's event loop and state.
"""

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from ..sync.domain.entities import SyncDomain

if TYPE_CHECKING:
    from .service import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


# ========== Response Schemas ==========


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(_CamelModel):
    """Process and connection state."""
    is_running: bool = Field(alias="isRunning")
    broker_healthy: bool = Field(alias="brokerHealthy")
    event_stream_active: bool = Field(alias="eventStreamActive")
    reconnect_attempts: int = Field(alias="reconnectAttempts")
    legacy_system_configured: bool = Field(alias="legacySystemConfigured")
    timestamp: str


class SyncStatusDTO(_CamelModel):
    domain: str
    source_count: int = Field(alias="sourceCount")
    legacy_count: int = Field(alias="legacyCount")
    in_sync: bool = Field(alias="inSync")
    reconciliation_in_progress: bool = Field(alias="reconciliationInProgress")
    last_reconciled_at: Optional[str] = Field(default=None, alias="lastReconciledAt")
    error: Optional[str] = None


class ReconcileResultDTO(_CamelModel):
    domain: str
    success: bool
    skipped: bool
    created: int
    updated: int
    deleted: int
    unchanged: int
    failed: int
    errors: list[str] = Field(default_factory=list)
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    duration_seconds: Optional[float] = Field(default=None, alias="durationSeconds")


# ========== Dependencies ==========


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


# ========== Endpoints ==========


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator=Depends(get_orchestrator)):
    """Report whether the service is running and its connections are up."""
    return HealthResponse(**orchestrator.health())


@router.get("/sync/status", response_model=list[SyncStatusDTO])
async def sync_status(orchestrator=Depends(get_orchestrator)):
    """Compare entity counts on both sides for every domain."""
    statuses = await orchestrator.get_sync_status()
    return [SyncStatusDTO(**status.to_dict()) for status in statuses]


@router.post("/sync/{domain}/reconcile", response_model=ReconcileResultDTO)
async def reconcile(
    domain: str,
    orchestrator=Depends(get_orchestrator),
):
    """Run a full reconciliation sweep for ``device`` or ``tenant``."""
    try:
        sync_domain = SyncDomain(domain)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown sync domain: {domain}")

    result = await orchestrator.reconcile(sync_domain)
    return ReconcileResultDTO(**result.to_dict())


def create_app(orchestrator: "SyncOrchestrator") -> FastAPI:
    app = FastAPI(title="NPL Sync Service", docs_url=None, redoc_url=None)
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app


# ========== Serving ==========


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the orchestrator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HealthServer:
    """Runs the app on uvicorn inside the current event loop."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        self.port = port
        self._server = _EmbeddedServer(
            uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
        )
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._server.serve(), name="health-server")
        logger.info(f"Health check server listening on port {self.port}")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("Health server did not stop in time, cancelled")
        self._task = None


__all__ = ["HealthResponse", "HealthServer", "create_app"]
