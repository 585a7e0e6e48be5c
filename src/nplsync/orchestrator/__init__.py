"""Sync Orchestrator - process entrypoint, reconnect policy and health API."""

from .config import SyncConfig
from .reconnect import ReconnectPolicy
from .service import OrchestratorState, SyncOrchestrator, build_orchestrator

__all__ = [
    "SyncConfig",
    "ReconnectPolicy",
    "OrchestratorState",
    "SyncOrchestrator",
    "build_orchestrator",
]
