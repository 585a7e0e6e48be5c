#!/usr/bin/env python3
"""Sync Orchestrator - wires the stream, the queues and the sync services.

Data flow:
    engine stream -> EventStreamListener (classify, buffer)
        -> dispatch task -> handle_event:
              1. envelope as SyncEvent (routing table)
              2. publish to the per-domain durable queue
              3. apply directly through the entity sync service
    durable queue -> on_queue_message -> dispatch -> ack
                     (nack + requeue when the domain was busy)

Every event is applied twice, once directly and once from the queue.
The sync services are idempotent (no diff means no legacy call), so the
second application is a no-op in the common case and a repair when the
direct one failed.

Lifecycle:
    run() initializes the broker (fatal on error), probes the legacy
    system, starts consumers, the health server, the dispatch task and
    the optional reconcile loop, then holds the stream subscription open
    under the reconnect policy until shutdown or reconnect exhaustion.
    A broker outage after startup is bounded by a second reconnect policy.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Union

from ..api.auth import LegacySessionManager, StaticTokenProvider
from ..api.engine_client import EngineClient
from ..api.exceptions import (
    BrokerError,
    ConfigurationError,
    EventDecodeError,
    NplSyncError,
    StreamError,
)
from ..api.legacy_client import LegacyClient
from ..api.redaction import redact_text
from ..api.resilience import drain
from ..messaging.broker import Delivery, DurableQueueLayer
from ..messaging.routing import build_sync_event
from ..messaging.stream import EventStreamListener
from ..sync.adapters.engine_adapter import EngineDeviceSource, EngineTenantSource
from ..sync.adapters.legacy_adapter import LegacyDeviceGateway, LegacyTenantGateway
from ..sync.adapters.translator import DeviceTranslator, TenantTranslator
from ..sync.domain.entities import (
    OperationResult,
    ReconcileResult,
    SyncDomain,
    SyncOperation,
    SyncStatus,
)
from ..sync.domain.events import EventType, RawEvent, SyncEvent, UnmappedEvent
from ..sync.use_cases.entity_sync import (
    DeviceSyncService,
    EntitySyncService,
    TenantSyncService,
)
from .config import SyncConfig
from .health import HealthServer, create_app
from .reconnect import ReconnectPolicy

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT_SECONDS = 10.0
REQUEUE_DELAY_SECONDS = 1.0

DispatchResult = Union[OperationResult, ReconcileResult, None]


# ============================================
# State
# ============================================

@dataclass
class OrchestratorState:
    """Process-local state, reported by the health endpoint."""

    is_running: bool = False
    event_stream_active: bool = False
    reconnect_attempts: int = 0
    started_at: Optional[datetime] = None
    events_received: int = 0
    events_published: int = 0
    events_unmapped: int = 0
    publish_failures: int = 0
    apply_failures: int = 0
    requeued: int = 0
    broker_reconnect_attempts: int = 0


# ============================================
# Orchestrator
# ============================================

class SyncOrchestrator:
    """Owns every long-running task of the sync service.

    Example:
        orchestrator = build_orchestrator(SyncConfig.from_env())
        await orchestrator.run()
    """

    def __init__(
        self,
        config: SyncConfig,
        broker: DurableQueueLayer,
        listener: EventStreamListener,
        devices: Optional[DeviceSyncService] = None,
        tenants: Optional[TenantSyncService] = None,
        legacy_client: Optional[LegacyClient] = None,
        engine_client: Optional[EngineClient] = None,
        stream_enabled: bool = True,
        requeue_delay: float = REQUEUE_DELAY_SECONDS,
    ):
        self.config = config
        self.broker = broker
        self.listener = listener
        self.devices = devices
        self.tenants = tenants
        self.legacy_client = legacy_client
        self.engine_client = engine_client
        self.stream_enabled = stream_enabled
        self.requeue_delay = requeue_delay

        self.state = OrchestratorState()
        self.reconnect = ReconnectPolicy(
            base_delay=config.reconnect_base_delay,
            max_attempts=config.reconnect_max_attempts,
            max_delay=config.reconnect_max_delay,
        )
        self.broker_reconnect = ReconnectPolicy(
            base_delay=config.reconnect_base_delay,
            max_attempts=config.reconnect_max_attempts,
            max_delay=config.reconnect_max_delay,
        )
        self.listener.on_open = self._on_stream_open

        self.handlers = self._handler_table()
        missing = [t.value for t in EventType if t not in self.handlers]
        if missing:
            raise ConfigurationError(f"No dispatch handler for: {', '.join(missing)}")

        self._shutdown_event = asyncio.Event()
        self._health: Optional[HealthServer] = None
        self._loops: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._stopped = False
        self._stream_close: Optional[asyncio.Future] = None

    @property
    def legacy_configured(self) -> bool:
        return self.devices is not None and self.tenants is not None

    @property
    def services(self) -> dict[SyncDomain, EntitySyncService]:
        if not self.legacy_configured:
            return {}
        return {SyncDomain.DEVICE: self.devices, SyncDomain.TENANT: self.tenants}

    # ----------------------------------------
    # Dispatch
    # ----------------------------------------

    def _handler_table(self) -> dict[EventType, Callable[[SyncEvent], Awaitable[DispatchResult]]]:
        return {
            EventType.DEVICE_CREATED: partial(self._apply, SyncDomain.DEVICE, SyncOperation.CREATE),
            EventType.DEVICE_UPDATED: partial(self._apply, SyncDomain.DEVICE, SyncOperation.UPDATE),
            EventType.DEVICE_DELETED: partial(self._delete, SyncDomain.DEVICE),
            EventType.DEVICE_ASSIGNED: partial(self._assignment, True),
            EventType.DEVICE_UNASSIGNED: partial(self._assignment, False),
            EventType.DEVICES_BULK_IMPORTED: partial(self._bulk, SyncDomain.DEVICE),
            EventType.DEVICES_BULK_DELETED: partial(self._bulk, SyncDomain.DEVICE),
            EventType.TENANT_CREATED: partial(self._apply, SyncDomain.TENANT, SyncOperation.CREATE),
            EventType.TENANT_UPDATED: partial(self._apply, SyncDomain.TENANT, SyncOperation.UPDATE),
            EventType.TENANT_DELETED: partial(self._delete, SyncDomain.TENANT),
            EventType.TENANTS_BULK_IMPORTED: partial(self._bulk, SyncDomain.TENANT),
            EventType.TENANTS_BULK_DELETED: partial(self._bulk, SyncDomain.TENANT),
        }

    async def _apply(self, domain: SyncDomain, operation: SyncOperation, event: SyncEvent) -> OperationResult:
        return await self.services[domain].apply_change(event.payload.entity, operation)

    async def _delete(self, domain: SyncDomain, event: SyncEvent) -> OperationResult:
        return await self.services[domain].apply_change(event.payload.entity_id, SyncOperation.DELETE)

    async def _assignment(self, assign: bool, event: SyncEvent) -> OperationResult:
        payload = event.payload
        return await self.devices.apply_assignment(payload.device_id, payload.customer_id, assign)

    async def _bulk(self, domain: SyncDomain, event: SyncEvent) -> ReconcileResult:
        # Bulk events carry counts only, so the affected ids come from a sweep
        logger.info(
            f"{event.event_type.value}: {event.payload.affected_count} affected, "
            f"{event.payload.failed_count} failed; reconciling {domain.value}s"
        )
        return await self.services[domain].reconcile_all()

    async def dispatch(self, event: SyncEvent) -> DispatchResult:
        """Apply one event to the legacy system.

        Never raises for legacy failures; they are logged and left for
        the next reconciliation sweep.
        """
        if not self.legacy_configured:
            logger.warning(
                f"Legacy system not configured, {event.event_type.value} "
                f"{event.event_id} not applied"
            )
            return None

        handler = self.handlers[event.event_type]
        try:
            result = await handler(event)
        except (NplSyncError, ValueError, KeyError) as e:
            self.state.apply_failures += 1
            logger.error(
                f"Applying {event.event_type.value} {event.event_id} failed: "
                f"{redact_text(str(e))}"
            )
            return OperationResult(success=False, operation=event.event_type.value, error=str(e))

        if result is not None and result.deferred:
            logger.info(
                f"{event.event_type.value} {event.event_id} deferred, "
                f"{event.domain} sync already in progress"
            )
        elif isinstance(result, OperationResult) and not result.success:
            self.state.apply_failures += 1
            logger.error(
                f"{event.event_type.value} {event.event_id} failed for "
                f"{result.entity_id}: {result.error}"
            )
        else:
            logger.debug(f"Applied {event.event_type.value} {event.event_id}")
        return result

    async def handle_event(self, raw: RawEvent) -> DispatchResult:
        """Envelope, publish and directly apply one business frame."""
        self.state.events_received += 1
        built = build_sync_event(raw)
        if isinstance(built, UnmappedEvent):
            self.state.events_unmapped += 1
            logger.warning(f"Unmapped {built.kind} event {built.name}: {built.reason}")
            return None

        event, queue_name = built
        try:
            await self.broker.publish(queue_name, event.to_dict())
            self.state.events_published += 1
        except BrokerError as e:
            self.state.publish_failures += 1
            logger.error(f"Failed to enqueue {event.event_type.value} {event.event_id}: {e.message}")

        return await self.dispatch(event)

    async def on_queue_message(self, delivery: Delivery) -> None:
        """Consumer handler: decode, apply, then ack.

        Legacy failures are acked and left to reconciliation. A change
        deferred because its domain was busy is requeued after
        ``requeue_delay`` seconds.
        """
        try:
            event = SyncEvent.from_dict(delivery.json())
        except EventDecodeError as e:
            logger.error(f"Discarding undecodable message {delivery.message_id}: {e.message}")
            await delivery.nack(requeue=False)
            return

        result = await self.dispatch(event)
        if result is not None and result.deferred:
            self.state.requeued += 1
            await asyncio.sleep(self.requeue_delay)
            await delivery.nack(requeue=True)
            return
        await delivery.ack()

    # ----------------------------------------
    # Status and reconciliation
    # ----------------------------------------

    def health(self) -> dict[str, Any]:
        return {
            "isRunning": self.state.is_running,
            "brokerHealthy": self.broker.is_healthy,
            "eventStreamActive": self.state.event_stream_active,
            "reconnectAttempts": self.state.reconnect_attempts,
            "legacySystemConfigured": self.legacy_configured,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def get_sync_status(self) -> list[SyncStatus]:
        if not self.legacy_configured:
            return [
                SyncStatus(domain=domain.value, error="legacy system not configured")
                for domain in SyncDomain
            ]
        return list(await asyncio.gather(
            *(service.get_sync_status() for service in self.services.values())
        ))

    async def reconcile(self, domain: SyncDomain) -> ReconcileResult:
        service = self.services.get(domain)
        if service is None:
            return ReconcileResult(
                domain=domain.value,
                errors=["legacy system not configured"],
            )
        return await service.reconcile_all()

    # ----------------------------------------
    # Long-running loops
    # ----------------------------------------

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _on_stream_open(self) -> None:
        self.reconnect.reset()
        self.state.reconnect_attempts = 0
        self.state.event_stream_active = True
        for service in self.services.values():
            service.reset_cache()

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _stream_loop(self) -> None:
        """Hold the subscription open, reconnecting with backoff.

        Raises:
            ReconnectExhaustedError: Too many consecutive failures
        """
        while not self._shutdown_event.is_set():
            try:
                await self.listener.listen()
            except StreamError as e:
                self.state.event_stream_active = False
                if self._shutdown_event.is_set():
                    break
                logger.warning(f"Event stream lost: {e.message}")

            delay = self.reconnect.record_failure()
            self.state.reconnect_attempts = self.reconnect.attempts
            if await self._wait_for_shutdown(delay):
                break

        logger.info("Event stream loop stopped")

    async def _broker_watch_loop(self) -> None:
        """Bound how long the broker may stay disconnected after startup.

        The robust connection reconnects by itself; this loop only counts
        the outage against the reconnect policy.

        Raises:
            ReconnectExhaustedError: The broker stayed down too long
        """
        while not self._shutdown_event.is_set():
            await self.broker.wait_connection_lost()
            while self.broker.connection_lost:
                delay = self.broker_reconnect.record_failure()
                self.state.broker_reconnect_attempts = self.broker_reconnect.attempts
                if await self._wait_for_shutdown(delay):
                    return
            self.broker_reconnect.reset()
            self.state.broker_reconnect_attempts = 0

    async def _dispatch_loop(self) -> None:
        buffer = self.listener.buffer
        while True:
            raw = await buffer.get()
            try:
                await asyncio.shield(self._track(self.handle_event(raw)))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unhandled error dispatching {raw.name}: {e}", exc_info=True)
            finally:
                buffer.task_done()

    async def _reconcile_loop(self) -> None:
        interval = self.config.reconcile_interval_seconds
        logger.info(f"Periodic reconciliation every {interval}s")
        while not await self._wait_for_shutdown(interval):
            for domain in self.services:
                result = await asyncio.shield(self._track(self.reconcile(domain)))
                logger.info(
                    f"Scheduled {domain.value} reconciliation: created={result.created}, "
                    f"updated={result.updated}, deleted={result.deleted}, failed={result.failed}"
                )

    async def run(self) -> None:
        """Start everything and block until shutdown.

        Raises:
            ConfigurationError: Queue declaration conflict
            BrokerError: Broker unreachable at startup
            ReconnectExhaustedError: Event stream or broker could not be restored
        """
        self.state.is_running = True
        self.state.started_at = datetime.now(UTC)
        logger.info(f"Starting sync orchestrator: {self.config!r}")

        try:
            await self.broker.initialize()

            for client in (self.legacy_client, self.engine_client):
                if client is not None:
                    await client.open()

            if self.legacy_client is not None:
                await self.legacy_client.test_connection()
                for queue_name in self.broker.queues:
                    await self.broker.consume(queue_name, self.on_queue_message)
            else:
                logger.warning(
                    "THINGSBOARD_USERNAME/THINGSBOARD_PASSWORD not set; events are "
                    "queued but not applied"
                )

            if self.config.health_check_port > 0:
                self._health = HealthServer(create_app(self), self.config.health_check_port)
                self._health.start()

            self._loops.append(asyncio.create_task(self._dispatch_loop(), name="dispatch"))
            if self.config.reconcile_interval_seconds > 0 and self.legacy_configured:
                self._loops.append(asyncio.create_task(self._reconcile_loop(), name="reconcile"))

            if self.stream_enabled:
                main = asyncio.create_task(self._stream_loop(), name="stream")
            else:
                logger.warning("NPL_TOKEN not set, event stream disabled")
                main = asyncio.create_task(self._shutdown_event.wait(), name="idle")
            watch = asyncio.create_task(self._broker_watch_loop(), name="broker-watch")

            try:
                await asyncio.wait({main, watch}, return_when=asyncio.FIRST_COMPLETED)
                if watch.done():
                    watch.result()
                await main
            finally:
                for task in (main, watch):
                    task.cancel()
                await asyncio.gather(main, watch, return_exceptions=True)
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        """Signal-safe: ask run() to stop."""
        if self._shutdown_event.is_set():
            return
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        # Aborts a blocked read; shutdown() awaits it
        self._stream_close = asyncio.ensure_future(self.listener.close())

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._shutdown_event.set()
        logger.info("Shutting down sync orchestrator")

        if self._stream_close is not None:
            await self._stream_close
            self._stream_close = None
        await self.listener.close()
        self.state.event_stream_active = False

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        await drain(list(self._inflight), DRAIN_TIMEOUT_SECONDS)

        try:
            await self.broker.close()
        except (BrokerError, OSError) as e:
            logger.warning(f"Error closing broker: {e}")

        if self._health is not None:
            await self._health.stop()
            self._health = None

        for client in (self.legacy_client, self.engine_client):
            if client is not None:
                await client.close()

        self.state.is_running = False
        logger.info("Shutdown complete")


# ============================================
# Wiring
# ============================================

def build_orchestrator(config: SyncConfig) -> SyncOrchestrator:
    """Construct every component from configuration."""
    engine_tokens = StaticTokenProvider(config.npl_token, name="NPL_TOKEN")
    engine_client = EngineClient(engine_tokens, config.npl_engine_url)

    broker = DurableQueueLayer(config.broker_settings)
    listener = EventStreamListener(
        config.npl_engine_url,
        engine_tokens,
        asyncio.Queue(maxsize=config.event_buffer_size),
    )

    devices = tenants = legacy_client = None
    if config.legacy_configured:
        sessions = LegacySessionManager(
            config.thingsboard_url,
            config.thingsboard_username,
            config.thingsboard_password,
            timeout_seconds=config.thingsboard_timeout_seconds,
        )
        legacy_client = LegacyClient(
            sessions,
            config.thingsboard_url,
            timeout_seconds=config.thingsboard_timeout_seconds,
        )
        legacy_devices = LegacyDeviceGateway(legacy_client)
        devices = DeviceSyncService(
            source=EngineDeviceSource(engine_client),
            legacy=legacy_devices,
            translator=DeviceTranslator(),
            assignments=legacy_devices,
        )
        tenants = TenantSyncService(
            source=EngineTenantSource(engine_client),
            legacy=LegacyTenantGateway(legacy_client),
            translator=TenantTranslator(),
        )

    return SyncOrchestrator(
        config=config,
        broker=broker,
        listener=listener,
        devices=devices,
        tenants=tenants,
        legacy_client=legacy_client,
        engine_client=engine_client,
        stream_enabled=engine_tokens.configured,
    )


__all__ = ["OrchestratorState", "SyncOrchestrator", "build_orchestrator"]
