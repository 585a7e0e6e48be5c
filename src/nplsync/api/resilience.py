#!/usr/bin/env python3
"""Resilience Patterns for the sync service's outbound calls.

This module provides the patterns used to survive transient failures
against ThingsBoard, the NPL engine, and the message broker:
    - Exponential backoff delay computation (shared with the reconnect policy)
    - Circuit breaker
    - Bounded waits for shutdown draining

Example:
    # Circuit breaker
    circuit = CircuitBreaker(failure_threshold=5, timeout=60, name="thingsboard")
    result = await circuit.call(client.get_device, "d1")
"""
import asyncio
import logging
import random
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Backoff
# ============================================

def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    Grows as ``base_delay * 2 ** (attempt - 1)`` and never exceeds
    ``max_delay``. With jitter the result is scaled by a random factor
    in [0.5, 1.0], so the cap still holds.
    """
    if attempt < 1:
        return 0.0
    # Clamp the exponent so huge attempt counts cannot overflow
    delay = min(base_delay * (2 ** min(attempt - 1, 32)), max_delay)
    if jitter:
        delay *= 0.5 + random.random() / 2
    return delay


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests rejected immediately
    HALF_OPEN = "half_open"  # Probing whether the service recovered


class CircuitBreaker:
    """Circuit breaker guarding one downstream service.

    State Transitions:
        CLOSED -> OPEN: When failure_count >= failure_threshold
        OPEN -> HALF_OPEN: When timeout expires
        HALF_OPEN -> CLOSED: After success_threshold successes
        HALF_OPEN -> OPEN: When a probe fails

    Example:
        circuit = CircuitBreaker(failure_threshold=5, timeout=60)

        try:
            result = await circuit.call(fetch_device, "d1")
        except CircuitOpenError:
            # ThingsBoard is down, the next reconciliation sweep will catch up
            ...
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 2,
        name: str = "default",
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _should_attempt(self) -> bool:
        if self._state != CircuitState.OPEN:
            return True

        if self._last_failure_time is None:
            return False
        elapsed = (datetime.now(UTC) - self._last_failure_time).total_seconds()
        return elapsed >= self.timeout

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> T:
        """Execute func through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open and the timeout hasn't passed
            Any exception from func (after updating circuit state)
        """
        async with self._lock:
            if not self._should_attempt():
                reset_at = None
                if self._last_failure_time:
                    reset_at = self._last_failure_time + timedelta(seconds=self.timeout)
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )

            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._on_failure(e)
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self._failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.info(
                        f"Circuit '{self.name}' closing after "
                        f"{self._success_count} successes"
                    )
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after probe failure: {exception}"
                )
                self._state = CircuitState.OPEN

            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                logger.warning(
                    f"Circuit '{self.name}' opening after "
                    f"{self._failure_count} failures"
                )
                self._state = CircuitState.OPEN

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict[str, Any]:
        """Circuit breaker status for the health endpoint."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": (
                self._last_failure_time.isoformat()
                if self._last_failure_time
                else None
            ),
        }


# ============================================
# Bounded Waits
# ============================================

async def drain(
    tasks: list[asyncio.Task],
    timeout_seconds: float,
) -> int:
    """Wait up to ``timeout_seconds`` for tasks, then cancel the stragglers.

    Returns:
        Number of tasks that had to be cancelled
    """
    pending_tasks = [t for t in tasks if not t.done()]
    if not pending_tasks:
        return 0

    _, pending = await asyncio.wait(pending_tasks, timeout=timeout_seconds)
    for task in pending:
        task.cancel()
    if pending:
        logger.warning(
            f"{len(pending)} task(s) still running after {timeout_seconds}s, cancelled"
        )
        await asyncio.gather(*pending, return_exceptions=True)
    return len(pending)


__all__ = [
    "backoff_delay",
    "CircuitBreaker",
    "CircuitState",
    "drain",
]
