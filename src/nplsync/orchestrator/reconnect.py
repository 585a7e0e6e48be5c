"""Reconnect policy for the event stream.

Delays grow as ``base_delay * 2**(attempt - 1)`` capped at ``max_delay``.
The attempt counter counts consecutive failures; a successful open resets
it. Exceeding ``max_attempts`` is fatal.
"""

import logging

from ..api.exceptions import ReconnectExhaustedError
from ..api.resilience import backoff_delay

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    def __init__(self, base_delay: float = 1.0, max_attempts: int = 5, max_delay: float = 60.0):
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.max_delay = max_delay
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    def record_failure(self) -> float:
        """Count one failure and return the delay before the next attempt.

        Raises:
            ReconnectExhaustedError: When attempts exceed ``max_attempts``
        """
        self._attempts += 1
        if self._attempts > self.max_attempts:
            raise ReconnectExhaustedError(
                attempts=self._attempts - 1,
                max_attempts=self.max_attempts,
            )

        delay = backoff_delay(self._attempts, self.base_delay, self.max_delay)
        logger.info(
            f"Reconnect attempt {self._attempts}/{self.max_attempts} in {delay:.1f}s"
        )
        return delay

    def reset(self) -> None:
        if self._attempts:
            logger.info(f"Connection restored after {self._attempts} attempt(s)")
        self._attempts = 0
