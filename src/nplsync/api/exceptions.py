#!/usr/bin/env python3
"""Exception Hierarchy for the NPL → ThingsBoard sync service.

This module provides a structured exception hierarchy for handling errors
across the sync service: the ThingsBoard REST client, the NPL engine read
client and event stream, the message broker, and the sync use cases.

Design Principles:
    - All exceptions inherit from NplSyncError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Configuration errors are fatal at startup, everything else is
      either retried (connectivity) or logged and dropped (data)

Exception Hierarchy:
    NplSyncError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    │   └── QueueDeclarationError
    ├── AuthenticationError (may be recoverable - log in again)
    │   ├── LoginError
    │   └── TokenExpiredError
    ├── APIError (may be recoverable - retry)
    │   ├── RateLimitError
    │   ├── NotFoundError
    │   ├── ValidationError
    │   └── ServerError
    ├── NetworkError (recoverable - retry)
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── BrokerError (recoverable - reconnect)
    ├── StreamError (recoverable - reconnect with backoff)
    │   ├── StreamConnectionError
    │   └── StreamClosedError
    └── SyncError (operation failed)
        ├── PartialSyncError
        ├── CircuitOpenError
        ├── EventDecodeError
        └── ReconnectExhaustedError
"""
from datetime import UTC, datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class NplSyncError(Exception):
    """Base exception for all sync-service errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STREAM_CLOSED")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(UTC)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(NplSyncError):
    """Raised when configuration is missing or invalid.

    These errors are fatal at startup: the process fails fast before
    accepting any traffic.
    """

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        kwargs.setdefault("code", "CONFIGURATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )


class QueueDeclarationError(ConfigurationError):
    """Raised when a queue is redeclared with conflicting parameters."""

    def __init__(
        self,
        message: str,
        queue_name: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if queue_name:
            details["queue"] = queue_name
        super().__init__(
            message,
            code="QUEUE_DECLARATION_ERROR",
            details=details,
            **kwargs,
        )
        self.queue_name = queue_name


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(NplSyncError):
    """Base class for authentication-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class LoginError(AuthenticationError):
    """Raised when the ThingsBoard login call fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        # Bad credentials never fix themselves
        kwargs.setdefault("recoverable", status_code not in (400, 401))
        super().__init__(
            message,
            code="LOGIN_ERROR",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class TokenExpiredError(AuthenticationError):
    """Raised when a request is rejected with 401."""

    def __init__(self, message: str = "Access token has expired", **kwargs):
        super().__init__(message, code="TOKEN_EXPIRED", **kwargs)


# ============================================
# API Errors
# ============================================

class APIError(NplSyncError):
    """Base class for API response errors.

    Attributes:
        status_code: HTTP status code
        endpoint: API endpoint that was called
        response_body: Raw response body (may be truncated)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        kwargs.setdefault("recoverable", status_code in (429, 500, 502, 503, 504))
        kwargs.setdefault("code", f"API_ERROR_{status_code}")

        super().__init__(
            message,
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before retrying
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
            **kwargs,
        )
        self.retry_after = retry_after or 5


class NotFoundError(APIError):
    """Raised when requested resource is not found (HTTP 404)."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} '{resource_id}' not found"

        kwargs.setdefault("status_code", 404)
        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message,
            code="NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ValidationError(APIError):
    """Raised when API validation fails (HTTP 400/422)."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("status_code", 400)
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            recoverable=False,
            **kwargs,
        )


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    def __init__(self, message: str = "Server error", **kwargs):
        kwargs.setdefault("status_code", 500)
        super().__init__(
            message,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


# ============================================
# Network Errors (Usually Recoverable)
# ============================================

class NetworkError(NplSyncError):
    """Base class for network-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    """Raised when connection to server fails."""

    def __init__(
        self,
        message: str = "Failed to connect to server",
        host: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details=details,
            **kwargs,
        )


class TimeoutError(NetworkError):
    """Raised when request times out."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Broker Errors
# ============================================

class BrokerError(NplSyncError):
    """Raised when a message broker operation fails."""

    def __init__(
        self,
        message: str,
        queue_name: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if queue_name:
            details["queue"] = queue_name
        kwargs.setdefault("recoverable", True)
        super().__init__(
            message,
            code="BROKER_ERROR",
            details=details,
            **kwargs,
        )
        self.queue_name = queue_name


# ============================================
# Event Stream Errors
# ============================================

class StreamError(NplSyncError):
    """Base class for NPL event stream errors.

    The stream listener never retries on its own; these errors are
    signals for the orchestrator's reconnect policy.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class StreamConnectionError(StreamError):
    """Raised when the event stream cannot be opened or breaks mid-read."""

    def __init__(
        self,
        message: str = "Event stream connection failed",
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        super().__init__(
            message,
            code="STREAM_CONNECTION_ERROR",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class StreamClosedError(StreamError):
    """Raised when the server ends the event stream."""

    def __init__(self, message: str = "Event stream closed by server", **kwargs):
        super().__init__(message, code="STREAM_CLOSED", **kwargs)


# ============================================
# Sync Errors
# ============================================

class SyncError(NplSyncError):
    """Base class for synchronization errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)


class PartialSyncError(SyncError):
    """Raised when a sweep partially completes with some failures.

    Attributes:
        succeeded: Number of entities successfully synced
        failed: Number of entities that failed
        errors: List of individual errors
    """

    def __init__(
        self,
        message: str,
        succeeded: int = 0,
        failed: int = 0,
        errors: Optional[list[Exception]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["succeeded"] = succeeded
        details["failed"] = failed
        if errors:
            details["error_count"] = len(errors)
            details["sample_errors"] = [str(e)[:100] for e in errors[:5]]

        super().__init__(
            message,
            code="PARTIAL_SYNC_ERROR",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.succeeded = succeeded
        self.failed = failed
        self.errors = errors or []


class CircuitOpenError(SyncError):
    """Raised when circuit breaker is open and requests are being rejected.

    Attributes:
        reset_at: When the circuit breaker will attempt to close
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


class EventDecodeError(SyncError):
    """Raised when a frame or queued envelope cannot be decoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            code="EVENT_DECODE_ERROR",
            recoverable=False,
            **kwargs,
        )


class ReconnectExhaustedError(SyncError):
    """Raised when the reconnect policy runs out of attempts.

    This is fatal: the process exits so a supervisor can restart it.
    """

    def __init__(
        self,
        attempts: int,
        max_attempts: int,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["attempts"] = attempts
        details["max_attempts"] = max_attempts
        super().__init__(
            f"Giving up after {attempts} consecutive connection failures",
            code="RECONNECT_EXHAUSTED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.attempts = attempts
        self.max_attempts = max_attempts


# ============================================
# Error Aggregation
# ============================================

class ErrorCollector:
    """Collect per-entity errors during a reconciliation sweep.

    Example:
        collector = ErrorCollector()
        for entity in entities:
            try:
                await apply(entity)
            except Exception as e:
                collector.add(e, context={"entity_id": entity.id})

        if collector.has_errors():
            logger.warning(collector.to_exception())
    """

    def __init__(self, max_errors: int = 100):
        self.errors: list[tuple[Exception, dict[str, Any]]] = []
        self.max_errors = max_errors

    def add(self, error: Exception, context: Optional[dict[str, Any]] = None):
        """Add an error with optional context."""
        if len(self.errors) < self.max_errors:
            self.errors.append((error, context or {}))

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def count(self) -> int:
        return len(self.errors)

    def messages(self) -> list[str]:
        """Error messages prefixed with the entity id they belong to."""
        out = []
        for error, context in self.errors:
            entity_id = context.get("entity_id")
            prefix = f"{entity_id}: " if entity_id else ""
            out.append(f"{prefix}{error}")
        return out

    def to_exception(self, succeeded: int = 0) -> PartialSyncError:
        """Convert collected errors to a PartialSyncError."""
        if not self.errors:
            raise ValueError("No errors to convert")

        return PartialSyncError(
            message=f"{len(self.errors)} error(s) occurred during operation",
            succeeded=succeeded,
            failed=len(self.errors),
            errors=[e for e, _ in self.errors],
        )


__all__ = [
    # Base
    "NplSyncError",
    # Configuration
    "ConfigurationError",
    "QueueDeclarationError",
    # Authentication
    "AuthenticationError",
    "LoginError",
    "TokenExpiredError",
    # API
    "APIError",
    "RateLimitError",
    "NotFoundError",
    "ValidationError",
    "ServerError",
    # Network
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    # Broker / stream
    "BrokerError",
    "StreamError",
    "StreamConnectionError",
    "StreamClosedError",
    # Sync
    "SyncError",
    "PartialSyncError",
    "CircuitOpenError",
    "EventDecodeError",
    "ReconnectExhaustedError",
    # Utilities
    "ErrorCollector",
]
