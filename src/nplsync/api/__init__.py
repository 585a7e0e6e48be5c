"""HTTP and error-handling foundations shared by both REST clients.

Classes:
    RestClient: Generic HTTP client with pagination, retry, and circuit breaker
    LegacySessionManager: ThingsBoard login with cached, self-refreshing JWT
    StaticTokenProvider: Out-of-band bearer token (NPL engine)

    The system-specific clients live in their own modules and are imported
    from there: ``api.legacy_client.LegacyClient`` (ThingsBoard) and
    ``api.engine_client.EngineClient`` (NPL engine).

Exceptions:
    NplSyncError: Base exception for the service
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: Login and token failures
    APIError: Non-2xx responses (NotFound, Validation, RateLimit, Server)
    NetworkError: Transport failures
    BrokerError: RabbitMQ failures
    StreamError: Event stream failures
    SyncError: Synchronization failures

Resilience:
    CircuitBreaker: Prevent cascading failures
    backoff_delay: Exponential backoff
"""
from .auth import LegacySessionManager, StaticTokenProvider, token_fingerprint
from .client import PaginationConfig, RestClient, TokenProvider
from .exceptions import (
    APIError,
    AuthenticationError,
    BrokerError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    ErrorCollector,
    EventDecodeError,
    LoginError,
    NetworkError,
    NotFoundError,
    NplSyncError,
    PartialSyncError,
    QueueDeclarationError,
    RateLimitError,
    ReconnectExhaustedError,
    ServerError,
    StreamClosedError,
    StreamConnectionError,
    StreamError,
    SyncError,
    TimeoutError,
    TokenExpiredError,
    ValidationError,
)
from .redaction import REDACTED, redact_mapping, redact_text
from .resilience import CircuitBreaker, CircuitState, backoff_delay, drain

__all__ = [
    # Clients
    "RestClient",
    "PaginationConfig",
    "TokenProvider",
    "LegacySessionManager",
    "StaticTokenProvider",
    "token_fingerprint",
    # Exceptions
    "NplSyncError",
    "ConfigurationError",
    "QueueDeclarationError",
    "AuthenticationError",
    "LoginError",
    "TokenExpiredError",
    "APIError",
    "RateLimitError",
    "NotFoundError",
    "ValidationError",
    "ServerError",
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    "BrokerError",
    "StreamError",
    "StreamConnectionError",
    "StreamClosedError",
    "SyncError",
    "PartialSyncError",
    "CircuitOpenError",
    "EventDecodeError",
    "ReconnectExhaustedError",
    "ErrorCollector",
    # Redaction
    "REDACTED",
    "redact_text",
    "redact_mapping",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "backoff_delay",
    "drain",
]
