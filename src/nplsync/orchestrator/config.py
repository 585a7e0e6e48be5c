#!/usr/bin/env python3
"""Service configuration loaded from environment variables.

A ``.env`` file in the working directory is loaded first (python-dotenv);
real environment variables take precedence over it.

Environment Variables:
    RABBITMQ_HOST / RABBITMQ_PORT: Broker address (default: localhost / 5672)
    RABBITMQ_USERNAME / RABBITMQ_PASSWORD: Broker login (default: guest / guest)
    RABBITMQ_VHOST: Broker virtual host (default: /)

    NPL_ENGINE_URL: Engine base URL (default: http://localhost:12000)
    NPL_TOKEN: Engine bearer token; without it the event stream is disabled

    THINGSBOARD_URL: Legacy base URL (default: http://localhost:9090)
    THINGSBOARD_USERNAME / THINGSBOARD_PASSWORD: Legacy login
    THINGSBOARD_TIMEOUT_MS: Per-request timeout (default: 10000)

    RECONNECT_BASE_DELAY_SECONDS: First reconnect delay (default: 1.0)
    RECONNECT_MAX_ATTEMPTS: Consecutive failures before exit (default: 5)
    RECONNECT_MAX_DELAY_SECONDS: Reconnect delay cap (default: 60.0)

    HEALTH_CHECK_PORT: Health endpoint port (default: 8080, 0 to disable)
    RECONCILE_INTERVAL_SECONDS: Periodic sweep interval (default: 0, disabled)
    EVENT_BUFFER_SIZE: Listener-to-dispatch buffer size (default: 1000)
    LOG_LEVEL: Root log level (default: INFO)
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ..api.exceptions import ConfigurationError
from ..messaging.broker import BrokerSettings


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            details={"key": name},
        )
    if value < minimum:
        raise ConfigurationError(
            f"{name} must be >= {minimum}, got {value}",
            details={"key": name},
        )
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            details={"key": name},
        )
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative", details={"key": name})
    return value


@dataclass
class SyncConfig:
    """Configuration for the sync service."""

    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_username: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_vhost: str = "/"

    npl_engine_url: str = "http://localhost:12000"
    npl_token: Optional[str] = None

    thingsboard_url: str = "http://localhost:9090"
    thingsboard_username: Optional[str] = None
    thingsboard_password: Optional[str] = None
    thingsboard_timeout_ms: int = 10000

    reconnect_base_delay: float = 1.0
    reconnect_max_attempts: int = 5
    reconnect_max_delay: float = 60.0

    health_check_port: int = 8080
    reconcile_interval_seconds: int = 0
    event_buffer_size: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "SyncConfig":
        """Build the configuration from the environment.

        Raises:
            ConfigurationError: If a numeric variable does not parse
        """
        if dotenv:
            load_dotenv()

        return cls(
            rabbitmq_host=os.getenv("RABBITMQ_HOST", "localhost"),
            rabbitmq_port=_int_env("RABBITMQ_PORT", 5672, minimum=1),
            rabbitmq_username=os.getenv("RABBITMQ_USERNAME", "guest"),
            rabbitmq_password=os.getenv("RABBITMQ_PASSWORD", "guest"),
            rabbitmq_vhost=os.getenv("RABBITMQ_VHOST", "/"),
            npl_engine_url=os.getenv("NPL_ENGINE_URL", "http://localhost:12000"),
            npl_token=os.getenv("NPL_TOKEN") or None,
            thingsboard_url=os.getenv("THINGSBOARD_URL", "http://localhost:9090"),
            thingsboard_username=os.getenv("THINGSBOARD_USERNAME") or None,
            thingsboard_password=os.getenv("THINGSBOARD_PASSWORD") or None,
            thingsboard_timeout_ms=_int_env("THINGSBOARD_TIMEOUT_MS", 10000, minimum=1),
            reconnect_base_delay=_float_env("RECONNECT_BASE_DELAY_SECONDS", 1.0),
            reconnect_max_attempts=_int_env("RECONNECT_MAX_ATTEMPTS", 5, minimum=1),
            reconnect_max_delay=_float_env("RECONNECT_MAX_DELAY_SECONDS", 60.0),
            health_check_port=_int_env("HEALTH_CHECK_PORT", 8080),
            reconcile_interval_seconds=_int_env("RECONCILE_INTERVAL_SECONDS", 0),
            event_buffer_size=_int_env("EVENT_BUFFER_SIZE", 1000, minimum=1),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def broker_settings(self) -> BrokerSettings:
        return BrokerSettings(
            host=self.rabbitmq_host,
            port=self.rabbitmq_port,
            username=self.rabbitmq_username,
            password=self.rabbitmq_password,
            vhost=self.rabbitmq_vhost,
        )

    @property
    def amqp_url(self) -> str:
        """Broker URL with the password masked, for logs."""
        return (
            f"amqp://{self.rabbitmq_username}:***@"
            f"{self.rabbitmq_host}:{self.rabbitmq_port}{self.rabbitmq_vhost}"
        )

    @property
    def legacy_configured(self) -> bool:
        return bool(self.thingsboard_username and self.thingsboard_password)

    @property
    def thingsboard_timeout_seconds(self) -> float:
        return self.thingsboard_timeout_ms / 1000.0

    def __repr__(self):
        return (
            f"SyncConfig("
            f"broker={self.amqp_url}, "
            f"engine={self.npl_engine_url}, "
            f"npl_token={'set' if self.npl_token else 'missing'}, "
            f"thingsboard={self.thingsboard_url}, "
            f"legacy_login={'set' if self.legacy_configured else 'missing'}, "
            f"reconnect={self.reconnect_base_delay}s x{self.reconnect_max_attempts} "
            f"(max {self.reconnect_max_delay}s), "
            f"health_port={self.health_check_port}, "
            f"reconcile_every={self.reconcile_interval_seconds}s)"
        )
