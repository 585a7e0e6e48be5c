#!/usr/bin/env python3
"""Token Management for the legacy system and the NPL engine.

Two token sources are used by the sync service:

    - ``LegacySessionManager`` logs in to ThingsBoard with a username and
      password (``POST /api/auth/login``) and caches the returned JWT.
    - ``StaticTokenProvider`` hands out the NPL engine bearer token that
      is provisioned externally (``NPL_TOKEN``).

Both expose the same ``get_token()`` / ``invalidate()`` surface so the
REST client can treat them uniformly.

Features:
    - Token caching with a fixed 60 second refresh margin
    - Concurrent refresh serialized by an asyncio.Lock
    - Exponential backoff on transient login failures (1s, 2s, 4s)
    - Invalidation on 401 so the next call logs in again

Security Notes:
    - Tokens are cached in memory only
    - Tokens are logged by SHA-256 prefix, never in full
"""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
import jwt
from jwt.exceptions import InvalidTokenError

from .exceptions import (
    ConfigurationError,
    ConnectionError,
    LoginError,
    NetworkError,
    TimeoutError,
)
from .resilience import backoff_delay

logger = logging.getLogger(__name__)

# Tokens are refreshed this many seconds before they expire
REFRESH_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


def token_fingerprint(token: str) -> str:
    """Safe identifier for logging a token (SHA-256, first 8 chars)."""
    return hashlib.sha256(token.encode()).hexdigest()[:8]


def jwt_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim from a JWT without verifying it.

    Returns None when the token is not a decodable JWT.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except InvalidTokenError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


@dataclass
class CachedToken:
    """A cached legacy session token.

    Attributes:
        access_token: The JWT returned by the login endpoint.
        expires_at: Unix timestamp when the token expires.
        refresh_token: Refresh token, if the server returned one.
    """
    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None

    @property
    def token_id(self) -> str:
        return token_fingerprint(self.access_token)

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at - REFRESH_MARGIN_SECONDS

    @property
    def time_remaining(self) -> float:
        return max(0, self.expires_at - time.time())


class LegacySessionManager:
    """Logs in to ThingsBoard and keeps a valid JWT cached.

    Example:
        >>> sessions = LegacySessionManager("http://tb:9090", "tenant@example.com", "secret")
        >>> token = await sessions.get_token()  # Logs in
        >>> token = await sessions.get_token()  # Returns cached token
    """

    def __init__(
        self,
        base_url: str,
        username: Optional[str],
        password: Optional[str],
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
    ):
        missing = []
        if not username:
            missing.append("THINGSBOARD_USERNAME")
        if not password:
            missing.append("THINGSBOARD_PASSWORD")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )

        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries

        self._cached_token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    @property
    def login_url(self) -> str:
        return f"{self.base_url}/api/auth/login"

    async def get_token(self) -> str:
        """Return a valid token, logging in when none is cached or it is near expiry."""
        if self._cached_token and not self._cached_token.is_expired:
            return self._cached_token.access_token

        async with self._lock:
            if self._cached_token and not self._cached_token.is_expired:
                return self._cached_token.access_token

            self._cached_token = await self._login()
            return self._cached_token.access_token

    async def _login(self) -> CachedToken:
        """Call the login endpoint, retrying transient failures.

        Raises:
            LoginError: Credentials rejected, or retries exhausted
            ConnectionError / TimeoutError: Wrapped as the cause of LoginError
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._login_once()

            except LoginError as e:
                if not e.recoverable:
                    raise
                last_error = e

            except aiohttp.ClientConnectionError as e:
                last_error = ConnectionError(
                    f"Failed to connect to login endpoint: {e}",
                    host=self.base_url,
                    cause=e,
                )

            except asyncio.TimeoutError as e:
                last_error = TimeoutError(
                    "Login request timed out",
                    timeout_seconds=self.timeout_seconds,
                    cause=e,
                )

            except aiohttp.ClientError as e:
                last_error = NetworkError(f"Network error during login: {e}", cause=e)

            logger.warning(
                f"Login attempt {attempt}/{self.max_retries} failed: {last_error}"
            )
            if attempt < self.max_retries:
                await asyncio.sleep(backoff_delay(attempt))

        raise LoginError(
            f"Login failed after {self.max_retries} attempts",
            cause=last_error,
            details={"attempts": self.max_retries},
        )

    async def _login_once(self) -> CachedToken:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                self.login_url,
                json={"username": self.username, "password": self.password},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise LoginError(
                        f"Authentication failed: HTTP {response.status}",
                        status_code=response.status,
                        details={"response": error_text[:200]},
                    )

                data = await response.json()

        access_token = data.get("token")
        if not access_token:
            raise LoginError(
                "Login response missing token",
                status_code=200,
                recoverable=False,
                details={"response_keys": sorted(data.keys())},
            )

        expires_at = jwt_expiry(access_token)
        if expires_at is None:
            expires_at = time.time() + float(data.get("expiresIn") or DEFAULT_EXPIRES_IN)

        token = CachedToken(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=data.get("refreshToken"),
        )
        logger.info(
            f"Legacy login succeeded (id={token.token_id}), "
            f"expires in {token.time_remaining:.0f}s"
        )
        return token

    def invalidate(self):
        """Drop the cached token so the next call logs in again."""
        self._cached_token = None

    @property
    def token_info(self) -> Optional[dict]:
        if not self._cached_token:
            return None
        return {
            "token_id": self._cached_token.token_id,
            "is_expired": self._cached_token.is_expired,
            "time_remaining_seconds": self._cached_token.time_remaining,
        }


class StaticTokenProvider:
    """Bearer token provisioned out of band (the NPL engine token)."""

    def __init__(self, token: Optional[str], name: str = "NPL_TOKEN"):
        self._token = token
        self.name = name

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def get_token(self) -> str:
        if not self._token:
            raise ConfigurationError(
                f"{self.name} is not configured",
                missing_keys=[self.name],
            )
        return self._token

    def invalidate(self):
        # Nothing to refresh; a rejected static token needs operator action
        logger.warning(
            f"{self.name} was rejected by the server "
            f"(id={token_fingerprint(self._token or '')})"
        )


__all__ = [
    "CachedToken",
    "LegacySessionManager",
    "StaticTokenProvider",
    "token_fingerprint",
    "jwt_expiry",
]
