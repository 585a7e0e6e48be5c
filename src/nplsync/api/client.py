#!/usr/bin/env python3
"""Generic HTTP Client for the ThingsBoard and NPL engine REST APIs.

This module provides a reusable HTTP client that handles the common
concerns of talking to either system:

    - Bearer authentication via a token provider
    - Automatic re-login on 401 responses
    - Rate limit handling on 429 responses
    - Exponential backoff on 5xx and network errors
    - Page-number pagination (ThingsBoard ``page``/``pageSize``/``hasNext``)
    - Connection pooling via a shared aiohttp session
    - Circuit breaker for resilience against outages

Design Philosophy:
    This client knows HOW to talk to a REST API, but not WHAT to fetch.
    Devices, tenants, and assignments belong to LegacyClient and
    EngineClient, which compose this client.

Usage:
    async with RestClient(sessions, "http://localhost:9090") as client:
        device = await client.get("/api/device/d1")

        async for page in client.paginate("/api/tenant/devices"):
            for item in page:
                process(item)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import aiohttp

from .exceptions import (
    APIError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    ValidationError,
)
from .resilience import CircuitBreaker, backoff_delay

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    async def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


# ============================================
# Configuration
# ============================================

@dataclass
class PaginationConfig:
    """Configuration for page-number pagination.

    Attributes:
        page_size: Number of items per request
        delay_between_pages: Seconds to wait between requests
        max_pages: Safety limit to prevent infinite loops (None = no limit)
    """
    page_size: int = 100
    delay_between_pages: float = 0.0
    max_pages: Optional[int] = None


# ============================================
# The Client
# ============================================

class RestClient:
    """Async HTTP client with auth, retry, and circuit breaking.

    Use as an async context manager so the session is always closed:

        async with RestClient(token_provider, base_url) as client:
            data = await client.get("/api/device/d1")
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str,
        timeout_seconds: float = 10.0,
        name: str = "rest",
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
        max_retries: int = 3,
    ):
        self.token_provider = token_provider
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.name = name
        self.max_retries = max_retries

        if not self.base_url:
            raise ConfigurationError(f"Base URL is required for {name} client")

        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name=name,
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "RestClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the HTTP session if it does not exist yet."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=10, limit_per_host=10),
                timeout=aiohttp.ClientTimeout(
                    total=self.timeout_seconds,
                    connect=min(self.timeout_seconds, 10),
                ),
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _get_auth_headers(self) -> dict[str, str]:
        token = await self.token_provider.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Make a single HTTP request (no retry logic).

        Returns:
            Parsed JSON body, or None for an empty body

        Raises:
            APIError subclass for non-2xx statuses
            ConnectionError / TimeoutError / NetworkError for transport failures
        """
        if not self._session:
            raise RuntimeError(
                f"{self.__class__.__name__} must be opened before use: "
                f"async with {self.__class__.__name__}(...) as client:"
            )

        url = f"{self.base_url}{endpoint}"

        try:
            headers = await self._get_auth_headers()

            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )

                body = await response.text()
                if not body.strip():
                    return None
                return await response.json(content_type=None)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> Exception:
        """Map a failing status code onto the exception hierarchy."""
        if status == 401:
            return TokenExpiredError(
                "Access token expired or invalid",
                details={"endpoint": endpoint},
            )

        if status == 404:
            return NotFoundError(
                resource_type="Resource",
                resource_id=endpoint,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 429:
            try:
                wait = int(retry_after) if retry_after else None
            except ValueError:
                wait = None
            return RateLimitError(
                f"Rate limit exceeded for {endpoint}",
                retry_after=wait,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status in (400, 422):
            return ValidationError(
                f"Validation failed for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status >= 500:
            return ServerError(
                f"Server error ({status}) for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        return APIError(
            f"{method} {endpoint} failed",
            status_code=status,
            endpoint=endpoint,
            method=method,
            response_body=response_body,
        )

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Make an HTTP request with retry and circuit breaker.

            - Circuit breaker: Fail fast while the service is down
            - 401 Unauthorized: Invalidate token, retry
            - 429 Rate Limited: Wait for Retry-After, retry
            - 5xx and network errors: Exponential backoff retry

        Raises:
            CircuitOpenError: If the circuit breaker is open
            APIError / NetworkError: If the request fails after all retries
        """
        breaker = self._circuit_breaker
        if breaker and breaker.is_open and not breaker._should_attempt():
            raise CircuitOpenError(
                f"Circuit breaker is open for {self.name}",
                failure_count=breaker.failure_count,
            )

        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._request(method, endpoint, params, json_body)
                if breaker:
                    await breaker._on_success()
                return result

            except TokenExpiredError as e:
                last_error = e
                logger.warning(f"{self.name}: token rejected, re-authenticating (attempt {attempt})")
                self.token_provider.invalidate()
                continue

            except RateLimitError as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.warning(
                        f"{self.name}: rate limited, waiting {e.retry_after}s "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(e.retry_after)
                    continue
                raise

            except (ServerError, NetworkError) as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = backoff_delay(attempt)
                    logger.warning(
                        f"{self.name}: {e}. Retrying in {delay:.1f}s "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue

                if breaker:
                    await breaker._on_failure(e)
                raise

            except (NotFoundError, ValidationError):
                raise

            except APIError as e:
                if breaker and e.recoverable:
                    await breaker._on_failure(e)
                raise

        if last_error:
            raise last_error

        raise APIError(
            "Request failed after all retries",
            status_code=0,
            endpoint=endpoint,
            method=method,
        )

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self._request_with_retry("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        return await self._request_with_retry("POST", endpoint, params=params, json_body=json_body)

    async def put(
        self,
        endpoint: str,
        json_body: dict,
        params: Optional[dict] = None,
    ) -> Any:
        return await self._request_with_retry("PUT", endpoint, params=params, json_body=json_body)

    async def delete(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self._request_with_retry("DELETE", endpoint, params=params)

    # ----------------------------------------
    # Pagination Methods
    # ----------------------------------------

    async def paginate(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> AsyncIterator[list[dict]]:
        """Iterate through a ThingsBoard-style paged listing.

        Each response looks like ``{"data": [...], "hasNext": bool,
        "totalElements": int}``; pages are numbered from 0.

        Yields:
            List of items from each page
        """
        config = config or PaginationConfig()
        params = dict(params or {})

        page = 0
        fetched = 0

        while True:
            params["pageSize"] = config.page_size
            params["page"] = page

            data = await self.get(endpoint, params=params) or {}
            items = data.get("data", [])

            if page == 0:
                total = data.get("totalElements", len(items))
                logger.debug(f"Paginating {endpoint}: {total} total items")

            if items:
                yield items
            fetched += len(items)
            page += 1

            if not data.get("hasNext") or not items:
                break
            if config.max_pages and page >= config.max_pages:
                logger.info(f"Reached max_pages limit ({config.max_pages})")
                break

            if config.delay_between_pages > 0:
                await asyncio.sleep(config.delay_between_pages)

        logger.debug(f"Pagination complete: {fetched} items in {page} pages")

    async def fetch_all(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> list[dict]:
        """Collect every page of a paged listing into one list."""
        all_items = []
        async for page in self.paginate(endpoint, config, params):
            all_items.extend(page)
        return all_items


__all__ = ["RestClient", "PaginationConfig", "TokenProvider"]
