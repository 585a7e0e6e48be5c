#!/usr/bin/env python3
"""NPL engine read client.

Read-only access to the source of truth, used by reconciliation sweeps
and status reporting:

    GET /api/devices          -> list of devices
    GET /api/devices/count    -> integer
    GET /api/tenants          -> list of tenants
    GET /api/tenants/count    -> integer

List endpoints may answer with a bare JSON list or with a paged
``{"items": [...]}`` envelope. An envelope announces further pages with
``hasNext``, a non-empty ``next`` or ``page``/``totalPages``; every page is
fetched before the list is returned, because a sweep treats anything
missing from it as deleted. Count endpoints answer with a bare number or
``{"count": n}``.
"""
import asyncio
import logging
from typing import Any, Optional

from .auth import StaticTokenProvider
from .client import PaginationConfig, RestClient
from .exceptions import APIError

logger = logging.getLogger(__name__)

LIST_PAGINATION = PaginationConfig(page_size=100, max_pages=1000)


def _unexpected(
    message: str, endpoint: str, data: Any, cause: Optional[Exception] = None
) -> APIError:
    return APIError(
        message,
        status_code=200,
        endpoint=endpoint,
        response_body=str(data)[:200],
        recoverable=False,
        cause=cause,
    )


def _as_items(data: Any, endpoint: str) -> list[dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return data["items"]
    raise _unexpected(f"Unexpected list response from {endpoint}", endpoint, data)


def _has_next(data: Any, page: int) -> bool:
    """Whether a list envelope says there is a page after ``page``."""
    if not isinstance(data, dict):
        return False
    if "hasNext" in data:
        return bool(data["hasNext"])
    if data.get("next"):
        return True
    total_pages = data.get("totalPages")
    if isinstance(total_pages, int) and not isinstance(total_pages, bool):
        return page + 1 < total_pages
    return False


def _as_count(data: Any, endpoint: str) -> int:
    if isinstance(data, dict):
        data = data.get("count")
    if isinstance(data, bool) or not isinstance(data, (int, float, str)):
        raise _unexpected(f"Unexpected count response from {endpoint}", endpoint, data)
    try:
        return int(data)
    except ValueError as e:
        raise _unexpected(f"Unexpected count response from {endpoint}", endpoint, data, cause=e)


class EngineClient(RestClient):
    """Source-of-truth reads for devices and tenants."""

    def __init__(
        self,
        token_provider: StaticTokenProvider,
        base_url: str,
        timeout_seconds: float = 30.0,
        pagination: Optional[PaginationConfig] = None,
        **kwargs,
    ):
        super().__init__(
            token_provider,
            base_url,
            timeout_seconds=timeout_seconds,
            name="npl_engine",
            **kwargs,
        )
        self.pagination = pagination or LIST_PAGINATION

    async def list_all(self, endpoint: str) -> list[dict[str, Any]]:
        """Fetch every page of a list endpoint.

        Raises:
            APIError: On an unexpected body, a page that claims more items
                but is empty, or more pages than ``max_pages`` allows
        """
        config = self.pagination
        items: list[dict[str, Any]] = []
        page = 0

        while True:
            data = await self.get(endpoint, params={"page": page, "pageSize": config.page_size})
            batch = _as_items(data, endpoint)
            items.extend(batch)
            if not _has_next(data, page):
                break

            if not batch:
                raise _unexpected(
                    f"{endpoint} page {page} is empty but announces more pages",
                    endpoint,
                    data,
                )
            page += 1
            if config.max_pages and page >= config.max_pages:
                raise _unexpected(
                    f"{endpoint} has more than {config.max_pages} pages",
                    endpoint,
                    data,
                )
            if config.delay_between_pages > 0:
                await asyncio.sleep(config.delay_between_pages)

        logger.debug(f"Fetched {len(items)} items from {endpoint} in {page + 1} pages")
        return items

    async def list_devices(self) -> list[dict[str, Any]]:
        items = await self.list_all("/api/devices")
        logger.debug(f"Engine returned {len(items)} devices")
        return items

    async def count_devices(self) -> int:
        return _as_count(await self.get("/api/devices/count"), "/api/devices/count")

    async def list_tenants(self) -> list[dict[str, Any]]:
        items = await self.list_all("/api/tenants")
        logger.debug(f"Engine returned {len(items)} tenants")
        return items

    async def count_tenants(self) -> int:
        return _as_count(await self.get("/api/tenants/count"), "/api/tenants/count")


__all__ = ["EngineClient", "LIST_PAGINATION"]
