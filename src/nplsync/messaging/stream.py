#!/usr/bin/env python3
"""Event Stream Listener for the NPL engine.

Holds one long-lived ``GET /api/streams`` subscription, parses the
Server-Sent-Events framing, classifies each frame and hands business
events to the orchestrator through a bounded buffer.

The listener never retries by itself. When the subscription fails or the
server ends it, ``listen()`` raises a StreamError and the orchestrator's
reconnect policy decides what happens next.

Frame classification:
    notify          -> business event, always
    command         -> business event only for BUSINESS_COMMANDS,
                       otherwise engine noise (DEBUG, dropped)
    any other type  -> system event (logged, dropped)

Example:
    buffer = asyncio.Queue(maxsize=1000)
    listener = EventStreamListener("http://localhost:12000", tokens, buffer)
    await listener.listen()   # returns only by raising
"""
import asyncio
import json
import logging
from typing import Callable, Optional

import aiohttp

from ..api.client import TokenProvider
from ..api.exceptions import EventDecodeError, StreamClosedError, StreamConnectionError
from ..sync.domain.events import RawEvent
from .routing import is_business_event

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/streams"


# ============================================
# SSE framing
# ============================================

class SseParser:
    """Incremental Server-Sent-Events parser.

    Feed it one line at a time; it returns the frame's data when a blank
    line closes a frame that had ``data:`` lines. ``event:``, ``id:`` and
    ``retry:`` fields and ``:`` comments are accepted and ignored.
    """

    def __init__(self):
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[str]:
        line = line.rstrip("\r\n")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        return None

    def flush(self) -> Optional[str]:
        if not self._data:
            return None
        data = "\n".join(self._data)
        self._data = []
        return data


# ============================================
# Listener
# ============================================

class EventStreamListener:
    """Subscribes to the engine event stream and buffers business events."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        buffer: "asyncio.Queue[RawEvent]",
        on_open: Optional[Callable[[], None]] = None,
        connect_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.buffer = buffer
        self.on_open = on_open
        self.connect_timeout = connect_timeout

        self.active = False
        self.received = 0
        self.dropped = 0

        self._session: Optional[aiohttp.ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}{STREAM_PATH}"

    async def listen(self) -> None:
        """Run one subscription until it fails.

        Raises:
            StreamConnectionError: The stream could not be opened or broke
            StreamClosedError: The server ended the stream
            ConfigurationError: No engine token is configured
        """
        token = await self.token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
        self._session = aiohttp.ClientSession(timeout=timeout)

        try:
            async with self._session.get(self.stream_url, headers=headers) as response:
                self._response = response
                if response.status == 401:
                    self.token_provider.invalidate()
                if response.status != 200:
                    raise StreamConnectionError(
                        f"Event stream returned HTTP {response.status}",
                        status_code=response.status,
                    )

                self.active = True
                logger.info(f"Connected to NPL event stream at {self.stream_url}")
                if self.on_open:
                    self.on_open()

                parser = SseParser()
                async for raw_line in response.content:
                    data = parser.feed(raw_line.decode("utf-8", errors="replace"))
                    if data is not None:
                        self._accept(data)

                data = parser.flush()
                if data is not None:
                    self._accept(data)

            raise StreamClosedError()

        except aiohttp.ClientError as e:
            raise StreamConnectionError(f"Event stream error: {e}", cause=e)
        except ValueError as e:
            # aiohttp's line reader rejects lines longer than its buffer
            raise StreamConnectionError(f"Event stream read failed: {e}", cause=e)
        except asyncio.TimeoutError as e:
            raise StreamConnectionError("Event stream connect timed out", cause=e)
        finally:
            self.active = False
            self._response = None
            if self._session is not None:
                await self._session.close()
                self._session = None

    def _accept(self, data: str) -> None:
        """Hand one frame to handle_frame; a bad frame never ends the subscription."""
        try:
            self.handle_frame(data)
        except Exception as e:
            logger.error(f"Dropping stream frame that failed to decode: {e}", exc_info=True)

    def handle_frame(self, data: str) -> Optional[RawEvent]:
        """Decode and classify one frame; enqueue it if it is a business event.

        Returns:
            The RawEvent if it was accepted into the buffer, otherwise None
        """
        self.received += 1
        try:
            raw = RawEvent.from_frame(json.loads(data))
        except json.JSONDecodeError as e:
            logger.error(f"Dropping malformed stream frame: {e}")
            return None
        except EventDecodeError as e:
            logger.error(f"Dropping stream frame: {e.message}")
            return None

        if not (raw.is_notify or raw.is_command):
            logger.info(f"System event from engine: type={raw.kind}")
            return None

        if not is_business_event(raw):
            logger.debug(f"Ignoring engine command {raw.name}")
            return None

        try:
            self.buffer.put_nowait(raw)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                f"Event buffer full ({self.buffer.maxsize}), dropped {raw.kind} "
                f"{raw.name}; next reconciliation covers it"
            )
            return None

        logger.debug(f"Buffered {raw.kind} {raw.name}")
        return raw

    async def close(self) -> None:
        """Abort the in-flight subscription, if any."""
        if self._response is not None:
            self._response.close()
        if self._session is not None:
            await self._session.close()
        self.active = False


__all__ = ["EventStreamListener", "SseParser", "STREAM_PATH"]
