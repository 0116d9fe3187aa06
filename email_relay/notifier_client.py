"""
Outcome event sinks

Injection outcomes are handed to the notification channels, which live
outside the relay. The logging sink is always installed; the webhook sink
posts events to an HTTP endpoint when one is configured.
"""
import logging
from typing import List, Optional, Protocol

import httpx

from .models import RelayEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def emit(self, event: RelayEvent) -> None:
        ...


class LoggingEventSink:
    """Writes events to the relay log"""

    async def emit(self, event: RelayEvent) -> None:
        if event.event_type == "command_injected":
            logger.info(f"[event] {event.event_type} token={event.token} via={event.strategy} target={event.target}")
        else:
            logger.warning(f"[event] {event.event_type} token={event.token} reason={event.reason}")


class WebhookEventSink:
    """Client for an HTTP notification endpoint"""

    def __init__(self, url: str, timeout: float = 10.0):
        """
        Initialize webhook sink.

        Args:
            url: Endpoint receiving JSON-encoded RelayEvent payloads
            timeout: Request timeout in seconds
        """
        self.url = url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def emit(self, event: RelayEvent) -> None:
        client = await self._get_client()
        try:
            response = await client.post(self.url, json=event.model_dump(mode="json"))
            response.raise_for_status()
            logger.debug(f"Delivered {event.event_type} event to {self.url}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver {event.event_type} event to {self.url}: {e}")


class EventDispatcher:
    """Fans events out to every sink; a failing sink never blocks the others"""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks) if sinks else [LoggingEventSink()]
        self.history: List[RelayEvent] = []

    async def emit(self, event: RelayEvent) -> None:
        self.history.append(event)
        del self.history[:-100]
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(f"Event sink {type(sink).__name__} failed: {e}")

    async def close(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close:
                await close()
