"""
Event sinks.

The scanner and the scheduler push events (scan progress, discovered
devices, metrics, anomalies, errors) to a sink. emit() never blocks and
never raises into the caller.
"""

import asyncio
import json
import logging
from collections import deque
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

import aiohttp

from ._types import EventType, now_utc

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receives engine events."""

    def emit(self, event: EventType, payload: dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    """Writes events to the log."""

    # Events too frequent for INFO
    DEBUG_EVENTS = {EventType.SCAN_PROGRESS, EventType.DEVICE_METRICS}

    def emit(self, event: EventType, payload: dict[str, Any]) -> None:
        level = logging.DEBUG if event in self.DEBUG_EVENTS else logging.INFO
        if event in (EventType.ANOMALY_ALERT, EventType.DEVICE_ERROR):
            level = logging.WARNING
        logger.log(level, f"{event.value}: {json.dumps(payload, default=str)}")


class CollectingEventSink:
    """Keeps the most recent events in memory."""

    def __init__(self, maxlen: int = 1000):
        self.events: deque[tuple[EventType, dict[str, Any]]] = deque(maxlen=maxlen)

    def emit(self, event: EventType, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def of_type(self, event: EventType) -> list[dict[str, Any]]:
        return [payload for e, payload in self.events if e == event]

    def clear(self) -> None:
        self.events.clear()

    def __len__(self) -> int:
        return len(self.events)


class CompositeEventSink:
    """Fans each event out to several sinks."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: EventType, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event, payload)
            except Exception as e:
                logger.error(f"Event sink {type(sink).__name__} failed on {event.value}: {e}")


class WebhookEventSink:
    """
    POSTs each event as JSON to a URL.

    Delivery is fire-and-forget: posts run as background tasks and failures
    are logged, never raised.
    """

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": "network-monitor"},
            )
        return self._session

    def emit(self, event: EventType, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {event.value} webhook")
            return

        body = {
            "event": event.value,
            "timestamp": now_utc().isoformat(),
            "data": payload,
        }
        task = loop.create_task(self._post(body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, body: dict[str, Any]) -> None:
        try:
            session = await self._get_session()
            data = json.dumps(body, default=_json_default)
            async with session.post(
                self.url, data=data, headers={"Content-Type": "application/json"}
            ) as response:
                if response.status >= 400:
                    self.failed += 1
                    logger.warning(f"Webhook {self.url} returned {response.status} for {body['event']}")
                    return
            self.delivered += 1
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed += 1
            logger.warning(f"Webhook delivery of {body['event']} failed: {e}")

    async def flush(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)
