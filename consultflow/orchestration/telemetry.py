from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

import httpx

from ..core.config import TelemetrySettings
from ..core.logging import get_logger
from ..core.metrics import increment_telemetry_failure
from ..utils.json_encoding import encode_json
from .enums import TelemetryEventType

logger = get_logger(name=__name__)


@dataclass(slots=True)
class TelemetryEvent:
    type: TelemetryEventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class TelemetrySink(Protocol):
    name: str

    async def publish(self, event: TelemetryEvent) -> None:
        ...


class InMemoryTelemetrySink:
    name = "memory"

    def __init__(self) -> None:
        self._events: list[TelemetryEvent] = []

    async def publish(self, event: TelemetryEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[TelemetryEvent]:
        return list(self._events)

    def of_type(self, event_type: TelemetryEventType) -> list[TelemetryEvent]:
        return [event for event in self._events if event.type is event_type]


class LoggingTelemetrySink:
    name = "log"

    async def publish(self, event: TelemetryEvent) -> None:
        logger.info("telemetry_event", event_type=event.type.value, data=event.data)


class WebhookTelemetrySink:
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self._timeout))

    async def publish(self, event: TelemetryEvent) -> None:
        async with self._client_factory() as client:
            response = await client.post(
                self._url,
                content=encode_json(event.to_payload()),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()


class TelemetryEmitter:
    """Fire-and-forget dispatcher; sink failures are logged and never reach the caller."""

    def __init__(self, sinks: Iterable[TelemetrySink] = (), *, enabled: bool = True) -> None:
        self._sinks: list[TelemetrySink] = list(sinks)
        self._enabled = enabled
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: TelemetrySettings, *, extra_sinks: Iterable[TelemetrySink] = ()) -> "TelemetryEmitter":
        sinks: list[TelemetrySink] = list(extra_sinks)
        if settings.log_events:
            sinks.append(LoggingTelemetrySink())
        if settings.webhook_url:
            sinks.append(WebhookTelemetrySink(settings.webhook_url, timeout_seconds=settings.timeout_seconds))
        return cls(sinks, enabled=settings.enabled)

    @property
    def sinks(self) -> tuple[TelemetrySink, ...]:
        return tuple(self._sinks)

    def add_sink(self, sink: TelemetrySink) -> None:
        self._sinks.append(sink)

    def emit(self, event_type: TelemetryEventType, **data: Any) -> TelemetryEvent | None:
        if not self._enabled or not self._sinks:
            return None
        event = TelemetryEvent(type=event_type, data=_jsonable(data))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("telemetry_dropped_no_loop", event_type=event_type.value)
            return event
        for sink in self._sinks:
            task = loop.create_task(self._deliver(sink, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _deliver(self, sink: TelemetrySink, event: TelemetryEvent) -> None:
        try:
            await sink.publish(event)
        except Exception as exc:
            increment_telemetry_failure(sink=getattr(sink, "name", type(sink).__name__))
            logger.warning("telemetry_sink_failed", sink=getattr(sink, "name", None), error=str(exc))


def _jsonable(data: dict[str, Any]) -> dict[str, Any]:
    return json.loads(encode_json(data))


__all__ = [
    "TelemetryEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "LoggingTelemetrySink",
    "WebhookTelemetrySink",
    "TelemetryEmitter",
]
