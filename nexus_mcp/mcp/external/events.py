"""Provider state-change events.

State-transition code only calls :meth:`EventDispatcher.publish`, which never
blocks and never runs listener code inline. A single :meth:`EventDispatcher.run`
loop delivers events to listeners in publish order.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Literal, Optional, Union

import structlog

from .credentials import missing_credentials_hint

logger = structlog.get_logger(__name__)


EventKind = Literal[
    "connected",
    "disconnected",
    "error",
    "auth_failed",
    "reconnect_scheduled",
    "update_check",
]


@dataclass(frozen=True)
class ProviderEvent:
    kind: EventKind
    provider_id: str
    status: Optional[str] = None
    message: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[ProviderEvent], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Single-consumer queue of :class:`ProviderEvent`."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ProviderEvent] = asyncio.Queue()
        self._listeners: List[Listener] = []
        self._task: asyncio.Task[None] | None = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ProviderEvent) -> None:
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def deliver(self, event: ProviderEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("event_listener_failed", kind=event.kind, provider=event.provider_id)

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Deliver everything published so far without a running loop task."""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.deliver(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="provider-event-dispatcher")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        # let already published events reach listeners first
        await self._queue.join()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def log_listener(event: ProviderEvent) -> None:
    """Human-readable log line per event."""
    if event.kind == "connected":
        logger.info("provider_connected", provider=event.provider_id, **event.details)
    elif event.kind == "disconnected":
        logger.info("provider_disconnected", provider=event.provider_id)
    elif event.kind == "error":
        logger.error("provider_error", provider=event.provider_id, error=event.message, **event.details)
    elif event.kind == "auth_failed":
        logger.error(
            "provider_auth_failed",
            provider=event.provider_id,
            error=event.message,
            hint=missing_credentials_hint(event.provider_id),
        )
    elif event.kind == "reconnect_scheduled":
        logger.info("provider_reconnect_scheduled", provider=event.provider_id, **event.details)
    elif event.kind == "update_check":
        logger.info("provider_update_check", provider=event.provider_id, **event.details)
