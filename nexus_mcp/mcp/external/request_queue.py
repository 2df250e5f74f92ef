"""FIFO of calls waiting for a provider that is being updated."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Literal, Mapping, Optional

import structlog

from .errors import ProviderError
from .metrics import NEXUS_QUEUE_DEPTH

logger = structlog.get_logger(__name__)


RequestKind = Literal["tool_call", "resource_read", "prompt_fetch"]

DEFAULT_TIMEOUT_MS = 30_000

_ids = itertools.count(1)


@dataclass(eq=False)
class QueuedRequest:
    id: str
    kind: RequestKind
    payload: Mapping[str, Any]
    future: asyncio.Future[Any]
    enqueued_at: float
    timeout_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, result: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True

    def cancel_timeout(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


Executor = Callable[[QueuedRequest], Awaitable[Any]]


class RequestQueue:
    """Per-provider queue of pending calls.

    Each entry settles exactly once: it is either replayed by :meth:`drain`,
    expired by its timer (or :meth:`timeout_stale`), or rejected by
    :meth:`reject_all`. Settling by any path removes the entry and cancels its
    timer.
    """

    def __init__(
        self,
        provider_id: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider_id = provider_id
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._entries: Deque[QueuedRequest] = deque()
        self._draining = False

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    def _report_depth(self) -> None:
        NEXUS_QUEUE_DEPTH.labels(provider=self.provider_id).set(len(self._entries))

    def enqueue(self, kind: RequestKind, payload: Mapping[str, Any]) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        entry = QueuedRequest(
            id=f"{self.provider_id}-{next(_ids)}",
            kind=kind,
            payload=payload,
            future=loop.create_future(),
            enqueued_at=self._clock(),
        )
        entry.timeout_handle = loop.call_later(self.timeout_ms / 1000, self._expire, entry)
        entry.future.add_done_callback(lambda _f: self._discard(entry))
        self._entries.append(entry)
        self._report_depth()
        logger.info(
            "request_queued",
            provider=self.provider_id,
            request_id=entry.id,
            kind=kind,
            depth=len(self._entries),
        )
        return entry.future

    def _discard(self, entry: QueuedRequest) -> None:
        entry.cancel_timeout()
        try:
            self._entries.remove(entry)
        except ValueError:
            return
        self._report_depth()

    def _timeout_error(self, entry: QueuedRequest, now: float) -> ProviderError:
        waited_ms = int((now - entry.enqueued_at) * 1000)
        return ProviderError(
            code="timeout",
            message=(
                f"Request timed out after {self.timeout_ms}ms while provider "
                f"{self.provider_id} was updating (waited {waited_ms}ms)"
            ),
            provider_id=self.provider_id,
            details={"request_id": entry.id, "kind": entry.kind, "waited_ms": waited_ms},
        )

    def _expire(self, entry: QueuedRequest, now: Optional[float] = None) -> None:
        current = self._clock() if now is None else now
        rejected = entry.reject(self._timeout_error(entry, current))
        self._discard(entry)
        if rejected:
            logger.warning("queued_request_timed_out", provider=self.provider_id, request_id=entry.id)

    def timeout_stale(self, now: Optional[float] = None) -> int:
        """Reject every entry older than the timeout. Returns how many expired."""
        current = self._clock() if now is None else now
        limit = self.timeout_ms / 1000
        stale = [entry for entry in self._entries if current - entry.enqueued_at >= limit]
        for entry in stale:
            self._expire(entry, current)
        return len(stale)

    async def drain(self, executor: Executor) -> int:
        """Replay entries in enqueue order. A failing entry does not stop the rest."""
        if self._draining:
            return 0
        self._draining = True
        replayed = 0
        try:
            while self._entries:
                entry = self._entries.popleft()
                entry.cancel_timeout()
                self._report_depth()
                if entry.settled:
                    continue
                try:
                    result = await executor(entry)
                except Exception as exc:  # noqa: BLE001 - delivered to the caller's future
                    entry.reject(exc)
                else:
                    entry.resolve(result)
                replayed += 1
        finally:
            self._draining = False
        if replayed:
            logger.info("queue_drained", provider=self.provider_id, replayed=replayed)
        return replayed

    def reject_all(self, error: BaseException) -> int:
        entries = list(self._entries)
        self._entries.clear()
        self._report_depth()
        rejected = 0
        for entry in entries:
            entry.cancel_timeout()
            if entry.reject(error):
                rejected += 1
        if rejected:
            logger.warning("queue_rejected", provider=self.provider_id, rejected=rejected, reason=str(error))
        return rejected
