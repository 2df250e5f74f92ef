"""Delayed reconnection of failed providers.

The scheduler owns one timer handle per provider, and the task of an attempt
that is currently running. Scheduling again for the same provider replaces the
pending timer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

import structlog

from .events import EventDispatcher, ProviderEvent
from .models import ReconnectState
from .retry import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_COOLDOWN_MS,
    DEFAULT_MAX_ATTEMPTS,
    backoff_delay_ms,
    cooldown_remaining_ms,
    should_attempt_reconnection,
)

logger = structlog.get_logger(__name__)


class Reconnectable(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def reconnect_state(self) -> ReconnectState: ...

    async def attempt_reconnect(self) -> object: ...


@dataclass
class ScheduledReconnect:
    handle: asyncio.TimerHandle
    delay_ms: int
    attempt: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconnectionScheduler:
    def __init__(
        self,
        *,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        events: Optional[EventDispatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_attempts = max_attempts
        self.cooldown_ms = cooldown_ms
        self.events = events
        self._clock = clock
        self._timers: Dict[str, ScheduledReconnect] = {}
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    def pending(self, provider_id: str) -> Optional[ScheduledReconnect]:
        return self._timers.get(provider_id)

    def in_flight(self, provider_id: str) -> Optional[asyncio.Task[None]]:
        return self._tasks.get(provider_id)

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    def next_delay_ms(self, state: ReconnectState) -> int:
        backoff = backoff_delay_ms(state.attempt_count, self.base_delay_ms)
        cooldown = cooldown_remaining_ms(state.last_attempt_time, self.cooldown_ms, now=self._clock())
        return max(backoff, cooldown)

    def schedule(self, target: Reconnectable) -> Optional[int]:
        """Arm (or re-arm) the reconnect timer for ``target``.

        Returns the delay in milliseconds, or None once attempts are exhausted.
        """
        provider_id = target.id
        state = target.reconnect_state
        if state.attempt_count >= self.max_attempts:
            self.cancel_timer(provider_id)
            logger.error(
                "reconnect_attempts_exhausted",
                provider=provider_id,
                attempts=state.attempt_count,
                max_attempts=self.max_attempts,
            )
            return None

        delay_ms = self.next_delay_ms(state)
        self.cancel_timer(provider_id)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay_ms / 1000, self._fire, target)
        attempt = state.attempt_count + 1
        self._timers[provider_id] = ScheduledReconnect(handle=handle, delay_ms=delay_ms, attempt=attempt)

        logger.info("reconnect_scheduled", provider=provider_id, delay_ms=delay_ms, attempt=attempt)
        if self.events is not None:
            self.events.publish(
                ProviderEvent(
                    kind="reconnect_scheduled",
                    provider_id=provider_id,
                    details={"delay_ms": delay_ms, "attempt": attempt},
                )
            )
        return delay_ms

    def _fire(self, target: Reconnectable) -> None:
        provider_id = target.id
        self._timers.pop(provider_id, None)
        state = target.reconnect_state

        if not should_attempt_reconnection(
            state.attempt_count,
            state.last_attempt_time,
            self.max_attempts,
            self.cooldown_ms,
            now=self._clock(),
        ):
            if state.attempt_count < self.max_attempts:
                # timer fired a hair before the cooldown boundary
                self.schedule(target)
            else:
                logger.error("reconnect_attempts_exhausted", provider=provider_id, attempts=state.attempt_count)
            return

        task = asyncio.create_task(self._attempt(target), name=f"reconnect-{provider_id}")
        self._tasks[provider_id] = task
        task.add_done_callback(lambda t: self._forget_task(provider_id, t))

    def _forget_task(self, provider_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(provider_id) is task:
            del self._tasks[provider_id]

    async def _attempt(self, target: Reconnectable) -> None:
        try:
            await target.attempt_reconnect()
        except asyncio.CancelledError:
            logger.info("reconnect_cancelled", provider=target.id)
            raise
        except Exception:  # noqa: BLE001
            logger.exception("reconnect_attempt_crashed", provider=target.id)

    def cancel_timer(self, provider_id: str) -> bool:
        scheduled = self._timers.pop(provider_id, None)
        if scheduled is None:
            return False
        scheduled.handle.cancel()
        return True

    def cancel(self, provider_id: str) -> bool:
        """Cancel the pending timer and any running attempt for one provider."""
        cancelled = self.cancel_timer(provider_id)
        task = self._tasks.get(provider_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            cancelled = True
        if cancelled:
            logger.debug("reconnect_cancelled", provider=provider_id)
        return cancelled

    async def cancel_and_wait(self, provider_id: str) -> bool:
        task = self._tasks.get(provider_id)
        cancelled = self.cancel(provider_id)
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})
        return cancelled

    def cancel_all(self) -> int:
        provider_ids = set(self._timers) | set(self._tasks)
        count = sum(1 for provider_id in provider_ids if self.cancel(provider_id))
        if count:
            logger.info("reconnect_timers_cancelled", count=count)
        return count

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if task is not asyncio.current_task()]
        self.cancel_all()
        if tasks:
            await asyncio.wait(tasks)
