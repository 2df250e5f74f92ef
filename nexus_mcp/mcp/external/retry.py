from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_COOLDOWN_MS = 30_000
DEFAULT_BASE_DELAY_MS = 5_000


def should_attempt_reconnection(
    attempt_count: int = 0,
    last_reconnect_time: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    cooldown_ms: int = DEFAULT_COOLDOWN_MS,
    *,
    now: datetime | None = None,
) -> bool:
    """Decide whether another reconnection attempt is permitted.

    - no attempt once ``attempt_count`` reaches ``max_attempts``
    - no attempt while fewer than ``cooldown_ms`` have passed since the last one
      (the boundary itself is allowed)
    """
    if attempt_count >= max_attempts:
        return False

    if last_reconnect_time is not None:
        current = now or datetime.now(timezone.utc)
        if current - last_reconnect_time < timedelta(milliseconds=cooldown_ms):
            return False

    return True


def backoff_delay_ms(attempt_count: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> int:
    """Exponential backoff: base * 2^attempts."""
    return base_delay_ms * (2 ** max(0, attempt_count))


def cooldown_remaining_ms(
    last_reconnect_time: datetime | None,
    cooldown_ms: int = DEFAULT_COOLDOWN_MS,
    *,
    now: datetime | None = None,
) -> int:
    if last_reconnect_time is None:
        return 0
    current = now or datetime.now(timezone.utc)
    elapsed = current - last_reconnect_time
    remaining = timedelta(milliseconds=cooldown_ms) - elapsed
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / timedelta(milliseconds=1))
