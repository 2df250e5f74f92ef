"""Failure classification for provider connections.

Maps any raised value onto one of four categories and decides whether a
reconnection is worth attempting. Auth and config failures are final until a
manual reload; network and unknown failures are retried.
"""

from __future__ import annotations

import re
from typing import Any

from .errors import ErrorClassification, ErrorKind


AUTH_KEYWORDS: tuple[str, ...] = (
    "unauthorized",
    "401",
    "403",
    "forbidden",
    "invalid token",
    "authentication",
    "access denied",
    "bad credentials",
    "token expired",
)

NETWORK_KEYWORDS: tuple[str, ...] = (
    "connection reset",
    "timeout",
    "network",
    "econnrefused",
    "enotfound",
    "socket hang up",
    "dns",
    "502",
    "503",
    "504",
)

CONFIG_KEYWORDS: tuple[str, ...] = (
    "404",
    "not found",
    "invalid configuration",
    "missing parameter",
)

_ORGANIZATION_NOT_FOUND = re.compile(r"organization.*not found", re.DOTALL)

# Checked in order; the first category with a matching keyword wins.
_RULES: tuple[tuple[ErrorKind, tuple[str, ...], bool, str], ...] = (
    ("auth", AUTH_KEYWORDS, False, "Authentication failed"),
    ("network", NETWORK_KEYWORDS, True, "Network error"),
    ("config", CONFIG_KEYWORDS, False, "Configuration error"),
)


def error_text(error: Any) -> str:
    """Return the textual message of an exception or any other value."""
    if isinstance(error, BaseException):
        text = str(error)
        return text or type(error).__name__
    return str(error)


def classify_error(error: Any) -> ErrorClassification:
    text = error_text(error)
    lowered = text.lower()

    for kind, keywords, should_reconnect, prefix in _RULES:
        matched = any(keyword in lowered for keyword in keywords)
        if not matched and kind == "config":
            matched = bool(_ORGANIZATION_NOT_FOUND.search(lowered))
        if matched:
            return ErrorClassification(
                kind=kind,
                message=f"{prefix}: {text}",
                should_reconnect=should_reconnect,
            )

    return ErrorClassification(
        kind="unknown",
        message=f"Unknown error: {text}",
        should_reconnect=True,
    )
