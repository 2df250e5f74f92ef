from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping


# Normalized error codes surfaced to proxy callers
ErrorCode = Literal[
    "not_found",
    "unavailable",
    "timeout",
    "reload_failed",
    "not_implemented",
    "shutdown",
    "invalid_request",
]

# Failure categories produced by the classifier
ErrorKind = Literal["auth", "network", "config", "unknown"]


@dataclass(slots=True)
class ProviderError(Exception):
    code: ErrorCode
    message: str
    provider_id: str | None = None
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "provider_id": self.provider_id,
            "details": dict(self.details or {}),
        }


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    kind: ErrorKind
    message: str
    should_reconnect: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "should_reconnect": self.should_reconnect,
        }


def provider_not_found(provider_id: str) -> ProviderError:
    return ProviderError(
        code="not_found",
        message=f"Provider {provider_id} not found",
        provider_id=provider_id,
    )


def provider_unavailable(provider_id: str, status: str) -> ProviderError:
    return ProviderError(
        code="unavailable",
        message=f"Provider {provider_id} not available (status: {status})",
        provider_id=provider_id,
        details={"status": status},
    )
