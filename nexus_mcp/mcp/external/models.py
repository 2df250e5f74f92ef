from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import ErrorClassification, ErrorKind


TransportType = Literal["stdio", "sse", "http"]


class ProviderStatus(str, Enum):
    """Connection state of a provider."""
    STARTING = "starting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    AUTH_FAILED = "auth_failed"


class ProviderConfig(BaseModel):
    """Launch settings for one downstream MCP server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str
    name: str = ""
    type: TransportType = "stdio"

    # stdio
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)

    # network
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    enabled: bool = True
    version: Optional[str] = None
    auto_update: bool = False

    @model_validator(mode="after")
    def _validate(self) -> "ProviderConfig":
        if not self.id:
            raise ValueError("provider 'id' must not be empty")
        if self.type == "stdio" and not self.command:
            raise ValueError("stdio provider requires 'command'")
        if self.type in ("sse", "http") and not self.url:
            raise ValueError(f"{self.type} provider requires 'url'")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class ErrorInfo:
    kind: ErrorKind
    message: str
    should_retry: bool

    @classmethod
    def from_classification(cls, classification: ErrorClassification) -> "ErrorInfo":
        return cls(
            kind=classification.kind,
            message=classification.message,
            should_retry=classification.should_reconnect,
        )


@dataclass
class ReconnectState:
    attempt_count: int = 0
    last_attempt_time: Optional[datetime] = None

    def reset(self) -> None:
        self.attempt_count = 0
        self.last_attempt_time = None


class CapabilitySet:
    """Insertion-ordered map of capability descriptors keyed by namespaced name.

    Descriptors are plain dicts; each must carry the fields listed in
    ``required`` or it is rejected at insertion time.
    """

    def __init__(self, kind: str, required: Tuple[str, ...]) -> None:
        self.kind = kind
        self.required = required
        self._items: Dict[str, Dict[str, Any]] = {}

    def validate(self, descriptor: Mapping[str, Any]) -> None:
        missing = [name for name in self.required if not descriptor.get(name)]
        if missing:
            raise ValueError(f"{self.kind} descriptor is missing {', '.join(missing)}")

    def add(self, key: str, descriptor: Mapping[str, Any]) -> None:
        self.validate(descriptor)
        self._items[key] = dict(descriptor)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._items.get(key)

    def values(self) -> List[Dict[str, Any]]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderState:
    """Mutable record for one configured provider."""

    id: str
    config: ProviderConfig
    status: ProviderStatus = ProviderStatus.STARTING
    tools: CapabilitySet = field(default_factory=lambda: CapabilitySet("tool", ("name",)))
    resources: CapabilitySet = field(default_factory=lambda: CapabilitySet("resource", ("uri", "name")))
    prompts: CapabilitySet = field(default_factory=lambda: CapabilitySet("prompt", ("name",)))
    error: Optional[ErrorInfo] = None
    reconnect: ReconnectState = field(default_factory=ReconnectState)
    is_updating: bool = False
    last_updated: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.last_updated = _utcnow()

    def clear_capabilities(self) -> None:
        self.tools.clear()
        self.resources.clear()
        self.prompts.clear()


class ProviderStatusView(BaseModel):
    """Machine-readable status of one provider (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    name: str
    status: ProviderStatus
    tools: int
    resources: int
    prompts: int
    error: Optional[str] = None
    error_type: Optional[ErrorKind] = None
    should_reconnect: Optional[bool] = None
    reconnect_attempts: int = 0
    is_updating: bool = False
    queued_requests: int = 0
    last_updated: Optional[datetime] = None
    hint: Optional[str] = None
