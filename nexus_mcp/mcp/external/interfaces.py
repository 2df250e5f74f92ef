from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional


CloseHook = Callable[[], None]
ErrorHook = Callable[[BaseException], None]


class ProviderConnection(ABC):
    """Downstream connection to one provider's MCP server.

    Minimal, transport-agnostic surface: connect → list/call → close.
    ``onclose`` and ``onerror`` are optional hooks the owner installs to hear
    about failures nobody asked for (child process exit, broken stream).
    """

    onclose: Optional[CloseHook] = None
    onerror: Optional[ErrorHook] = None

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport and complete the protocol handshake."""

    @abstractmethod
    async def close(self) -> None:
        """Release the transport. Safe to call more than once."""

    @abstractmethod
    async def list_tools(self) -> list[Any]:
        """Return tool descriptors (pydantic models or plain dicts)."""

    @abstractmethod
    async def list_resources(self) -> list[Any]:
        """Return resource descriptors."""

    @abstractmethod
    async def list_prompts(self) -> list[Any]:
        """Return prompt descriptors."""

    @abstractmethod
    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Invoke a tool by its unprefixed name."""

    @abstractmethod
    async def read_resource(self, uri: str) -> Any:
        """Read a resource by its unprefixed URI."""

    @abstractmethod
    async def get_prompt(self, name: str, arguments: Optional[Mapping[str, str]] = None) -> Any:
        """Fetch a prompt by its unprefixed name."""

    def clear_hooks(self) -> None:
        self.onclose = None
        self.onerror = None
