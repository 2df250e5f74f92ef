from typing import Any, Dict, List, Optional

import pytest

from nexus_mcp.core.config import Settings
from nexus_mcp.mcp.external.interfaces import ProviderConnection
from nexus_mcp.mcp.external.models import ProviderConfig


class FakeConnection(ProviderConnection):
    """In-memory downstream server."""

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        resources: Optional[List[Dict[str, Any]]] = None,
        prompts: Optional[List[Dict[str, Any]]] = None,
        connect_error: Optional[BaseException] = None,
    ):
        self.tools = tools if tools is not None else [{"name": "create_issue", "description": "Create an issue", "inputSchema": {"type": "object"}}]
        self.resources = resources if resources is not None else [{"uri": "repo://nexus/readme", "name": "README"}]
        self.prompts = prompts if prompts is not None else [{"name": "summarize", "description": "Summarize"}]
        self.connect_error = connect_error
        self.prompt_error: Optional[BaseException] = None
        self.connected = False
        self.close_calls = 0
        self.calls: List[tuple] = []

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self):
        self.close_calls += 1
        self.connected = False

    async def list_tools(self):
        return list(self.tools)

    async def list_resources(self):
        return list(self.resources)

    async def list_prompts(self):
        if self.prompt_error is not None:
            raise self.prompt_error
        return list(self.prompts)

    async def call_tool(self, name, arguments):
        self.calls.append(("tool", name, dict(arguments)))
        if name == "explode":
            raise RuntimeError("tool exploded")
        return {"tool": name, "arguments": dict(arguments)}

    async def read_resource(self, uri):
        self.calls.append(("resource", uri))
        return {"uri": uri, "text": "hello"}

    async def get_prompt(self, name, arguments=None):
        self.calls.append(("prompt", name, arguments))
        return {"prompt": name, "arguments": arguments}


class ConnectionFactory:
    """Hands out FakeConnections; ``plan`` maps provider id to a list consumed per connect."""

    def __init__(self, plan: Optional[Dict[str, List[FakeConnection]]] = None):
        self.plan = plan or {}
        self.created: Dict[str, List[FakeConnection]] = {}

    def __call__(self, config: ProviderConfig) -> FakeConnection:
        queued = self.plan.get(config.id)
        connection = queued.pop(0) if queued else FakeConnection()
        self.created.setdefault(config.id, []).append(connection)
        return connection


def make_config(provider_id: str = "test", **kwargs) -> ProviderConfig:
    kwargs.setdefault("name", provider_id.title())
    kwargs.setdefault("command", "fake-server")
    return ProviderConfig(id=provider_id, **kwargs)


@pytest.fixture
def settings():
    return Settings(
        reload_debounce_ms=0,
        request_timeout_ms=30_000,
        reconnect_base_delay_ms=5_000,
        max_reconnect_attempts=3,
        reconnect_cooldown_ms=30_000,
        auto_update_enabled=False,
        log_colors=False,
    )


@pytest.fixture
def factory():
    return ConnectionFactory()


def allow_all(config):
    return True
