"""Upstream MCP server exposing every connected provider through one endpoint.

Tool and prompt names are ``<provider>_<name>``, resource URIs are
``<provider>:<uri>``. Three ``nexus_`` management tools are added on top of
the provider tools.
"""

import base64
import json
from typing import Any, Dict, Iterable, List, Optional

import structlog
from mcp import types
from mcp.server import NotificationOptions, Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server

from .. import __version__
from ..core.config import Settings, get_settings
from .external.registry import ProviderRegistry

logger = structlog.get_logger(__name__)


SERVER_NAME = "project-nexus"
MANAGEMENT_PREFIX = "nexus_"


MANAGEMENT_TOOLS: List[types.Tool] = [
    types.Tool(
        name="nexus_reload_provider",
        description="Reload a specific provider (useful for updating to new versions)",
        inputSchema={
            "type": "object",
            "properties": {
                "provider_id": {
                    "type": "string",
                    "description": 'Provider ID to reload (e.g., "github", "gitlab", "azure")',
                },
            },
            "required": ["provider_id"],
        },
    ),
    types.Tool(
        name="nexus_provider_status",
        description="Get connection status, error details and missing credentials for all providers",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="nexus_restart_providers",
        description="Restart all providers and report which ones came back",
        inputSchema={"type": "object", "properties": {}},
    ),
]


def _text(text: str) -> List[types.TextContent]:
    return [types.TextContent(type="text", text=text)]


def _resource_contents(result: Any) -> Iterable[ReadResourceContents]:
    for item in getattr(result, "contents", []):
        text = getattr(item, "text", None)
        if text is not None:
            yield ReadResourceContents(content=text, mime_type=item.mimeType)
        else:
            yield ReadResourceContents(content=base64.b64decode(item.blob), mime_type=item.mimeType)


async def handle_management_tool(registry: ProviderRegistry, name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
    """Run one of the ``nexus_`` tools."""
    if name == "nexus_reload_provider":
        provider_id = (arguments or {}).get("provider_id")
        if not provider_id:
            raise ValueError("provider_id is required")
        status = await registry.reload_provider(provider_id)
        return _text(f"Provider {provider_id} reloaded successfully (status: {status.value})")

    if name == "nexus_provider_status":
        return _text(json.dumps(registry.status_report(), indent=2))

    if name == "nexus_restart_providers":
        outcome = await registry.restart_all_providers()
        ok = [provider_id for provider_id, success in outcome.items() if success]
        failed = [provider_id for provider_id, success in outcome.items() if not success]
        lines = [f"Restarted {len(ok)} of {len(outcome)} providers"]
        if failed:
            lines.append(f"Failed providers: {', '.join(failed)}")
        return _text("\n".join(lines))

    raise ValueError(f"Unknown tool: {name}")


def build_server(registry: ProviderRegistry, name: str = SERVER_NAME) -> Server:
    server = Server(name)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        tools = [types.Tool.model_validate(tool) for tool in registry.get_all_tools()]
        return tools + MANAGEMENT_TOOLS

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> Any:
        if name.startswith(MANAGEMENT_PREFIX):
            return await handle_management_tool(registry, name, arguments or {})

        result = await registry.call_tool(name, arguments or {})
        if getattr(result, "isError", False):
            message = " ".join(getattr(c, "text", "") for c in result.content).strip()
            raise RuntimeError(message or f"Tool {name} failed")
        content = list(getattr(result, "content", []))
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return content, structured
        return content

    @server.list_resources()
    async def handle_list_resources() -> List[types.Resource]:
        return [types.Resource.model_validate(resource) for resource in registry.get_all_resources()]

    @server.read_resource()
    async def handle_read_resource(uri: Any) -> Iterable[ReadResourceContents]:
        result = await registry.read_resource(str(uri))
        return list(_resource_contents(result))

    @server.list_prompts()
    async def handle_list_prompts() -> List[types.Prompt]:
        return [types.Prompt.model_validate(prompt) for prompt in registry.get_all_prompts()]

    @server.get_prompt()
    async def handle_get_prompt(name: str, arguments: Optional[Dict[str, str]]) -> types.GetPromptResult:
        return await registry.get_prompt(name, arguments)

    return server


async def run_stdio(registry: ProviderRegistry, settings: Optional[Settings] = None) -> None:
    """Serve MCP over stdin/stdout until the client goes away."""
    settings = settings or get_settings()
    server = build_server(registry)
    logger.info("upstream_server_starting", name=SERVER_NAME, transport="stdio")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            InitializationOptions(
                server_name=SERVER_NAME,
                server_version=settings.app_version or __version__,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={},
                ),
            ),
        )
