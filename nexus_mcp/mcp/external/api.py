from __future__ import annotations

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from .classifier import error_text
from .errors import ProviderError, provider_not_found
from .models import ProviderStatus
from .registry import ProviderRegistry


router = APIRouter(prefix="/mcp", tags=["MCP Proxy"])


def get_registry(request: Request) -> ProviderRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise ProviderError(code="unavailable", message="Provider registry is not running")
    return registry


def _jsonable(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return result


class ToolCallRequest(BaseModel):
    """Request model for tool calls (name is provider-prefixed)."""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ResourceReadRequest(BaseModel):
    uri: str


class PromptGetRequest(BaseModel):
    name: str
    arguments: Optional[Dict[str, Any]] = None


class CallResponse(BaseModel):
    """Response model for proxied calls."""
    ok: bool
    content: Any = None
    error: Optional[str] = None


class UpdatingRequest(BaseModel):
    updating: bool


class ProviderActionResponse(BaseModel):
    provider: str
    status: str
    message: str
    settled_requests: Optional[int] = None


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Status of every provider plus missing-token hints."""
    return registry.status_report()


@router.post("/providers/restart", response_model=Dict[str, bool])
async def restart_providers(registry: ProviderRegistry = Depends(get_registry)):
    """Reload all providers."""
    return await registry.restart_all_providers()


@router.get("/providers/{provider_id}")
async def get_provider(provider_id: str, registry: ProviderRegistry = Depends(get_registry)) -> Dict[str, Any]:
    supervisor = registry.get_provider(provider_id)
    if supervisor is None:
        raise provider_not_found(provider_id)
    return supervisor.status_view().model_dump(mode="json", by_alias=True)


@router.post("/providers/{provider_id}/reload", response_model=ProviderActionResponse)
async def reload_provider(provider_id: str, registry: ProviderRegistry = Depends(get_registry)):
    """Reload one provider."""
    status = await registry.reload_provider(provider_id)
    return ProviderActionResponse(
        provider=provider_id,
        status=status.value,
        message=f"Provider {provider_id} reloaded",
    )


@router.post("/providers/{provider_id}/updating", response_model=ProviderActionResponse)
async def set_provider_updating(
    provider_id: str,
    request: UpdatingRequest,
    registry: ProviderRegistry = Depends(get_registry),
):
    """Pause (queue) or resume (replay) calls for one provider."""
    settled = await registry.set_provider_updating(provider_id, request.updating)
    supervisor = registry.get_provider(provider_id)
    return ProviderActionResponse(
        provider=provider_id,
        status=supervisor.status.value if supervisor else "unknown",
        message=f"Provider {provider_id} updating={request.updating}",
        settled_requests=settled,
    )


@router.get("/tools", response_model=List[Dict[str, Any]])
async def list_tools(registry: ProviderRegistry = Depends(get_registry)):
    return registry.get_all_tools()


@router.get("/resources", response_model=List[Dict[str, Any]])
async def list_resources(registry: ProviderRegistry = Depends(get_registry)):
    return registry.get_all_resources()


@router.get("/prompts", response_model=List[Dict[str, Any]])
async def list_prompts(registry: ProviderRegistry = Depends(get_registry)):
    return registry.get_all_prompts()


@router.post("/tools/call", response_model=CallResponse)
async def call_tool(request: ToolCallRequest, registry: ProviderRegistry = Depends(get_registry)):
    """Call a provider tool. Routing errors map to HTTP status; tool errors come back as ok=false."""
    try:
        result = await registry.call_tool(request.name, request.arguments)
    except ProviderError:
        raise
    except Exception as e:
        return CallResponse(ok=False, error=error_text(e))
    return CallResponse(ok=True, content=_jsonable(result))


@router.post("/resources/read", response_model=CallResponse)
async def read_resource(request: ResourceReadRequest, registry: ProviderRegistry = Depends(get_registry)):
    try:
        result = await registry.read_resource(request.uri)
    except ProviderError:
        raise
    except Exception as e:
        return CallResponse(ok=False, error=error_text(e))
    return CallResponse(ok=True, content=_jsonable(result))


@router.post("/prompts/get", response_model=CallResponse)
async def get_prompt(request: PromptGetRequest, registry: ProviderRegistry = Depends(get_registry)):
    try:
        result = await registry.get_prompt(request.name, request.arguments)
    except ProviderError:
        raise
    except Exception as e:
        return CallResponse(ok=False, error=error_text(e))
    return CallResponse(ok=True, content=_jsonable(result))


@router.get("/health", response_model=Dict[str, Any])
async def health(registry: ProviderRegistry = Depends(get_registry)):
    """Summary health: ok when at least one provider is connected."""
    providers = registry.get_all_providers()
    connected = [p.id for p in providers if p.status is ProviderStatus.CONNECTED]
    return {
        "ok": bool(connected),
        "connected": connected,
        "total": len(providers),
    }
