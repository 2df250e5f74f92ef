from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from .core.config import Settings, get_settings
from .core.error_handler import setup_error_handlers
from .mcp.external.api import router as mcp_router
from .mcp.external.events import log_listener
from .mcp.external.metrics import metrics_listener
from .mcp.external.models import ProviderConfig
from .mcp.external.provider_config import load_provider_configs
from .mcp.external.registry import ProviderRegistry


logger = structlog.get_logger(__name__)


def build_registry(settings: Optional[Settings] = None) -> ProviderRegistry:
    """Registry with the standard log and metrics listeners attached."""
    registry = ProviderRegistry(settings or get_settings())
    registry.events.subscribe(log_listener)
    registry.events.subscribe(metrics_listener)
    return registry


async def start_registry(
    registry: ProviderRegistry,
    configs: Optional[Iterable[ProviderConfig]] = None,
) -> None:
    settings = registry.settings
    registry.events.start()
    if configs is None:
        configs = load_provider_configs(settings)
    configs = list(configs)
    logger.info("nexus_initializing", providers=len(configs))
    await registry.initialize_all(configs)
    if settings.auto_update_enabled:
        registry.start_auto_update(settings.auto_update_interval_ms)


async def stop_registry(registry: ProviderRegistry) -> None:
    await registry.shutdown()
    await registry.events.stop()


def create_app(
    registry: Optional[ProviderRegistry] = None,
    settings: Optional[Settings] = None,
    configs: Optional[Iterable[ProviderConfig]] = None,
) -> FastAPI:
    """Create the management API.

    A registry passed in is used as is (already started); otherwise one is
    built and started in the lifespan.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = registry is None
        active = registry if registry is not None else build_registry(settings)
        app.state.registry = active
        if owned:
            await start_registry(active, configs)
        try:
            yield
        finally:
            if owned:
                await stop_registry(active)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        redoc_url=None,
        lifespan=lifespan,
    )
    if registry is not None:
        app.state.registry = registry

    setup_error_handlers(app)
    app.include_router(mcp_router)

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
