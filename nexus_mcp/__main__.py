"""Command line entrypoint: ``nexus-mcp [stdio|http]``."""

import argparse
import asyncio
from typing import Optional, Sequence

from dotenv import load_dotenv
import structlog
import uvicorn

from . import __version__
from .core.config import Settings, get_settings
from .core.logging_config import setup_logging
from .main import build_registry, create_app, start_registry, stop_registry
from .mcp.server import run_stdio

logger = structlog.get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="nexus-mcp", description="Unified MCP proxy for DevOps platforms")
    parser.add_argument("mode", nargs="?", choices=("stdio", "http"), default="stdio")
    parser.add_argument("--config", help="Path to provider configuration file (default: .mcp.json)")
    parser.add_argument("--log-level", help="Log level (default: INFO)")
    parser.add_argument("--host", help="Management API bind host (http mode)")
    parser.add_argument("--port", type=int, help="Management API port (http mode)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        "config_path": args.config,
        "log_level": args.log_level,
        "http_host": args.host,
        "http_port": args.port,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    return settings.model_copy(update=overrides) if overrides else settings


async def serve_stdio(settings: Settings) -> None:
    registry = build_registry(settings)
    await start_registry(registry)
    try:
        await run_stdio(registry, settings)
    finally:
        await stop_registry(registry)


def main(argv: Optional[Sequence[str]] = None) -> None:
    load_dotenv()
    args = parse_args(argv)
    settings = apply_overrides(get_settings(), args)
    setup_logging(settings.log_level, settings.log_colors, settings.log_file)
    logger.info("nexus_starting", mode=args.mode, version=__version__)

    if args.mode == "http":
        uvicorn.run(
            create_app(settings=settings),
            host=settings.http_host,
            port=settings.http_port,
            log_config=None,
        )
        return

    try:
        asyncio.run(serve_stdio(settings))
    except KeyboardInterrupt:
        logger.info("nexus_interrupted")


if __name__ == "__main__":
    main()
