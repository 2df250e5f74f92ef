from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field
from pydantic import ConfigDict

from .. import __version__


class Settings(BaseSettings):
    model_config = ConfigDict(env_prefix="NEXUS_", extra="ignore")
    app_name: str = Field(default="Project Nexus MCP Proxy")
    app_version: str = Field(default=__version__)

    # Provider configuration file (.mcp.json style, "providers": [...])
    config_path: str = ".mcp.json"

    # Request queue
    request_timeout_ms: int = 30_000

    # Reconnection policy
    reconnect_base_delay_ms: int = 5_000
    max_reconnect_attempts: int = 3
    reconnect_cooldown_ms: int = 30_000

    # Lifecycle
    reload_debounce_ms: int = 1_000
    auto_update_interval_ms: int = 60_000
    auto_update_enabled: bool = True

    # Downstream client identity (sent as "<client_name>-<provider id>")
    client_name: str = "nexus-proxy"
    client_version: str = Field(default=__version__)

    # Logging (always stderr; stdout carries the stdio MCP protocol)
    log_level: str = "INFO"
    log_colors: bool = True
    log_file: str | None = None

    # Management API
    http_host: str = "127.0.0.1"
    http_port: int = 3000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
