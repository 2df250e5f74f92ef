from fastapi.testclient import TestClient

from nexus_mcp.__main__ import apply_overrides, parse_args
from nexus_mcp.core.config import Settings
from nexus_mcp.core.error_handler import status_for
from nexus_mcp.main import create_app
from nexus_mcp.mcp.external.errors import ProviderError


def test_lifespan_owns_registry(settings):
    with TestClient(create_app(settings=settings, configs=[])) as client:
        response = client.get("/mcp/health")
        assert response.status_code == 200
        assert response.json() == {"ok": False, "connected": [], "total": 0}
        assert client.get("/").json()["name"] == settings.app_name


def test_status_mapping():
    assert status_for(ProviderError(code="not_found", message="x")) == 404
    assert status_for(ProviderError(code="unavailable", message="x")) == 503
    assert status_for(ProviderError(code="timeout", message="x")) == 504
    assert status_for(ProviderError(code="not_implemented", message="x")) == 501
    assert status_for(ProviderError(code="reload_failed", message="x")) == 500


def test_cli_overrides():
    args = parse_args(["http", "--port", "4000", "--config", "custom.json"])
    settings = apply_overrides(Settings(), args)
    assert args.mode == "http"
    assert settings.http_port == 4000
    assert settings.config_path == "custom.json"


def test_cli_defaults_to_stdio():
    args = parse_args([])
    assert args.mode == "stdio"
    assert apply_overrides(Settings(http_port=3000), args).http_port == 3000
