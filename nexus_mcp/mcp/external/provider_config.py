"""Provider list loading.

A ``.mcp.json`` file with a ``providers`` array wins; otherwise one stdio
provider is configured for each platform whose token is in the environment.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

import structlog
from pydantic import ValidationError

from ...core.config import Settings, get_settings
from .models import ProviderConfig

logger = structlog.get_logger(__name__)


DEFAULT_GITLAB_API_URL = "https://gitlab.com/api/v4"


def providers_from_env(environ: Optional[Mapping[str, str]] = None) -> List[ProviderConfig]:
    env = os.environ if environ is None else environ
    providers: List[ProviderConfig] = []

    if env.get("GITHUB_TOKEN"):
        providers.append(ProviderConfig(
            id="github",
            name="GitHub",
            type="stdio",
            command="npx",
            args=("-y", "@modelcontextprotocol/server-github"),
            env={"GITHUB_TOKEN": env["GITHUB_TOKEN"]},
            auto_update=True,
        ))

    if env.get("GITLAB_TOKEN"):
        providers.append(ProviderConfig(
            id="gitlab",
            name="GitLab",
            type="stdio",
            command="uv",
            args=(
                "run", "--python", "3.13",
                "--with", "git+https://github.com/polaz/gitlab-mcp.git",
                "python", "-m", "gitlab_mcp",
            ),
            env={
                "GITLAB_PERSONAL_ACCESS_TOKEN": env["GITLAB_TOKEN"],
                "GITLAB_API_URL": env.get("GITLAB_URL") or DEFAULT_GITLAB_API_URL,
            },
            auto_update=True,
        ))

    if env.get("AZURE_DEVOPS_PAT"):
        providers.append(ProviderConfig(
            id="azure",
            name="Azure DevOps",
            type="stdio",
            command="npx",
            args=("-y", "@azure-devops/mcp", env.get("AZURE_ORG") or "your-org"),
            env={"AZURE_DEVOPS_PAT": env["AZURE_DEVOPS_PAT"]},
            auto_update=True,
        ))

    return providers


def parse_providers(raw: Any) -> List[ProviderConfig]:
    if not isinstance(raw, Mapping) or not isinstance(raw.get("providers"), list):
        raise ValueError("configuration must be an object with a 'providers' array")
    return [ProviderConfig.model_validate(entry) for entry in raw["providers"]]


def load_provider_configs(
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[ProviderConfig]:
    settings = settings or get_settings()
    path = Path(settings.config_path)

    if path.is_file():
        try:
            providers = parse_providers(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("provider_config_invalid", path=str(path), error=str(e))
        else:
            logger.info("provider_config_loaded", path=str(path), providers=len(providers))
            return providers
    else:
        logger.info("provider_config_missing", path=str(path))

    providers = providers_from_env(environ)
    logger.info("provider_config_from_env", providers=[p.id for p in providers])
    return providers
