"""Credential requirements for the known DevOps providers.

The connection supervisor calls :func:`has_required_credentials` before it
spawns anything, so a provider with a missing token goes straight to
``auth_failed`` instead of looping through reconnect attempts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .models import ProviderConfig


PLACEHOLDER_VALUES = frozenset({"test_token", "your_token_here"})
MIN_TOKEN_LENGTH = 5


@dataclass(frozen=True)
class RequiredVariable:
    name: str
    secret: bool = True

    def is_satisfied(self, value: Optional[str]) -> bool:
        if not value or not value.strip():
            return False
        if not self.secret:
            return True
        return value not in PLACEHOLDER_VALUES and len(value) >= MIN_TOKEN_LENGTH


@dataclass(frozen=True)
class ProviderRequirements:
    variables: Tuple[RequiredVariable, ...]
    hint: str


PROVIDER_REQUIREMENTS: Dict[str, ProviderRequirements] = {
    "github": ProviderRequirements(
        variables=(RequiredVariable("GITHUB_TOKEN"),),
        hint="Set GITHUB_TOKEN environment variable with your GitHub personal access token",
    ),
    "gitlab": ProviderRequirements(
        variables=(RequiredVariable("GITLAB_TOKEN"),),
        hint="Set GITLAB_TOKEN environment variable with your GitLab personal access token",
    ),
    "azure": ProviderRequirements(
        variables=(RequiredVariable("AZURE_DEVOPS_PAT"), RequiredVariable("AZURE_ORG", secret=False)),
        hint="Set environment variables: {missing}",
    ),
}

CredentialCheck = Callable[[ProviderConfig], bool]


def _lookup_env(config: ProviderConfig | None, environ: Mapping[str, str] | None) -> Mapping[str, str]:
    base = dict(os.environ if environ is None else environ)
    if config is not None:
        base.update(config.env)
    return base


def missing_variables(
    provider_id: str,
    environ: Mapping[str, str] | None = None,
    config: ProviderConfig | None = None,
) -> List[str]:
    requirements = PROVIDER_REQUIREMENTS.get(provider_id)
    if requirements is None:
        return []
    env = _lookup_env(config, environ)
    return [var.name for var in requirements.variables if not var.is_satisfied(env.get(var.name))]


def has_required_credentials(config: ProviderConfig, environ: Mapping[str, str] | None = None) -> bool:
    """True when every required variable for ``config.id`` is present and usable.

    Providers without a requirements entry need no credentials.
    """
    return not missing_variables(config.id, environ, config)


def missing_credentials_hint(
    provider_id: str,
    environ: Mapping[str, str] | None = None,
    config: ProviderConfig | None = None,
) -> Optional[str]:
    missing = missing_variables(provider_id, environ, config)
    if not missing:
        return None
    return PROVIDER_REQUIREMENTS[provider_id].hint.format(missing=", ".join(missing))


def all_missing_credentials(environ: Mapping[str, str] | None = None) -> Dict[str, str]:
    hints: Dict[str, str] = {}
    for provider_id in PROVIDER_REQUIREMENTS:
        hint = missing_credentials_hint(provider_id, environ)
        if hint:
            hints[provider_id] = hint
    return hints
