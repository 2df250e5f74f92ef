from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from ...core.config import Settings, get_settings
from .classifier import error_text
from .credentials import CredentialCheck, all_missing_credentials, has_required_credentials
from .errors import ProviderError, provider_not_found
from .events import EventDispatcher, ProviderEvent
from .metrics import NEXUS_UPSTREAM_LATENCY, NEXUS_UPSTREAM_REQUESTS
from .models import ProviderConfig, ProviderStatus
from .request_queue import RequestKind
from .scheduler import ReconnectionScheduler
from .supervisor import ConnectionFactory, ProviderSupervisor

logger = structlog.get_logger(__name__)


TOOL_DELIMITER = "_"
RESOURCE_DELIMITER = ":"


def split_name(name: str, delimiter: str) -> Tuple[str, str]:
    """Split ``<provider>{delimiter}<rest>`` at the first delimiter."""
    provider_id, _, rest = name.partition(delimiter)
    return provider_id, rest


def stringify_prompt_arguments(arguments: Optional[Mapping[str, Any]]) -> Optional[Dict[str, str]]:
    """Prompt arguments are string-valued on the wire."""
    if arguments is None:
        return None
    converted: Dict[str, str] = {}
    for key, value in arguments.items():
        if isinstance(value, str):
            converted[key] = value
        elif value is None:
            converted[key] = ""
        elif isinstance(value, bool):
            converted[key] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            converted[key] = str(value)
        else:
            converted[key] = json.dumps(value, separators=(",", ":"), default=str)
    return converted


class ProviderRegistry:
    """Provider id -> supervisor map plus call routing and aggregation.

    One instance is built at startup and handed to the upstream server and the
    management API; there is no module-level registry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        events: Optional[EventDispatcher] = None,
        scheduler: Optional[ReconnectionScheduler] = None,
        credential_check: CredentialCheck = has_required_credentials,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.events = events or EventDispatcher()
        self.scheduler = scheduler or ReconnectionScheduler(
            base_delay_ms=self.settings.reconnect_base_delay_ms,
            max_attempts=self.settings.max_reconnect_attempts,
            cooldown_ms=self.settings.reconnect_cooldown_ms,
            events=self.events,
        )
        self._credential_check = credential_check
        self._connection_factory = connection_factory
        self._providers: Dict[str, ProviderSupervisor] = {}
        self._auto_update_task: Optional[asyncio.Task[None]] = None

    # -- membership ----------------------------------------------------------

    def add_provider(self, config: ProviderConfig) -> ProviderSupervisor:
        if config.id in self._providers:
            raise ProviderError(
                code="invalid_request",
                message=f"Provider {config.id} is already registered",
                provider_id=config.id,
            )
        supervisor = ProviderSupervisor(
            config,
            scheduler=self.scheduler,
            events=self.events,
            credential_check=self._credential_check,
            connection_factory=self._connection_factory,
            settings=self.settings,
        )
        self._providers[config.id] = supervisor
        return supervisor

    def get_provider(self, provider_id: str) -> Optional[ProviderSupervisor]:
        return self._providers.get(provider_id)

    def get_all_providers(self) -> List[ProviderSupervisor]:
        return list(self._providers.values())

    def _require(self, provider_id: str) -> ProviderSupervisor:
        supervisor = self._providers.get(provider_id)
        if supervisor is None:
            raise provider_not_found(provider_id)
        return supervisor

    async def initialize_provider(self, config: ProviderConfig) -> ProviderSupervisor:
        supervisor = self._providers.get(config.id) or self.add_provider(config)
        await supervisor.initialize()
        return supervisor

    async def initialize_all(self, configs: Iterable[ProviderConfig]) -> Dict[str, ProviderStatus]:
        """Start every enabled provider concurrently; one failure does not stop the rest."""
        supervisors = []
        for config in configs:
            if not config.enabled:
                logger.info("provider_disabled", provider=config.id)
                continue
            supervisors.append(self._providers.get(config.id) or self.add_provider(config))

        results = await asyncio.gather(*(s.initialize() for s in supervisors), return_exceptions=True)
        statuses: Dict[str, ProviderStatus] = {}
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, BaseException):
                logger.error("provider_initialize_crashed", provider=supervisor.id, error=error_text(result))
                supervisor.handle_failure(result)
            statuses[supervisor.id] = supervisor.status
        self.log_startup_summary()
        return statuses

    def log_startup_summary(self) -> None:
        providers = self.get_all_providers()
        connected = [p for p in providers if p.status is ProviderStatus.CONNECTED]
        for supervisor in providers:
            view = supervisor.status_view()
            logger.info(
                "provider_summary",
                provider=view.id,
                status=view.status.value,
                tools=view.tools,
                resources=view.resources,
                prompts=view.prompts,
                error=view.error,
                hint=view.hint,
            )
        logger.info(
            "providers_ready",
            connected=len(connected),
            total=len(providers),
            tools=len(self.get_all_tools()),
            resources=len(self.get_all_resources()),
            prompts=len(self.get_all_prompts()),
        )

    # -- aggregation ---------------------------------------------------------

    def _connected(self) -> List[ProviderSupervisor]:
        return [p for p in self._providers.values() if p.status is ProviderStatus.CONNECTED]

    def get_all_tools(self) -> List[Dict[str, Any]]:
        return [tool for p in self._connected() for tool in p.state.tools.values()]

    def get_all_resources(self) -> List[Dict[str, Any]]:
        return [resource for p in self._connected() for resource in p.state.resources.values()]

    def get_all_prompts(self) -> List[Dict[str, Any]]:
        return [prompt for p in self._connected() for prompt in p.state.prompts.values()]

    # -- routing -------------------------------------------------------------

    async def _route(self, provider_id: str, operation: str, kind: RequestKind, payload: Mapping[str, Any]) -> Any:
        supervisor = self._require(provider_id)
        start = time.perf_counter()
        try:
            result = await supervisor.submit(kind, payload)
        except Exception as exc:
            NEXUS_UPSTREAM_REQUESTS.labels(provider=provider_id, operation=operation, result="error").inc()
            logger.warning("upstream_request_failed", provider=provider_id, operation=operation, error=error_text(exc))
            raise
        finally:
            NEXUS_UPSTREAM_LATENCY.labels(provider=provider_id, operation=operation).observe(
                time.perf_counter() - start
            )
        NEXUS_UPSTREAM_REQUESTS.labels(provider=provider_id, operation=operation, result="ok").inc()
        return result

    async def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        provider_id, tool_name = split_name(name, TOOL_DELIMITER)
        payload = {"name": tool_name, "arguments": dict(arguments or {})}
        return await self._route(provider_id, "call_tool", "tool_call", payload)

    async def read_resource(self, uri: str) -> Any:
        provider_id, original_uri = split_name(uri, RESOURCE_DELIMITER)
        return await self._route(provider_id, "read_resource", "resource_read", {"uri": original_uri})

    async def get_prompt(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        provider_id, prompt_name = split_name(name, TOOL_DELIMITER)
        payload = {"name": prompt_name, "arguments": stringify_prompt_arguments(arguments)}
        return await self._route(provider_id, "get_prompt", "prompt_fetch", payload)

    # -- lifecycle -----------------------------------------------------------

    async def reload_provider(self, provider_id: str) -> ProviderStatus:
        supervisor = self._require(provider_id)
        logger.info("provider_reload_requested", provider=provider_id)
        return await supervisor.reload()

    async def restart_all_providers(self) -> Dict[str, bool]:
        supervisors = self.get_all_providers()
        logger.info("providers_restarting", count=len(supervisors))
        results = await asyncio.gather(*(s.reload() for s in supervisors), return_exceptions=True)

        outcome: Dict[str, bool] = {}
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, BaseException):
                logger.error("provider_restart_failed", provider=supervisor.id, error=error_text(result))
                outcome[supervisor.id] = False
            else:
                outcome[supervisor.id] = result is ProviderStatus.CONNECTED

        failed = [provider_id for provider_id, ok in outcome.items() if not ok]
        logger.info(
            f"Provider restart complete: {len(outcome) - len(failed)} successful, {len(failed)} failed",
        )
        if failed:
            logger.warning(f"Failed providers: {', '.join(failed)}")
        return outcome

    def handle_provider_failure(self, provider_id: str, error: Any = None) -> None:
        """Single entry point for failure reports; never raises."""
        supervisor = self._providers.get(provider_id)
        if supervisor is None:
            logger.warning("failure_for_unknown_provider", provider=provider_id)
            return
        supervisor.handle_failure(error)

    async def set_provider_updating(self, provider_id: str, updating: bool) -> int:
        return await self._require(provider_id).set_updating(updating)

    def status_report(self) -> Dict[str, Any]:
        return {
            "providers": [
                p.status_view().model_dump(mode="json", by_alias=True) for p in self._providers.values()
            ],
            "missingTokens": all_missing_credentials(),
        }

    # -- auto update ---------------------------------------------------------

    def check_for_updates(self) -> List[str]:
        checked = []
        for supervisor in self._providers.values():
            if supervisor.config.auto_update:
                self.events.publish(
                    ProviderEvent(
                        kind="update_check",
                        provider_id=supervisor.id,
                        status=supervisor.status.value,
                        details={"version": supervisor.config.version},
                    )
                )
                checked.append(supervisor.id)
        return checked

    async def _auto_update_loop(self, interval_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self.check_for_updates()

    def start_auto_update(self, interval_ms: Optional[int] = None) -> None:
        self.stop_auto_update()
        interval = interval_ms or self.settings.auto_update_interval_ms
        self._auto_update_task = asyncio.create_task(self._auto_update_loop(interval), name="provider-auto-update")
        logger.info("auto_update_started", interval_ms=interval)

    def stop_auto_update(self) -> None:
        task, self._auto_update_task = self._auto_update_task, None
        if task is not None and not task.done():
            task.cancel()

    # -- shutdown ------------------------------------------------------------

    async def shutdown(self) -> None:
        logger.info("registry_shutdown", providers=len(self._providers))
        self.stop_auto_update()
        await self.scheduler.shutdown()
        supervisors = list(self._providers.values())
        results = await asyncio.gather(*(s.shutdown() for s in supervisors), return_exceptions=True)
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, BaseException):
                logger.warning("provider_shutdown_failed", provider=supervisor.id, error=error_text(result))
        self._providers.clear()
