"""Lifecycle of a single provider connection.

State machine::

    starting -> connected -> disconnected | error | auth_failed
    error -> starting            (scheduled or manual reconnect)
    auth_failed                  (terminal until reload)

Transport hooks, scheduled reconnects and manual reloads all go through the
same methods here, and every lifecycle operation starts by cancelling the
provider's outstanding reconnect timer.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from ...core.config import Settings, get_settings
from .classifier import classify_error, error_text
from .credentials import CredentialCheck, has_required_credentials, missing_credentials_hint
from .errors import ErrorClassification, ProviderError, provider_unavailable
from .events import EventDispatcher, EventKind, ProviderEvent
from .interfaces import ProviderConnection
from .models import (
    CapabilitySet,
    ErrorInfo,
    ProviderConfig,
    ProviderState,
    ProviderStatus,
    ProviderStatusView,
    ReconnectState,
)
from .request_queue import QueuedRequest, RequestKind, RequestQueue
from .scheduler import ReconnectionScheduler
from .transports import create_connection

logger = structlog.get_logger(__name__)


ConnectionFactory = Callable[[ProviderConfig], ProviderConnection]

MISSING_CREDENTIALS_MESSAGE = "Required authentication tokens are missing"
PROCESS_TERMINATED_MESSAGE = "Provider process terminated unexpectedly"


def _descriptor(item: Any) -> Dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(item)


class ProviderSupervisor:
    """Owns the connection, capability maps and request queue of one provider."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        scheduler: ReconnectionScheduler,
        events: Optional[EventDispatcher] = None,
        credential_check: CredentialCheck = has_required_credentials,
        connection_factory: Optional[ConnectionFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.config = config
        self.state = ProviderState(id=config.id, config=config)
        self.queue = RequestQueue(config.id, settings.request_timeout_ms)
        self.scheduler = scheduler
        self.events = events
        self._credential_check = credential_check
        self._connection_factory = connection_factory or partial(
            create_connection,
            client_name=settings.client_name,
            client_version=settings.client_version,
        )
        self._reload_debounce_ms = settings.reload_debounce_ms
        self._connection: Optional[ProviderConnection] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def status(self) -> ProviderStatus:
        return self.state.status

    @property
    def is_updating(self) -> bool:
        return self.state.is_updating

    @property
    def reconnect_state(self) -> ReconnectState:
        return self.state.reconnect

    def _set_status(self, status: ProviderStatus) -> None:
        self.state.status = status
        self.state.touch()

    def _publish(self, kind: EventKind, message: Optional[str] = None, **details: Any) -> None:
        if self.events is None:
            return
        self.events.publish(
            ProviderEvent(
                kind=kind,
                provider_id=self.id,
                status=self.state.status.value,
                message=message,
                details=details,
            )
        )

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> ProviderStatus:
        """Connect and load capabilities. Never raises for connection failures."""
        self._set_status(ProviderStatus.STARTING)

        if not self._credential_check(self.config):
            self.state.error = ErrorInfo(kind="auth", message=MISSING_CREDENTIALS_MESSAGE, should_retry=False)
            self._set_status(ProviderStatus.AUTH_FAILED)
            logger.warning(
                "provider_credentials_missing",
                provider=self.id,
                hint=missing_credentials_hint(self.id, config=self.config),
            )
            self._publish("auth_failed", MISSING_CREDENTIALS_MESSAGE)
            return self.state.status

        logger.info("provider_starting", provider=self.id, transport=self.config.type)
        try:
            connection = self._connection_factory(self.config)
            self._connection = connection
            await connection.connect()
        except Exception as exc:  # noqa: BLE001 - classified below
            await self._discard_connection()
            return self._connect_failed(exc)

        await self._load_capabilities(connection)
        self.state.error = None
        self.state.reconnect.attempt_count = 0
        self._set_status(ProviderStatus.CONNECTED)
        connection.onclose = self._on_transport_close
        connection.onerror = self._on_transport_error
        self._publish(
            "connected",
            tools=len(self.state.tools),
            resources=len(self.state.resources),
            prompts=len(self.state.prompts),
        )
        return self.state.status

    def _connect_failed(self, exc: BaseException) -> ProviderStatus:
        classification = classify_error(exc)
        self.state.error = ErrorInfo.from_classification(classification)
        logger.error(
            "provider_connect_failed",
            provider=self.id,
            kind=classification.kind,
            error=classification.message,
            should_reconnect=classification.should_reconnect,
        )
        if classification.kind == "auth":
            self.scheduler.cancel_timer(self.id)
            self._set_status(ProviderStatus.AUTH_FAILED)
            self._publish("auth_failed", classification.message)
            return self.state.status

        self._set_status(ProviderStatus.ERROR)
        self._publish("error", classification.message, error_kind=classification.kind)
        if classification.should_reconnect:
            self.scheduler.schedule(self)
        else:
            self.scheduler.cancel_timer(self.id)
        return self.state.status

    async def _load_capabilities(self, connection: ProviderConnection) -> None:
        self.state.clear_capabilities()
        loaders = (
            ("tools", connection.list_tools, self._add_tool),
            ("resources", connection.list_resources, self._add_resource),
            ("prompts", connection.list_prompts, self._add_prompt),
        )
        for kind, load, add in loaders:
            try:
                items = await load()
            except Exception as exc:  # noqa: BLE001 - a provider without prompts is still usable
                logger.warning("capability_load_failed", provider=self.id, kind=kind, error=error_text(exc))
                continue
            for item in items:
                try:
                    add(_descriptor(item))
                except (ValueError, TypeError) as exc:
                    logger.warning("capability_rejected", provider=self.id, kind=kind, error=str(exc))
            logger.debug("capabilities_loaded", provider=self.id, kind=kind, count=len(items))

    def _label(self, text: Optional[str]) -> str:
        return f"[{self.config.display_name}] {text or ''}"

    def _add_named(self, target: CapabilitySet, raw: Dict[str, Any]) -> None:
        target.validate(raw)
        key = f"{self.id}_{raw['name']}"
        target.add(key, {**raw, "name": key, "description": self._label(raw.get("description"))})

    def _add_tool(self, raw: Dict[str, Any]) -> None:
        self._add_named(self.state.tools, raw)

    def _add_prompt(self, raw: Dict[str, Any]) -> None:
        self._add_named(self.state.prompts, raw)

    def _add_resource(self, raw: Dict[str, Any]) -> None:
        self.state.resources.validate(raw)
        key = f"{self.id}:{raw['uri']}"
        self.state.resources.add(key, {**raw, "uri": key, "name": self._label(raw["name"])})

    async def _discard_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        connection.clear_hooks()
        try:
            await connection.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("provider_close_failed", provider=self.id, error=error_text(exc))

    async def disconnect(self) -> None:
        """Cancel pending reconnects, close the transport and mark disconnected."""
        await self.scheduler.cancel_and_wait(self.id)
        await self._discard_connection()
        previous = self.state.status
        self._set_status(ProviderStatus.DISCONNECTED)
        if previous is not ProviderStatus.DISCONNECTED:
            logger.info("provider_disconnect", provider=self.id, previous=previous.value)
            self._publish("disconnected")

    async def attempt_reconnect(self) -> ProviderStatus:
        """Run by the scheduler when a reconnect timer fires."""
        reconnect = self.state.reconnect
        reconnect.attempt_count += 1
        reconnect.last_attempt_time = datetime.now(timezone.utc)
        logger.info("provider_reconnecting", provider=self.id, attempt=reconnect.attempt_count)
        self._set_status(ProviderStatus.STARTING)
        await self._discard_connection()
        return await self.initialize()

    async def reload(self) -> ProviderStatus:
        """Tear down and start again from a clean slate.

        Calls arriving meanwhile are queued and replayed once the provider is
        connected again; if it does not come back they are rejected.
        """
        self.state.is_updating = True
        logger.info("provider_reloading", provider=self.id)
        try:
            await self.disconnect()
            self.state.reconnect.reset()
            self.state.error = None
            await asyncio.sleep(self._reload_debounce_ms / 1000)
            status = await self.initialize()
        except asyncio.CancelledError:
            self.queue.reject_all(self._reload_failed("reload cancelled"))
            raise
        except Exception as exc:
            self.queue.reject_all(self._reload_failed(error_text(exc)))
            raise
        finally:
            self.state.is_updating = False

        if status is ProviderStatus.CONNECTED:
            await self.drain_queue()
        else:
            cause = self.state.error.message if self.state.error else f"status {status.value}"
            self.queue.reject_all(self._reload_failed(cause))
        logger.info("provider_reloaded", provider=self.id, status=status.value)
        return status

    def _reload_failed(self, cause: str) -> ProviderError:
        return ProviderError(code="reload_failed", message=f"Provider reload failed: {cause}", provider_id=self.id)

    async def shutdown(self) -> None:
        self.queue.reject_all(
            ProviderError(code="shutdown", message=f"Provider {self.id} is shutting down", provider_id=self.id)
        )
        self.state.is_updating = False
        await self.disconnect()

    # -- failures ------------------------------------------------------------

    def handle_failure(self, error: Any = None) -> Optional[ErrorClassification]:
        """Classify a failure, update state and maybe schedule a reconnect.

        Safe to call from transport hooks: it never raises.
        """
        try:
            if self.state.status is ProviderStatus.AUTH_FAILED:
                logger.debug("failure_ignored_auth_failed", provider=self.id)
                return None

            if error is None:
                classification = ErrorClassification(
                    kind="network",
                    message=PROCESS_TERMINATED_MESSAGE,
                    should_reconnect=True,
                )
            else:
                classification = classify_error(error)

            self.state.error = ErrorInfo.from_classification(classification)
            if classification.kind == "auth":
                self._set_status(ProviderStatus.AUTH_FAILED)
                self._publish("auth_failed", classification.message)
            else:
                self._set_status(ProviderStatus.ERROR)
                self._publish("error", classification.message, error_kind=classification.kind)

            if classification.should_reconnect:
                self.scheduler.schedule(self)
            else:
                self.scheduler.cancel_timer(self.id)
                logger.error(
                    "provider_failure_terminal",
                    provider=self.id,
                    kind=classification.kind,
                    error=classification.message,
                )
            return classification
        except Exception:  # noqa: BLE001
            logger.exception("provider_failure_handling_failed", provider=self.id)
            return None

    def _on_transport_close(self) -> None:
        if self.state.status is not ProviderStatus.CONNECTED:
            return
        logger.warning("provider_disconnected_unexpectedly", provider=self.id)
        self._set_status(ProviderStatus.DISCONNECTED)
        self._publish("disconnected")
        self.handle_failure()

    def _on_transport_error(self, error: BaseException) -> None:
        logger.error("provider_transport_error", provider=self.id, error=error_text(error))
        self.handle_failure(error)

    # -- calls ---------------------------------------------------------------

    def _require_connection(self) -> ProviderConnection:
        if self._connection is None or self.state.status is not ProviderStatus.CONNECTED:
            raise provider_unavailable(self.id, self.state.status.value)
        return self._connection

    async def dispatch(self, kind: RequestKind, payload: Mapping[str, Any]) -> Any:
        connection = self._require_connection()
        if kind == "tool_call":
            return await connection.call_tool(payload["name"], payload.get("arguments") or {})
        if kind == "resource_read":
            return await connection.read_resource(payload["uri"])
        if kind == "prompt_fetch":
            return await connection.get_prompt(payload["name"], payload.get("arguments"))
        raise ProviderError(code="invalid_request", message=f"Unknown request kind: {kind}", provider_id=self.id)

    async def submit(self, kind: RequestKind, payload: Mapping[str, Any]) -> Any:
        """Run a call now, queue it while updating, or fail if unavailable."""
        if self.state.is_updating:
            return await self.queue.enqueue(kind, payload)
        if self.state.status is not ProviderStatus.CONNECTED:
            raise provider_unavailable(self.id, self.state.status.value)
        return await self.dispatch(kind, payload)

    async def _replay(self, entry: QueuedRequest) -> Any:
        return await self.dispatch(entry.kind, entry.payload)

    async def drain_queue(self) -> int:
        return await self.queue.drain(self._replay)

    async def set_updating(self, updating: bool) -> int:
        """Enter or leave the updating sub-state.

        Leaving it replays the queue when connected and rejects it otherwise.
        Returns the number of queued calls that were settled.
        """
        self.state.is_updating = updating
        self.state.touch()
        logger.info("provider_updating_changed", provider=self.id, updating=updating)
        if updating:
            return 0
        if self.state.status is ProviderStatus.CONNECTED:
            return await self.drain_queue()
        return self.queue.reject_all(provider_unavailable(self.id, self.state.status.value))

    # -- status --------------------------------------------------------------

    def status_view(self) -> ProviderStatusView:
        state = self.state
        error = state.error
        hint = None
        if state.status is ProviderStatus.AUTH_FAILED:
            hint = missing_credentials_hint(self.id, config=self.config)
        return ProviderStatusView(
            id=self.id,
            name=self.config.display_name,
            status=state.status,
            tools=len(state.tools),
            resources=len(state.resources),
            prompts=len(state.prompts),
            error=error.message if error else None,
            error_type=error.kind if error else None,
            should_reconnect=error.should_retry if error else None,
            reconnect_attempts=state.reconnect.attempt_count,
            is_updating=state.is_updating,
            queued_requests=len(self.queue),
            last_updated=state.last_updated,
            hint=hint,
        )
