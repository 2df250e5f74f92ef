"""Downstream connections built on the ``mcp`` client SDK.

Each connection owns one runner task that enters the transport and the
``ClientSession`` contexts and keeps them open until :meth:`close`. anyio
cancel scopes must be exited by the task that entered them, so connect and
close never touch the contexts directly; they only signal the runner.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, AsyncContextManager, Awaitable, Mapping, Optional, TypeVar

import anyio
import structlog
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from pydantic import AnyUrl

from .errors import ProviderError
from .interfaces import ProviderConnection
from .models import ProviderConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Raised by anyio streams once the peer has gone away
_STREAM_CLOSED = (anyio.ClosedResourceError, anyio.EndOfStream, anyio.BrokenResourceError)


def _unwrap(exc: BaseException) -> BaseException:
    """Return the first leaf of a (possibly nested) exception group."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class SessionConnection(ProviderConnection):
    """Base for connections speaking MCP over a ``ClientSession``."""

    transport = "session"

    def __init__(self, config: ProviderConfig, *, client_name: str = "nexus-proxy", client_version: str = "1.0.0") -> None:
        self.config = config
        self._client_info = types.Implementation(name=f"{client_name}-{config.id}", version=client_version)
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._closing: asyncio.Event | None = None

    def _open_transport(self) -> AsyncContextManager[Any]:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        if self._session is not None:
            return

        loop = asyncio.get_running_loop()
        ready: asyncio.Future[ClientSession] = loop.create_future()
        closing = asyncio.Event()
        self._closing = closing
        self._runner = asyncio.create_task(self._run(ready, closing), name=f"mcp-{self.transport}-{self.config.id}")
        try:
            self._session = await ready
        except BaseException:
            await self.close()
            raise
        logger.debug("transport_connected", provider=self.config.id, transport=self.transport)

    async def _run(self, ready: asyncio.Future[ClientSession], closing: asyncio.Event) -> None:
        ended = asyncio.Event()
        try:
            async with self._open_transport() as streams:
                read_stream, write_stream = streams[0], streams[1]
                relay_send, relay_receive = anyio.create_memory_object_stream(0)
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self._relay, read_stream, relay_send, ended, closing)
                    async with ClientSession(
                        relay_receive,
                        write_stream,
                        message_handler=self._on_message,
                        client_info=self._client_info,
                    ) as session:
                        await session.initialize()
                        ready.set_result(session)
                        await closing.wait()
                    tg.cancel_scope.cancel()
            if ended.is_set() and self._closing is closing:
                logger.warning("transport_closed_unexpectedly", provider=self.config.id, transport=self.transport)
                self._session = None
                self._notify_close()
        except Exception as exc:  # noqa: BLE001 - the runner reports, connect/close decide
            cause = _unwrap(exc)
            if not ready.done():
                ready.set_exception(cause)
            elif not closing.is_set():
                logger.warning("transport_failed", provider=self.config.id, error=str(cause) or type(cause).__name__)
                self._notify_error(cause)
            else:
                logger.debug("transport_close_error", provider=self.config.id, error=str(cause))
        finally:
            if not ready.done():
                ready.set_exception(ConnectionError(f"Connection to {self.config.id} closed during handshake"))

    async def _relay(
        self,
        source: Any,
        sink: Any,
        ended: asyncio.Event,
        closing: asyncio.Event,
    ) -> None:
        """Forward server messages to the session and wake the runner when the server goes away."""
        async with sink:
            try:
                async for message in source:
                    await sink.send(message)
            except _STREAM_CLOSED:
                pass
        ended.set()
        closing.set()

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            self._notify_error(message)

    def _notify_error(self, error: BaseException) -> None:
        hook = self.onerror
        if hook is None:
            return
        try:
            hook(error)
        except Exception:  # noqa: BLE001
            logger.exception("transport_error_hook_failed", provider=self.config.id)

    def _notify_close(self) -> None:
        hook = self.onclose
        if hook is None:
            return
        try:
            hook()
        except Exception:  # noqa: BLE001
            logger.exception("transport_close_hook_failed", provider=self.config.id)

    async def close(self) -> None:
        runner, closing, session = self._runner, self._closing, self._session
        self._session = None
        self._runner = None
        self._closing = None
        if closing is not None:
            closing.set()
        if runner is None or runner.done():
            return
        if session is None:
            # still in the handshake, nothing is waiting on ``closing`` yet
            runner.cancel()
        await asyncio.wait({runner})

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ProviderError(
                code="unavailable",
                message=f"Client not initialized for provider {self.config.id}",
                provider_id=self.config.id,
            )
        return self._session

    async def _guard(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except _STREAM_CLOSED:
            self._notify_close()
            raise

    async def list_tools(self) -> list[Any]:
        result = await self._guard(self._require_session().list_tools())
        return list(result.tools)

    async def list_resources(self) -> list[Any]:
        result = await self._guard(self._require_session().list_resources())
        return list(result.resources)

    async def list_prompts(self) -> list[Any]:
        result = await self._guard(self._require_session().list_prompts())
        return list(result.prompts)

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        return await self._guard(self._require_session().call_tool(name, arguments=dict(arguments)))

    async def read_resource(self, uri: str) -> Any:
        return await self._guard(self._require_session().read_resource(AnyUrl(uri)))

    async def get_prompt(self, name: str, arguments: Optional[Mapping[str, str]] = None) -> Any:
        return await self._guard(
            self._require_session().get_prompt(name, arguments=dict(arguments) if arguments is not None else None)
        )


class StdioConnection(SessionConnection):
    """Spawns the provider's MCP server as a child process."""

    transport = "stdio"

    def server_parameters(self) -> StdioServerParameters:
        env = {key: value for key, value in {**os.environ, **self.config.env}.items() if isinstance(value, str)}
        return StdioServerParameters(
            command=self.config.command or "",
            args=list(self.config.args),
            env=env,
        )

    def _open_transport(self) -> AsyncContextManager[Any]:
        params = self.server_parameters()
        logger.info("spawning_provider", provider=self.config.id, command=params.command, args=" ".join(params.args))
        return stdio_client(params)


class SseConnection(SessionConnection):
    """Connects to a provider's MCP server over a server-sent-events stream."""

    transport = "sse"

    def _open_transport(self) -> AsyncContextManager[Any]:
        return sse_client(self.config.url or "", headers=self.config.headers or None)


def create_connection(
    config: ProviderConfig,
    *,
    client_name: str = "nexus-proxy",
    client_version: str = "1.0.0",
) -> ProviderConnection:
    """Build the connection matching ``config.type``.

    ``http`` is a recognised type without a client yet and fails immediately.
    """
    if config.type == "stdio":
        return StdioConnection(config, client_name=client_name, client_version=client_version)
    if config.type == "sse":
        return SseConnection(config, client_name=client_name, client_version=client_version)
    if config.type == "http":
        raise ProviderError(
            code="not_implemented",
            message="HTTP transport not yet implemented",
            provider_id=config.id,
        )
    raise ProviderError(
        code="invalid_request",
        message=f"Unknown transport: {config.type}",
        provider_id=config.id,
    )
