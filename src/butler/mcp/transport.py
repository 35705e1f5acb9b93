"""Transport boundary between the registry and capability-server processes.

The registry only depends on :class:`TransportAdapter`. The concrete
:class:`McpStdioTransport` spawns each server as a child process and speaks
the Model Context Protocol over stdio using the ``mcp`` SDK.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, TypeVar

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation
from pydantic import AnyUrl

from ..errors import TransportError, error_message
from .models import Resource, ResourceContent, Tool, ToolResult

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
CLIENT_NAME = "butler"
CLIENT_VERSION = "0.1.0"


class TransportAdapter(Protocol):
    """Request/response primitives for talking to one named server."""

    async def connect(
        self,
        name: str,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        ...

    async def list_tools(self, name: str) -> Sequence[Tool]:
        ...

    async def list_resources(self, name: str) -> Sequence[Resource]:
        ...

    async def call_tool(self, name: str, tool: str, arguments: Mapping[str, Any]) -> Any:
        ...

    async def read_resource(self, name: str, uri: str) -> Any:
        ...

    async def disconnect(self, name: str) -> None:
        ...


# -----------------------------------------------------------------------------
# SDK payload conversion
# -----------------------------------------------------------------------------


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def tool_from_payload(payload: Any) -> Tool:
    """Convert an SDK ``Tool`` (or a plain mapping) into a :class:`Tool`."""

    schema = _field(payload, "inputSchema") or _field(payload, "input_schema") or {}
    return Tool(
        name=str(_field(payload, "name")),
        description=_field(payload, "description") or "",
        input_schema=dict(schema),
    )


def resource_from_payload(payload: Any) -> Resource:
    mime_type = _field(payload, "mimeType") or _field(payload, "mime_type")
    return Resource(
        uri=str(_field(payload, "uri")),
        name=str(_field(payload, "name") or _field(payload, "uri")),
        description=_field(payload, "description"),
        mime_type=mime_type,
    )


def content_item(payload: Any) -> dict[str, Any]:
    """Normalize one content item (text, image, embedded resource) to a dict."""

    dump = getattr(payload, "model_dump", None)
    if callable(dump):
        return dump(mode="json", exclude_none=True)
    if isinstance(payload, Mapping):
        return dict(payload)
    return {"type": "text", "text": str(payload)}


def tool_result_from_payload(payload: Any) -> ToolResult:
    content = _field(payload, "content") or ()
    is_error = bool(_field(payload, "isError", False) or _field(payload, "is_error", False))
    return ToolResult(content=tuple(content_item(item) for item in content), is_error=is_error)


def resource_content_from_payload(uri: str, payload: Any) -> ResourceContent:
    contents = _field(payload, "contents") or ()
    return ResourceContent(uri=uri, contents=tuple(content_item(item) for item in contents))


# -----------------------------------------------------------------------------
# Stdio transport
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _SessionHandle:
    name: str
    task: asyncio.Task[None]
    stop: asyncio.Event
    session: ClientSession


class McpStdioTransport:
    """:class:`TransportAdapter` backed by ``mcp`` stdio client sessions.

    Each server's ``stdio_client``/``ClientSession`` context lives inside one
    dedicated task, so the context is entered and exited by the same task no
    matter which caller connects or disconnects.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 30.0,
        request_timeout: float | None = 60.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._shutdown_timeout = shutdown_timeout
        self._sessions: dict[str, _SessionHandle] = {}

    def list_connected(self) -> list[str]:
        return sorted(self._sessions)

    def is_connected(self, name: str) -> bool:
        return name in self._sessions

    async def connect(
        self,
        name: str,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if name in self._sessions:
            raise TransportError(
                message=f"Server {name} is already connected",
                server_name=name,
                operation="connect",
            )

        params = StdioServerParameters(
            command=command,
            args=list(args),
            env=dict(env) if env else None,
        )
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[ClientSession] = loop.create_future()
        stop = asyncio.Event()
        task = asyncio.create_task(self._run_session(name, params, ready, stop), name=f"mcp-session:{name}")

        LOGGER.info("Connecting to MCP server %s: %s %s", name, command, " ".join(args))
        try:
            session = await asyncio.wait_for(asyncio.shield(ready), self._connect_timeout)
        except Exception as exc:
            stop.set()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
            if ready.done() and not ready.cancelled():
                ready.exception()
            raise TransportError(
                message=f"Failed to connect server: {error_message(exc)}",
                server_name=name,
                operation="connect",
            ) from exc

        self._sessions[name] = _SessionHandle(name=name, task=task, stop=stop, session=session)
        LOGGER.debug("MCP server %s initialized", name)

    async def _run_session(
        self,
        name: str,
        params: StdioServerParameters,
        ready: asyncio.Future[ClientSession],
        stop: asyncio.Event,
    ) -> None:
        read_timeout = timedelta(seconds=self._request_timeout) if self._request_timeout else None
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=read_timeout,
                    client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
                ) as session:
                    await session.initialize()
                    if not ready.done():
                        ready.set_result(session)
                    await stop.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                LOGGER.warning("MCP session for %s ended with error: %s", name, exc)
        finally:
            if not ready.done():
                ready.set_exception(TransportError(message="Session closed before initialization", server_name=name))
            handle = self._sessions.get(name)
            if handle is not None and handle.task is asyncio.current_task():
                self._sessions.pop(name, None)

    async def disconnect(self, name: str) -> None:
        handle = self._sessions.pop(name, None)
        if handle is None:
            LOGGER.debug("Disconnect requested for %s with no open session", name)
            return

        handle.stop.set()
        try:
            await asyncio.wait_for(handle.task, self._shutdown_timeout)
        except asyncio.TimeoutError as exc:
            handle.task.cancel()
            raise TransportError(
                message=f"Failed to disconnect server: shutdown exceeded {self._shutdown_timeout}s",
                server_name=name,
                operation="disconnect",
            ) from exc
        LOGGER.info("Disconnected MCP server %s", name)

    async def list_tools(self, name: str) -> list[Tool]:
        result = await self._invoke(name, "list tools", lambda session: session.list_tools())
        return [tool_from_payload(tool) for tool in result.tools]

    async def list_resources(self, name: str) -> list[Resource]:
        result = await self._invoke(name, "list resources", lambda session: session.list_resources())
        return [resource_from_payload(resource) for resource in result.resources]

    async def call_tool(self, name: str, tool: str, arguments: Mapping[str, Any]) -> ToolResult:
        payload = await self._invoke(
            name,
            "call tool",
            lambda session: session.call_tool(tool, arguments=dict(arguments)),
        )
        result = tool_result_from_payload(payload)
        if result.is_error:
            raise TransportError(
                message=result.text or f"Tool {tool} reported an error",
                server_name=name,
                operation="call tool",
            )
        return result

    async def read_resource(self, name: str, uri: str) -> ResourceContent:
        payload = await self._invoke(
            name,
            "read resource",
            lambda session: session.read_resource(AnyUrl(uri)),
        )
        return resource_content_from_payload(uri, payload)

    async def aclose(self) -> None:
        """Disconnect every open session."""

        for name in list(self._sessions):
            try:
                await self.disconnect(name)
            except TransportError as exc:
                LOGGER.warning("Failed to close MCP session %s: %s", name, exc.message)

    async def _invoke(
        self,
        name: str,
        operation: str,
        request: Callable[[ClientSession], Awaitable[_T]],
    ) -> _T:
        handle = self._sessions.get(name)
        if handle is None:
            raise TransportError(
                message=f"Failed to {operation}: server {name} is not connected",
                server_name=name,
                operation=operation,
            )
        try:
            return await request(handle.session)
        except Exception as exc:
            raise TransportError(
                message=f"Failed to {operation}: {error_message(exc)}",
                server_name=name,
                operation=operation,
            ) from exc


__all__ = [
    "TransportAdapter",
    "McpStdioTransport",
    "tool_from_payload",
    "resource_from_payload",
    "content_item",
    "tool_result_from_payload",
    "resource_content_from_payload",
]
