"""Shared test helpers and stub classes.

This module contains reusable fakes for the transport and model-provider
boundaries. Import from here instead of duplicating these classes in
individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from butler.ai.types import ContentBlock, ModelRequest, StreamEvent
from butler.mcp.models import Resource, Tool


def make_tool(name: str, description: str = "") -> Tool:
    return Tool(
        name=name,
        description=description or f"{name} tool",
        input_schema={"type": "object", "properties": {}},
    )


class FakeTransport:
    """In-memory transport adapter recording every call it receives.

    Example:
        transport = FakeTransport(tools={"git": [make_tool("status")]})
        transport.results[("git", "status")] = "clean"
        transport.fail["connect"]["db"] = RuntimeError("boom")
        transport.gates["git"] = asyncio.Event()  # connect blocks until set
    """

    def __init__(
        self,
        *,
        tools: Mapping[str, Sequence[Tool]] | None = None,
        resources: Mapping[str, Sequence[Resource]] | None = None,
    ) -> None:
        self.tools: dict[str, list[Tool]] = {name: list(items) for name, items in (tools or {}).items()}
        self.resources: dict[str, list[Resource]] = {
            name: list(items) for name, items in (resources or {}).items()
        }
        self.results: dict[tuple[str, str], Any] = {}
        self.fail: dict[str, dict[str, BaseException]] = {
            "connect": {},
            "list_tools": {},
            "list_resources": {},
            "disconnect": {},
        }
        self.calls: list[tuple[Any, ...]] = []
        self.connected: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}

    def ops(self, operation: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == operation]

    def _maybe_fail(self, operation: str, name: str) -> None:
        error = self.fail[operation].get(name)
        if error is not None:
            raise error

    async def connect(self, name: str, command: str, args: Sequence[str], *, env: Mapping[str, str] | None = None) -> None:
        self.calls.append(("connect", name, command, tuple(args), dict(env or {})))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        self._maybe_fail("connect", name)
        self.connected.add(name)

    async def list_tools(self, name: str) -> list[Tool]:
        self.calls.append(("list_tools", name))
        self._maybe_fail("list_tools", name)
        return list(self.tools.get(name, []))

    async def list_resources(self, name: str) -> list[Resource]:
        self.calls.append(("list_resources", name))
        self._maybe_fail("list_resources", name)
        return list(self.resources.get(name, []))

    async def call_tool(self, name: str, tool: str, arguments: Mapping[str, Any]) -> Any:
        self.calls.append(("call_tool", name, tool, dict(arguments)))
        result = self.results.get((name, tool))
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(dict(arguments))
        return result

    async def read_resource(self, name: str, uri: str) -> Any:
        self.calls.append(("read_resource", name, uri))
        result = self.results.get((name, uri))
        if isinstance(result, BaseException):
            raise result
        return result

    async def disconnect(self, name: str) -> None:
        self.calls.append(("disconnect", name))
        self._maybe_fail("disconnect", name)
        self.connected.discard(name)


class FakeProvider:
    """Model provider replaying canned blocks or stream events.

    An exception placed in ``events`` is raised when the stream reaches it.
    """

    name = "Fake"

    def __init__(
        self,
        *,
        blocks: Iterable[ContentBlock] = (),
        events: Iterable[StreamEvent | BaseException] = (),
        error: BaseException | None = None,
    ) -> None:
        self.blocks = list(blocks)
        self.events = list(events)
        self.error = error
        self.requests: list[ModelRequest] = []
        self.closed = False

    async def complete(self, request: ModelRequest) -> list[ContentBlock]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return list(self.blocks)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        for event in self.events:
            if isinstance(event, BaseException):
                raise event
            yield event

    async def aclose(self) -> None:
        self.closed = True


async def collect(iterator: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in iterator]
