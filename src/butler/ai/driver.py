"""Tool-use response driver.

Turns one user message plus the current file into an ordered transcript of
text and tool-result segments. Tool calls requested by the model are routed
through the :class:`~butler.mcp.registry.ServerRegistry`; a failing tool
call degrades into an inline error segment and the response continues.
Provider failures abort the response and propagate as
:class:`~butler.errors.ProviderError`.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, List, Mapping, Protocol

from ..errors import ProtocolViolationError, error_message
from ..mcp.catalog import (
    ResourceGroup,
    ToolGroup,
    build_resource_catalog,
    build_tool_catalog,
    describe_catalog,
    display_tool_name,
    split_qualified_name,
)
from ..mcp.models import ResourceContent, ToolResult
from .client import ModelProvider
from .prompts import (
    CONNECTION_TEST_MESSAGE,
    EXPLAIN_MESSAGE,
    FIND_BUGS_MESSAGE,
    OPTIMIZE_MESSAGE,
    build_generation_prompt,
    build_system_prompt,
    quick_action_message,
)
from .types import (
    ArgumentsDelta,
    BlockKind,
    BlockStart,
    BlockStop,
    ModelMessage,
    ModelRequest,
    Segment,
    TextBlock,
    TextDelta,
    TextSegment,
    ToolErrorSegment,
    ToolResultSegment,
    ToolUseBlock,
    parse_tool_arguments,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..chat.message_model import ChatTranscriptEntry

LOGGER = logging.getLogger(__name__)

INCOMPLETE_CALL_MESSAGE = "Tool call ended before its arguments were complete"


class ToolRouter(Protocol):
    """The registry surface the driver reads and dispatches through."""

    def get_available_tools(self) -> List[ToolGroup]:
        ...

    def get_available_resources(self) -> List[ResourceGroup]:
        ...

    async def call_tool(self, server_name: str, tool_name: str, arguments: Mapping[str, Any] | None = None) -> Any:
        ...


@dataclass(slots=True)
class _PendingCall:
    """The single tool call being assembled from a stream."""

    name: str
    index: int | None
    fragments: list[str] = field(default_factory=list)

    def accepts(self, index: int | None) -> bool:
        return index is None or self.index is None or index == self.index

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class ResponseDriver:
    """Drive a provider response, executing tool calls along the way.

    The tool catalog is read from the registry once per response; a server
    stopped mid-response surfaces as an inline ``[Tool Error]`` segment.
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRouter,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    # ------------------------------------------------------------------
    # Batch form
    # ------------------------------------------------------------------

    async def respond(
        self,
        code: str,
        language: str,
        user_message: str,
        file_name: str | None = None,
        *,
        history: Iterable["ChatTranscriptEntry"] = (),
    ) -> str:
        """Return the complete assistant reply, tool blocks included."""

        request = self._build_request(code, language, user_message, file_name, history)
        blocks = await self._provider.complete(request)
        parts: list[str] = []
        for block in blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                segment = await self._execute(block.name, block.arguments)
                parts.append(segment.render())
        return "".join(parts)

    # ------------------------------------------------------------------
    # Streaming form
    # ------------------------------------------------------------------

    async def stream_segments(
        self,
        code: str,
        language: str,
        user_message: str,
        file_name: str | None = None,
        *,
        history: Iterable["ChatTranscriptEntry"] = (),
    ) -> AsyncIterator[Segment]:
        """Yield typed transcript segments in provider arrival order.

        One tool call is assembled at a time. A tool block opening while
        another is pending, or an argument fragment with no open tool block,
        raises :class:`ProtocolViolationError`.
        """

        request = self._build_request(code, language, user_message, file_name, history)
        events = self._provider.stream(request)
        pending: _PendingCall | None = None
        try:
            async for event in events:
                if isinstance(event, TextDelta):
                    if event.text:
                        yield TextSegment(event.text)
                elif isinstance(event, BlockStart):
                    if event.kind is BlockKind.TOOL_USE:
                        if pending is not None:
                            raise ProtocolViolationError(
                                message=(
                                    f"Tool block '{event.name}' opened while '{pending.name}' "
                                    "is still collecting arguments"
                                )
                            )
                        pending = _PendingCall(name=event.name or "", index=event.index)
                        LOGGER.debug("Collecting arguments for %s", pending.name)
                    elif event.text:
                        yield TextSegment(event.text)
                elif isinstance(event, ArgumentsDelta):
                    if pending is None or not pending.accepts(event.index):
                        raise ProtocolViolationError(
                            message="Received tool argument fragment with no matching open tool block"
                        )
                    pending.fragments.append(event.fragment)
                elif isinstance(event, BlockStop):
                    if pending is None or not pending.accepts(event.index):
                        continue
                    call, pending = pending, None
                    yield await self._execute(call.name, call.arguments)

            if pending is not None:
                LOGGER.warning("Stream ended with an open tool block for %s", pending.name)
                yield ToolErrorSegment(
                    qualified_name=pending.name,
                    tool_name=display_tool_name(pending.name),
                    message=INCOMPLETE_CALL_MESSAGE,
                )
        finally:
            await _aclose(events)

    async def stream_respond(
        self,
        code: str,
        language: str,
        user_message: str,
        file_name: str | None = None,
        *,
        history: Iterable["ChatTranscriptEntry"] = (),
    ) -> AsyncIterator[str]:
        """Yield display fragments; tool blocks are framed by blank lines."""

        segments = self.stream_segments(code, language, user_message, file_name, history=history)
        try:
            async for segment in segments:
                if isinstance(segment, TextSegment):
                    yield segment.text
                else:
                    yield f"\n\n{segment.render()}\n"
        finally:
            await _aclose(segments)

    # ------------------------------------------------------------------
    # Quick actions
    # ------------------------------------------------------------------

    async def explain_code(self, code: str, language: str, file_name: str | None = None) -> str:
        return await self.respond(code, language, EXPLAIN_MESSAGE, file_name)

    async def find_bugs(self, code: str, language: str, file_name: str | None = None) -> str:
        return await self.respond(code, language, FIND_BUGS_MESSAGE, file_name)

    async def optimize_code(self, code: str, language: str, file_name: str | None = None) -> str:
        return await self.respond(code, language, OPTIMIZE_MESSAGE, file_name)

    async def run_quick_action(self, action: str, code: str, language: str, file_name: str | None = None) -> str:
        """Run ``explain``, ``bugs`` or ``optimize`` by name."""

        return await self.respond(code, language, quick_action_message(action), file_name)

    async def generate_code(self, prompt: str, language: str, context: str | None = None) -> str:
        """Generate code from ``prompt``. No file context and no tools are offered."""

        request = ModelRequest(
            system=build_generation_prompt(language, context),
            messages=(ModelMessage(role="user", content=prompt),),
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        blocks = await self._provider.complete(request)
        return "".join(block.text for block in blocks if isinstance(block, TextBlock))

    async def test_connection(self) -> bool:
        """Send a minimal request; ``True`` when the provider answered."""

        request = ModelRequest(
            system="",
            messages=(ModelMessage(role="user", content=CONNECTION_TEST_MESSAGE),),
            max_tokens=10,
        )
        try:
            await self._provider.complete(request)
        except Exception as exc:
            LOGGER.warning("%s connection test failed: %s", self._provider.name, error_message(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_request(
        self,
        code: str,
        language: str,
        user_message: str,
        file_name: str | None,
        history: Iterable["ChatTranscriptEntry"],
    ) -> ModelRequest:
        catalog = build_tool_catalog(self._registry.get_available_tools())
        resources = build_resource_catalog(self._registry.get_available_resources())
        system = build_system_prompt(language, code, file_name, describe_catalog(catalog, resources))
        messages = [*_history_messages(history), ModelMessage(role="user", content=user_message)]
        LOGGER.debug("Built request with %d tool(s) and %d message(s)", len(catalog), len(messages))
        return ModelRequest(
            system=system,
            messages=tuple(messages),
            tools=tuple(catalog),
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )

    async def _execute(self, qualified_name: str, arguments: Mapping[str, Any] | str) -> Segment:
        label = display_tool_name(qualified_name)
        try:
            server_name, tool_name = split_qualified_name(qualified_name)
            payload = parse_tool_arguments(arguments) if isinstance(arguments, str) else dict(arguments)
            result = await self._registry.call_tool(server_name, tool_name, payload)
        except Exception as exc:
            message = error_message(exc)
            LOGGER.warning("Tool call %s failed: %s", qualified_name, message)
            return ToolErrorSegment(qualified_name=qualified_name, tool_name=label, message=message)
        return ToolResultSegment(qualified_name=qualified_name, tool_name=label, payload=render_tool_payload(result))


def render_tool_payload(result: Any) -> str:
    """Render a transport result for display in the transcript."""

    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, (ToolResult, ResourceContent)):
        return result.text
    if isinstance(result, Mapping) and isinstance(result.get("content"), (list, tuple)):
        items = tuple(
            dict(item) if isinstance(item, Mapping) else {"type": "text", "text": str(item)}
            for item in result["content"]
        )
        return ToolResult(content=items).text
    return json.dumps(result, ensure_ascii=False, default=str)


def _history_messages(history: Iterable["ChatTranscriptEntry"]) -> list[ModelMessage]:
    messages: list[ModelMessage] = []
    for entry in history:
        if not entry.content:
            continue
        messages.append(ModelMessage(role=str(getattr(entry.sender, "value", entry.sender)), content=entry.content))
    return messages


async def _aclose(iterator: Any) -> None:
    close = getattr(iterator, "aclose", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


__all__ = ["ResponseDriver", "ToolRouter", "render_tool_payload", "INCOMPLETE_CALL_MESSAGE"]
