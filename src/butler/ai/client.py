"""Async model-provider clients with retry semantics.

Each provider decodes its SDK's response shapes into the tagged unions of
:mod:`butler.ai.types` and wraps every failure into a :class:`ProviderError`
naming the provider.
"""

from __future__ import annotations

import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, ClassVar, Dict, Iterator, List, Mapping, Protocol

import httpx
from anthropic import AsyncAnthropic
from anthropic import APIConnectionError as AnthropicConnectionError
from anthropic import InternalServerError as AnthropicServerError
from anthropic import RateLimitError as AnthropicRateLimitError
from openai import AsyncOpenAI
from openai import APIConnectionError as OpenAIConnectionError
from openai import InternalServerError as OpenAIServerError
from openai import RateLimitError as OpenAIRateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ProviderError, error_message
from ..mcp.catalog import to_anthropic_tools, to_openai_tools
from .types import (
    ArgumentsDelta,
    BlockKind,
    BlockStart,
    BlockStop,
    ContentBlock,
    ModelRequest,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolUseBlock,
)

LOGGER = logging.getLogger(__name__)

ANTHROPIC_DEFAULT_MODEL = "claude-sonnet-4-20250514"
OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 4000


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a provider client."""

    api_key: str
    model: str = ""
    base_url: str | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class ModelProvider(Protocol):
    """What the response driver needs from a language-model backend."""

    name: str

    async def complete(self, request: ModelRequest) -> List[ContentBlock]:
        ...

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def aclose(self) -> None:
        ...


class _ProviderBase:
    """Retry, error wrapping and teardown shared by the concrete providers."""

    name: ClassVar[str] = "provider"
    default_model: ClassVar[str] = ""
    _transient_errors: ClassVar[tuple[type[BaseException], ...]] = (httpx.TimeoutException,)

    def __init__(self, settings: ClientSettings, client: Any) -> None:
        self._settings = settings
        self._client = client

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model or self.default_model

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(self._transient_errors),
        )

    def _wrap_error(self, exc: BaseException) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        message = getattr(exc, "message", None) or error_message(exc)
        LOGGER.error("%s request failed: %s", self.name, message)
        return ProviderError(message=str(message), provider=self.name)

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        if not self._settings.debug_logging:
            return
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        except (TypeError, ValueError):
            LOGGER.debug("%s payload (unserializable): %s", self.name, payload)
        else:
            LOGGER.debug("%s payload:\n%s", self.name, serialized)

    async def aclose(self) -> None:
        """Close the underlying SDK client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("%s client close failed to start: %s", self.name, exc)
            return
        if inspect.isawaitable(result):
            await result


# -----------------------------------------------------------------------------
# Anthropic
# -----------------------------------------------------------------------------


class AnthropicProvider(_ProviderBase):
    """Claude models through the ``anthropic`` Messages API."""

    name: ClassVar[str] = "Claude"
    default_model: ClassVar[str] = ANTHROPIC_DEFAULT_MODEL
    _transient_errors = (
        AnthropicConnectionError,
        AnthropicRateLimitError,
        AnthropicServerError,
        httpx.TimeoutException,
    )

    def __init__(self, settings: ClientSettings, *, client: AsyncAnthropic | None = None) -> None:
        super().__init__(settings, client or self._build_client(settings))

    @staticmethod
    def _build_client(settings: ClientSettings) -> AsyncAnthropic:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncAnthropic(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    async def complete(self, request: ModelRequest) -> List[ContentBlock]:
        payload = self._build_payload(request)
        LOGGER.debug("Requesting %s completion with %d message(s)", self.model, len(request.messages))
        self._log_payload(payload)
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.messages.create(**payload)
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        return [block for block in map(self._decode_block, response.content) if block is not None]

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(request)
        LOGGER.debug("Starting streamed %s completion with %d message(s)", self.model, len(request.messages))
        self._log_payload(payload)
        async with contextlib.AsyncExitStack() as stack:
            try:
                async for attempt in self._retrying():
                    with attempt:
                        stream = await stack.enter_async_context(self._client.messages.stream(**payload))
                async for event in stream:
                    decoded = self._decode_event(event)
                    if decoded is not None:
                        yield decoded
            except Exception as exc:
                raise self._wrap_error(exc) from exc

    def _build_payload(self, request: ModelRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens or self._settings.max_tokens,
            "messages": [message.to_dict() for message in request.messages],
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = to_anthropic_tools(request.tools)
        temperature = request.temperature if request.temperature is not None else self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    @staticmethod
    def _decode_block(block: Any) -> ContentBlock | None:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            return TextBlock(text=block.text)
        if block_type == "tool_use":
            return ToolUseBlock(name=block.name, arguments=dict(block.input or {}), call_id=block.id)
        return None

    @staticmethod
    def _decode_event(event: Any) -> StreamEvent | None:
        event_type = getattr(event, "type", None)
        index = getattr(event, "index", None)
        if event_type == "content_block_start":
            block = event.content_block
            if block.type == "tool_use":
                return BlockStart(kind=BlockKind.TOOL_USE, index=index, name=block.name, call_id=block.id)
            if block.type == "text":
                return BlockStart(kind=BlockKind.TEXT, index=index, text=getattr(block, "text", "") or "")
            return None
        if event_type == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return TextDelta(text=delta.text, index=index)
            if delta.type == "input_json_delta":
                return ArgumentsDelta(fragment=delta.partial_json, index=index)
            return None
        if event_type == "content_block_stop":
            return BlockStop(index=index)
        return None


# -----------------------------------------------------------------------------
# OpenAI-compatible
# -----------------------------------------------------------------------------


class OpenAIProvider(_ProviderBase):
    """OpenAI-compatible chat-completions endpoints."""

    name: ClassVar[str] = "OpenAI"
    default_model: ClassVar[str] = OPENAI_DEFAULT_MODEL
    _transient_errors = (
        OpenAIConnectionError,
        OpenAIRateLimitError,
        OpenAIServerError,
        httpx.TimeoutException,
    )

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        super().__init__(settings, client or self._build_client(settings))

    @staticmethod
    def _build_client(settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    async def complete(self, request: ModelRequest) -> List[ContentBlock]:
        payload = self._build_payload(request)
        LOGGER.debug("Requesting %s completion with %d message(s)", self.model, len(request.messages))
        self._log_payload(payload)
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        if not response.choices:
            return []
        message = response.choices[0].message
        blocks: List[ContentBlock] = []
        if message.content:
            blocks.append(TextBlock(text=message.content))
        for call in message.tool_calls or ():
            blocks.append(
                ToolUseBlock(name=call.function.name, arguments=call.function.arguments or "", call_id=call.id)
            )
        return blocks

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(request)
        LOGGER.debug("Starting streamed %s completion with %d message(s)", self.model, len(request.messages))
        self._log_payload(payload)
        cursor = _ToolCallCursor()
        async with contextlib.AsyncExitStack() as stack:
            try:
                async for attempt in self._retrying():
                    with attempt:
                        stream = await stack.enter_async_context(self._client.chat.completions.stream(**payload))
                async for event in stream:
                    for decoded in self._decode_event(event, cursor):
                        yield decoded
            except Exception as exc:
                raise self._wrap_error(exc) from exc

    def _build_payload(self, request: ModelRequest) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(message.to_dict() for message in request.messages)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": request.max_tokens or self._settings.max_tokens,
        }
        if request.tools:
            payload["tools"] = to_openai_tools(request.tools)
        temperature = request.temperature if request.temperature is not None else self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    @staticmethod
    def _decode_event(event: Any, cursor: "_ToolCallCursor") -> Iterator[StreamEvent]:
        """Map stream-helper events onto block events.

        The helper has no explicit tool-call start, so the first argument
        delta seen for a tool index opens the block. With parallel tool calls
        the helper reports the first delta of call ``N + 1`` before the done
        event of call ``N``; that delta closes the earlier block and the late
        done event is dropped.
        """

        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            if event.delta:
                yield TextDelta(text=str(event.delta))
            return
        if event_type == "tool_calls.function.arguments.delta":
            index = event.index
            if index in cursor.closed:
                return
            if cursor.current != index:
                yield from cursor.close_current()
                cursor.current = index
                yield BlockStart(kind=BlockKind.TOOL_USE, index=index, name=event.name)
            if event.arguments_delta:
                yield ArgumentsDelta(fragment=event.arguments_delta, index=index)
            return
        if event_type == "tool_calls.function.arguments.done":
            index = event.index
            if index in cursor.closed:
                return
            if cursor.current != index:
                yield from cursor.close_current()
                cursor.current = index
                yield BlockStart(kind=BlockKind.TOOL_USE, index=index, name=event.name)
                if event.arguments:
                    yield ArgumentsDelta(fragment=event.arguments, index=index)
            yield from cursor.close_current()


@dataclass(slots=True)
class _ToolCallCursor:
    """Tracks the single tool-call block open on an OpenAI stream."""

    current: int | None = None
    closed: set[int] = field(default_factory=set)

    def close_current(self) -> Iterator[StreamEvent]:
        if self.current is None:
            return
        index, self.current = self.current, None
        self.closed.add(index)
        yield BlockStop(index=index)


def build_provider(settings: Any, *, client: Any | None = None) -> ModelProvider:
    """Instantiate the provider selected by ``settings.provider``."""

    client_settings = ClientSettings(
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url or None,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        debug_logging=settings.debug_logging,
    )
    provider = (settings.provider or "anthropic").strip().lower()
    if provider == "anthropic":
        return AnthropicProvider(client_settings, client=client)
    if provider == "openai":
        return OpenAIProvider(client_settings, client=client)
    raise ValueError(f"Unknown provider '{settings.provider}'. Expected 'anthropic' or 'openai'.")


__all__ = [
    "ANTHROPIC_DEFAULT_MODEL",
    "OPENAI_DEFAULT_MODEL",
    "DEFAULT_MAX_TOKENS",
    "ClientSettings",
    "ModelProvider",
    "AnthropicProvider",
    "OpenAIProvider",
    "build_provider",
]
