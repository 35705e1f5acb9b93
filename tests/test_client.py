"""Tests for the provider clients using fake SDK clients."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable

import httpx
import pytest
from openai.lib.streaming.chat import ChatCompletionStreamState
from openai.types.chat import ChatCompletionChunk

from butler.ai.client import (
    ANTHROPIC_DEFAULT_MODEL,
    AnthropicProvider,
    ClientSettings,
    OpenAIProvider,
    build_provider,
)
from butler.ai.driver import ResponseDriver
from butler.ai.types import (
    ArgumentsDelta,
    BlockKind,
    BlockStart,
    BlockStop,
    ModelMessage,
    ModelRequest,
    TextBlock,
    TextDelta,
    ToolUseBlock,
)
from butler.errors import ProviderError
from butler.mcp.catalog import CatalogEntry
from butler.mcp.models import ServerConfig
from butler.mcp.registry import ServerRegistry
from butler.services.settings import Settings
from tests.helpers import FakeTransport, collect, make_tool


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {"api_key": "test-key", "retry_min_seconds": 0.0, "retry_max_seconds": 0.0}
    values.update(overrides)
    return ClientSettings(**values)


def _request(**overrides: Any) -> ModelRequest:
    values: dict[str, Any] = {
        "system": "You are helpful.",
        "messages": (ModelMessage(role="user", content="hi"),),
        "tools": (
            CatalogEntry(
                qualified_name="server_echo",
                server_name="server",
                tool_name="echo",
                description="[server] echo",
                input_schema={"type": "object"},
            ),
        ),
    }
    values.update(overrides)
    return ModelRequest(**values)


class _FakeStream:
    """Async context manager yielding canned SDK stream events."""

    def __init__(self, events: Iterable[Any], enter_error: BaseException | None = None) -> None:
        self._events = list(events)
        self._enter_error = enter_error
        self.exited = False

    async def __aenter__(self) -> "_FakeStream":
        if self._enter_error is not None:
            raise self._enter_error
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.exited = True

    async def __aiter__(self) -> AsyncIterator[Any]:
        for event in self._events:
            if isinstance(event, BaseException):
                raise event
            yield event


class _FakeEndpoint:
    """Replays responses (or raises errors) for ``create`` and ``stream``."""

    def __init__(self, responses: Iterable[Any] = (), streams: Iterable[_FakeStream] = ()) -> None:
        self.responses = list(responses)
        self.streams = list(streams)
        self.payloads: list[dict[str, Any]] = []

    async def create(self, **payload: Any) -> Any:
        self.payloads.append(payload)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def stream(self, **payload: Any) -> _FakeStream:
        self.payloads.append(payload)
        return self.streams.pop(0)


class _Closable:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _chunk(delta: dict[str, Any], finish_reason: str | None = None) -> ChatCompletionChunk:
    return ChatCompletionChunk.model_validate(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "gpt-4o",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
    )


def _tool_call_chunks(index: int, arguments: str) -> list[ChatCompletionChunk]:
    opening = {
        "index": index,
        "id": f"call_{index}",
        "type": "function",
        "function": {"name": "server_echo", "arguments": ""},
    }
    return [
        _chunk({"tool_calls": [opening]}),
        _chunk({"tool_calls": [{"index": index, "function": {"arguments": arguments}}]}),
    ]


def _helper_events(chunks: Iterable[ChatCompletionChunk]) -> list[Any]:
    """Run chunks through the SDK's own accumulator, as ``completions.stream`` does."""

    state: ChatCompletionStreamState[Any] = ChatCompletionStreamState()
    return [event for chunk in chunks for event in state.handle_chunk(chunk)]


def _anthropic_client(endpoint: _FakeEndpoint) -> Any:
    client = _Closable()
    client.messages = endpoint  # type: ignore[attr-defined]
    return client


def _openai_client(endpoint: _FakeEndpoint) -> Any:
    client = _Closable()
    client.chat = SimpleNamespace(completions=endpoint)  # type: ignore[attr-defined]
    return client


class TestAnthropicProvider:
    """Claude Messages API decoding."""

    @pytest.mark.asyncio
    async def test_complete_builds_payload_and_decodes_blocks(self) -> None:
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me look."),
                SimpleNamespace(type="tool_use", name="server_echo", input={"x": 1}, id="toolu_1"),
                SimpleNamespace(type="thinking", thinking="..."),
            ]
        )
        endpoint = _FakeEndpoint(responses=[response])
        provider = AnthropicProvider(_settings(temperature=0.2), client=_anthropic_client(endpoint))

        blocks = await provider.complete(_request(max_tokens=256))

        assert blocks == [
            TextBlock(text="Let me look."),
            ToolUseBlock(name="server_echo", arguments={"x": 1}, call_id="toolu_1"),
        ]
        [payload] = endpoint.payloads
        assert payload["model"] == ANTHROPIC_DEFAULT_MODEL
        assert payload["max_tokens"] == 256
        assert payload["system"] == "You are helpful."
        assert payload["temperature"] == 0.2
        assert payload["messages"] == [{"role": "user", "content": "hi"}]
        assert payload["tools"][0]["name"] == "server_echo"
        assert payload["tools"][0]["input_schema"] == {"type": "object"}

    @pytest.mark.asyncio
    async def test_stream_decodes_content_block_events(self) -> None:
        events = [
            SimpleNamespace(type="message_start"),
            SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="text", text="")),
            SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="a")),
            SimpleNamespace(type="content_block_stop", index=0),
            SimpleNamespace(
                type="content_block_start",
                index=1,
                content_block=SimpleNamespace(type="tool_use", name="server_echo", id="toolu_1"),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='{"x":1}'),
            ),
            SimpleNamespace(type="content_block_stop", index=1),
            SimpleNamespace(type="message_stop"),
        ]
        stream = _FakeStream(events)
        provider = AnthropicProvider(_settings(), client=_anthropic_client(_FakeEndpoint(streams=[stream])))

        decoded = await collect(provider.stream(_request()))

        assert decoded == [
            BlockStart(kind=BlockKind.TEXT, index=0),
            TextDelta(text="a", index=0),
            BlockStop(index=0),
            BlockStart(kind=BlockKind.TOOL_USE, index=1, name="server_echo", call_id="toolu_1"),
            ArgumentsDelta(fragment='{"x":1}', index=1),
            BlockStop(index=1),
        ]
        assert stream.exited

    @pytest.mark.asyncio
    async def test_failures_are_wrapped_with_provider_name(self) -> None:
        endpoint = _FakeEndpoint(responses=[RuntimeError("invalid x-api-key")])
        provider = AnthropicProvider(_settings(), client=_anthropic_client(endpoint))

        with pytest.raises(ProviderError) as excinfo:
            await provider.complete(_request())

        assert str(excinfo.value) == "Claude API error: invalid x-api-key"
        assert len(endpoint.payloads) == 1

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self) -> None:
        endpoint = _FakeEndpoint(
            responses=[httpx.ConnectTimeout("timed out"), SimpleNamespace(content=[SimpleNamespace(type="text", text="ok")])]
        )
        provider = AnthropicProvider(_settings(max_retries=3), client=_anthropic_client(endpoint))

        assert await provider.complete(_request()) == [TextBlock(text="ok")]
        assert len(endpoint.payloads) == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self) -> None:
        endpoint = _FakeEndpoint(responses=[httpx.ConnectTimeout("timed out")] * 2)
        provider = AnthropicProvider(_settings(max_retries=2), client=_anthropic_client(endpoint))

        with pytest.raises(ProviderError, match="timed out"):
            await provider.complete(_request())
        assert len(endpoint.payloads) == 2

    @pytest.mark.asyncio
    async def test_stream_establishment_is_retried(self) -> None:
        streams = [
            _FakeStream([], enter_error=httpx.ReadTimeout("slow")),
            _FakeStream([SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="hi"))]),
        ]
        provider = AnthropicProvider(_settings(), client=_anthropic_client(_FakeEndpoint(streams=streams)))

        assert await collect(provider.stream(_request())) == [TextDelta(text="hi", index=0)]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_wrapped(self) -> None:
        stream = _FakeStream(
            [
                SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="a")),
                RuntimeError("overloaded"),
            ]
        )
        provider = AnthropicProvider(_settings(), client=_anthropic_client(_FakeEndpoint(streams=[stream])))
        received: list[Any] = []

        with pytest.raises(ProviderError, match="Claude API error: overloaded"):
            async for event in provider.stream(_request()):
                received.append(event)

        assert received == [TextDelta(text="a", index=0)]

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self) -> None:
        client = _anthropic_client(_FakeEndpoint())
        provider = AnthropicProvider(_settings(), client=client)

        await provider.aclose()

        assert client.closed


class TestOpenAIProvider:
    """Chat-completions decoding."""

    @pytest.mark.asyncio
    async def test_complete_puts_system_first_and_keeps_raw_arguments(self) -> None:
        message = SimpleNamespace(
            content="Checking.",
            tool_calls=[
                SimpleNamespace(id="call_1", function=SimpleNamespace(name="server_echo", arguments='{"x": 1}'))
            ],
        )
        endpoint = _FakeEndpoint(responses=[SimpleNamespace(choices=[SimpleNamespace(message=message)])])
        provider = OpenAIProvider(_settings(model="gpt-4o"), client=_openai_client(endpoint))

        blocks = await provider.complete(_request())

        assert blocks == [
            TextBlock(text="Checking."),
            ToolUseBlock(name="server_echo", arguments='{"x": 1}', call_id="call_1"),
        ]
        [payload] = endpoint.payloads
        assert payload["model"] == "gpt-4o"
        assert payload["messages"][0] == {"role": "system", "content": "You are helpful."}
        assert payload["tools"][0]["function"]["name"] == "server_echo"
        assert "temperature" not in payload

    @pytest.mark.asyncio
    async def test_complete_without_choices(self) -> None:
        endpoint = _FakeEndpoint(responses=[SimpleNamespace(choices=[])])
        provider = OpenAIProvider(_settings(), client=_openai_client(endpoint))

        assert await provider.complete(_request()) == []

    @pytest.mark.asyncio
    async def test_stream_opens_tool_block_on_first_argument_delta(self) -> None:
        events = [
            SimpleNamespace(type="chunk"),
            SimpleNamespace(type="content.delta", delta="Looking"),
            SimpleNamespace(type="tool_calls.function.arguments.delta", index=0, name="server_echo", arguments_delta='{"x"'),
            SimpleNamespace(type="tool_calls.function.arguments.delta", index=0, name="server_echo", arguments_delta=":1}"),
            SimpleNamespace(type="tool_calls.function.arguments.done", index=0, name="server_echo", arguments='{"x":1}'),
            SimpleNamespace(type="content.done"),
        ]
        provider = OpenAIProvider(_settings(), client=_openai_client(_FakeEndpoint(streams=[_FakeStream(events)])))

        decoded = await collect(provider.stream(_request()))

        assert decoded == [
            TextDelta(text="Looking"),
            BlockStart(kind=BlockKind.TOOL_USE, index=0, name="server_echo"),
            ArgumentsDelta(fragment='{"x"', index=0),
            ArgumentsDelta(fragment=":1}", index=0),
            BlockStop(index=0),
        ]

    @pytest.mark.asyncio
    async def test_stream_done_without_deltas_carries_full_arguments(self) -> None:
        events = [
            SimpleNamespace(type="tool_calls.function.arguments.done", index=2, name="server_echo", arguments="{}"),
        ]
        provider = OpenAIProvider(_settings(), client=_openai_client(_FakeEndpoint(streams=[_FakeStream(events)])))

        decoded = await collect(provider.stream(_request()))

        assert decoded == [
            BlockStart(kind=BlockKind.TOOL_USE, index=2, name="server_echo"),
            ArgumentsDelta(fragment="{}", index=2),
            BlockStop(index=2),
        ]

    @pytest.mark.asyncio
    async def test_next_tool_delta_closes_previous_block(self) -> None:
        events = [
            SimpleNamespace(type="tool_calls.function.arguments.delta", index=0, name="server_echo", arguments_delta='{"x":1}'),
            SimpleNamespace(type="tool_calls.function.arguments.delta", index=1, name="server_echo", arguments_delta=""),
            SimpleNamespace(type="tool_calls.function.arguments.done", index=0, name="server_echo", arguments='{"x":1}'),
            SimpleNamespace(type="tool_calls.function.arguments.delta", index=1, name="server_echo", arguments_delta='{"x":2}'),
            SimpleNamespace(type="tool_calls.function.arguments.done", index=1, name="server_echo", arguments='{"x":2}'),
        ]
        provider = OpenAIProvider(_settings(), client=_openai_client(_FakeEndpoint(streams=[_FakeStream(events)])))

        decoded = await collect(provider.stream(_request()))

        assert decoded == [
            BlockStart(kind=BlockKind.TOOL_USE, index=0, name="server_echo"),
            ArgumentsDelta(fragment='{"x":1}', index=0),
            BlockStop(index=0),
            BlockStart(kind=BlockKind.TOOL_USE, index=1, name="server_echo"),
            ArgumentsDelta(fragment='{"x":2}', index=1),
            BlockStop(index=1),
        ]

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_from_sdk_chunks_all_run(self) -> None:
        transport = FakeTransport(tools={"server": [make_tool("echo")]})
        transport.results[("server", "echo")] = lambda arguments: f"got {arguments['x']}"
        registry = ServerRegistry(transport, restart_delay=0.0, include_filesystem=False)
        registry.add_server(ServerConfig(name="server", command="echo-server"))
        assert await registry.start_server("server")

        chunks = [
            _chunk({"role": "assistant", "content": "Checking"}),
            _chunk({"content": " both."}),
            *_tool_call_chunks(0, '{"x": 1}'),
            *_tool_call_chunks(1, '{"x": 2}'),
            _chunk({}, finish_reason="tool_calls"),
        ]
        endpoint = _FakeEndpoint(streams=[_FakeStream(_helper_events(chunks))])
        provider = OpenAIProvider(_settings(), client=_openai_client(endpoint))

        output = "".join(await collect(ResponseDriver(provider, registry).stream_respond("", "python", "hi")))

        assert output.startswith("Checking both.")
        assert output.count("[Tool Result: echo]") == 2
        assert output.index("got 1") < output.index("got 2")
        assert [call[3] for call in transport.ops("call_tool")] == [{"x": 1}, {"x": 2}]

    @pytest.mark.asyncio
    async def test_failures_are_wrapped_with_provider_name(self) -> None:
        class _StatusError(Exception):
            message = "Incorrect API key provided"

        endpoint = _FakeEndpoint(responses=[_StatusError("401")])
        provider = OpenAIProvider(_settings(), client=_openai_client(endpoint))

        with pytest.raises(ProviderError) as excinfo:
            await provider.complete(_request())

        assert excinfo.value.message == "OpenAI API error: Incorrect API key provided"


class TestBuildProvider:
    """Provider selection from settings."""

    def test_anthropic_is_default(self) -> None:
        provider = build_provider(Settings(api_key="k"), client=_anthropic_client(_FakeEndpoint()))
        assert isinstance(provider, AnthropicProvider)
        assert provider.settings.api_key == "k"

    def test_openai_selection_carries_model(self) -> None:
        settings = Settings(provider="openai", api_key="k", model="gpt-4.1", base_url="https://proxy.local/v1")
        provider = build_provider(settings, client=_openai_client(_FakeEndpoint()))

        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4.1"
        assert provider.settings.base_url == "https://proxy.local/v1"

    def test_unknown_provider_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_provider(Settings(provider="mistral"))
