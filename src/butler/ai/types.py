"""Typed shapes exchanged across the model-provider boundary.

Provider SDK responses are decoded exactly once into these closed unions so
the response driver can match on concrete types instead of inspecting
ad hoc payload shapes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from ..errors import ToolArgumentsError
from ..mcp.catalog import CatalogEntry


class BlockKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"


# -----------------------------------------------------------------------------
# Batch content blocks
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    """A completed tool call from a batch response.

    ``arguments`` is already decoded when the provider hands back structured
    input; providers that return the encoded form pass the raw string.
    """

    name: str
    arguments: Mapping[str, Any] | str = field(default_factory=dict)
    call_id: str | None = None


ContentBlock = Union[TextBlock, ToolUseBlock]


# -----------------------------------------------------------------------------
# Incremental stream events
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BlockStart:
    """A content block opened. Tool-use blocks carry the qualified tool name."""

    kind: BlockKind
    index: int | None = None
    name: str | None = None
    call_id: str | None = None
    text: str = ""


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str
    index: int | None = None


@dataclass(frozen=True, slots=True)
class ArgumentsDelta:
    """A fragment of a tool call's JSON-encoded arguments."""

    fragment: str
    index: int | None = None


@dataclass(frozen=True, slots=True)
class BlockStop:
    index: int | None = None


StreamEvent = Union[BlockStart, TextDelta, ArgumentsDelta, BlockStop]


# -----------------------------------------------------------------------------
# Transcript segments
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextSegment:
    text: str

    def render(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class ToolResultSegment:
    qualified_name: str
    tool_name: str
    payload: str

    def render(self) -> str:
        return f"[Tool Result: {self.tool_name}]\n{self.payload}\n"


@dataclass(frozen=True, slots=True)
class ToolErrorSegment:
    qualified_name: str
    tool_name: str
    message: str

    def render(self) -> str:
        return f"[Tool Error: {self.tool_name}] {self.message}\n"


Segment = Union[TextSegment, ToolResultSegment, ToolErrorSegment]


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ModelMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class ModelRequest:
    """Everything a provider needs for one model turn."""

    system: str
    messages: tuple[ModelMessage, ...]
    tools: tuple[CatalogEntry, ...] = ()
    max_tokens: int | None = None
    temperature: float | None = None


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """Decode an accumulated arguments buffer into a JSON object.

    An empty buffer means the tool takes no arguments.
    """

    text = (raw or "").strip()
    if not text:
        return {}
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolArgumentsError(
            message=f"Invalid tool arguments: {exc.msg} at position {exc.pos}",
            raw_arguments=raw,
        ) from exc
    if not isinstance(decoded, dict):
        raise ToolArgumentsError(
            message=f"Tool arguments must be a JSON object, got {type(decoded).__name__}",
            raw_arguments=raw,
        )
    return decoded


__all__ = [
    "BlockKind",
    "TextBlock",
    "ToolUseBlock",
    "ContentBlock",
    "BlockStart",
    "TextDelta",
    "ArgumentsDelta",
    "BlockStop",
    "StreamEvent",
    "TextSegment",
    "ToolResultSegment",
    "ToolErrorSegment",
    "Segment",
    "ModelMessage",
    "ModelRequest",
    "parse_tool_arguments",
]
