"""Qualified tool names and the flat, model-facing capability catalog.

Per-server tool groups are flattened into entries addressed by
``<server><SEPARATOR><tool>``. Server names may never contain the
separator, so splitting at the first separator recovers the pair exactly
even when the tool name itself contains it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..errors import InvalidServerConfigError, QualifiedNameError
from .models import Resource, Tool

SEPARATOR = "_"
NO_TOOLS_NOTICE = "No external tools are currently available. Answer using the provided context only."
_EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True, slots=True)
class ToolGroup:
    """Tools of one running server, as returned by ``get_available_tools``."""

    server_name: str
    tools: tuple[Tool, ...] = ()


@dataclass(frozen=True, slots=True)
class ResourceGroup:
    server_name: str
    resources: tuple[Resource, ...] = ()


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """A globally addressable tool presented to the model provider."""

    qualified_name: str
    server_name: str
    tool_name: str
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ResourceEntry:
    server_name: str
    resource: Resource

    @property
    def label(self) -> str:
        return f"[{self.server_name}] {self.resource.name} ({self.resource.uri})"


def validate_server_name(name: str) -> str:
    """Reject server names that would make qualified names ambiguous."""

    if not name or not name.strip():
        raise InvalidServerConfigError(message="Server name must not be empty", field_name="name")
    if SEPARATOR in name:
        raise InvalidServerConfigError(
            message=f"Server name '{name}' must not contain '{SEPARATOR}'",
            field_name="name",
            suggestion="Use '-' to separate words in server names",
        )
    return name


def qualify_tool_name(server_name: str, tool_name: str) -> str:
    if not server_name or SEPARATOR in server_name:
        raise QualifiedNameError(
            message=f"Cannot qualify tool '{tool_name}' for server '{server_name}'",
            name=f"{server_name}{SEPARATOR}{tool_name}",
        )
    if not tool_name:
        raise QualifiedNameError(message="Tool name must not be empty", name=server_name)
    return f"{server_name}{SEPARATOR}{tool_name}"


def split_qualified_name(qualified_name: str) -> tuple[str, str]:
    """Recover ``(server_name, tool_name)`` by cutting at the first separator."""

    server_name, sep, tool_name = (qualified_name or "").partition(SEPARATOR)
    if not sep or not server_name or not tool_name:
        raise QualifiedNameError(
            message=f"'{qualified_name}' is not a qualified tool name",
            name=qualified_name,
        )
    return server_name, tool_name


def display_tool_name(qualified_name: str) -> str:
    """Bare tool name for transcript labels; the raw name if it cannot be split."""

    try:
        return split_qualified_name(qualified_name)[1]
    except QualifiedNameError:
        return qualified_name


def build_tool_catalog(groups: Iterable[ToolGroup]) -> list[CatalogEntry]:
    entries: list[CatalogEntry] = []
    for group in groups:
        for tool in group.tools:
            entries.append(
                CatalogEntry(
                    qualified_name=qualify_tool_name(group.server_name, tool.name),
                    server_name=group.server_name,
                    tool_name=tool.name,
                    description=f"[{group.server_name}] {tool.description}".rstrip(),
                    input_schema=dict(tool.input_schema or _EMPTY_SCHEMA),
                )
            )
    return entries


def build_resource_catalog(groups: Iterable[ResourceGroup]) -> list[ResourceEntry]:
    return [
        ResourceEntry(server_name=group.server_name, resource=resource)
        for group in groups
        for resource in group.resources
    ]


def describe_catalog(
    entries: Sequence[CatalogEntry],
    resources: Sequence[ResourceEntry] = (),
) -> str:
    """Render the catalog as a bullet list for the system prompt."""

    if not entries:
        return NO_TOOLS_NOTICE
    lines = ["You can call the following tools:"]
    lines.extend(f"- {entry.qualified_name}: {entry.description}" for entry in entries)
    if resources:
        lines.append("")
        lines.append("Readable resources:")
        lines.extend(f"- {entry.label}" for entry in resources)
    return "\n".join(lines)


def to_anthropic_tools(entries: Iterable[CatalogEntry]) -> list[dict[str, Any]]:
    return [
        {
            "name": entry.qualified_name,
            "description": entry.description,
            "input_schema": dict(entry.input_schema),
        }
        for entry in entries
    ]


def to_openai_tools(entries: Iterable[CatalogEntry]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": entry.qualified_name,
                "description": entry.description,
                "parameters": dict(entry.input_schema),
            },
        }
        for entry in entries
    ]


__all__ = [
    "SEPARATOR",
    "NO_TOOLS_NOTICE",
    "ToolGroup",
    "ResourceGroup",
    "CatalogEntry",
    "ResourceEntry",
    "validate_server_name",
    "qualify_tool_name",
    "split_qualified_name",
    "display_tool_name",
    "build_tool_catalog",
    "build_resource_catalog",
    "describe_catalog",
    "to_anthropic_tools",
    "to_openai_tools",
]
