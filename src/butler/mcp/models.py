"""Capability descriptor models: server configs, instances, tools and resources."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from ..errors import InvalidServerConfigError

FILESYSTEM_SERVER = "filesystem"
_FILESYSTEM_PACKAGE = "@modelcontextprotocol/server-filesystem"


class ServerStatus(str, Enum):
    """Lifecycle states of a configured server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class ServerCategory(str, Enum):
    """Grouping used by the server picker."""

    FILESYSTEM = "filesystem"
    DATABASE = "database"
    WEB = "web"
    GIT = "git"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Launch configuration for a capability server, keyed by ``name``."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    description: str = ""
    category: ServerCategory = ServerCategory.CUSTOM

    def __post_init__(self) -> None:
        if isinstance(self.args, str):
            raise InvalidServerConfigError(
                message="Server args must be a sequence of strings, not a single string",
                field_name="args",
            )
        object.__setattr__(self, "args", tuple(str(arg) for arg in self.args))
        object.__setattr__(self, "env", {str(k): str(v) for k, v in dict(self.env or {}).items()})
        object.__setattr__(self, "category", _coerce_category(self.category))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerConfig":
        """Build a config from a UI/JSON payload."""

        unknown = set(data) - _CONFIG_FIELDS
        if unknown:
            raise InvalidServerConfigError(
                message=f"Unknown server config field(s): {', '.join(sorted(unknown))}",
                field_name=sorted(unknown)[0],
            )
        for required in ("name", "command"):
            if not data.get(required):
                raise InvalidServerConfigError(
                    message=f"Server config requires a non-empty '{required}'",
                    field_name=required,
                )
        return cls(**dict(data))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "description": self.description,
            "category": self.category.value,
        }

    def with_updates(self, changes: Mapping[str, Any]) -> "ServerConfig":
        """Return a copy with ``changes`` shallow-merged over this config."""

        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise InvalidServerConfigError(
                message=f"Unknown server config field(s): {', '.join(sorted(unknown))}",
                field_name=sorted(unknown)[0],
            )
        return replace(self, **dict(changes))

    def full_command(self) -> list[str]:
        return [self.command, *self.args]


_CONFIG_FIELDS = frozenset(f.name for f in fields(ServerConfig))


def _coerce_category(value: Any) -> ServerCategory:
    if isinstance(value, ServerCategory):
        return value
    try:
        return ServerCategory(str(value).lower())
    except ValueError as exc:
        raise InvalidServerConfigError(
            message=f"Unknown server category '{value}'",
            field_name="category",
        ) from exc


@dataclass(frozen=True, slots=True)
class Tool:
    """A schema-described callable exposed by a server."""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": dict(self.input_schema)}


@dataclass(frozen=True, slots=True)
class Resource:
    """A URI-addressed readable artifact exposed by a server."""

    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"uri": self.uri, "name": self.name}
        if self.description is not None:
            payload["description"] = self.description
        if self.mime_type is not None:
            payload["mimeType"] = self.mime_type
        return payload


def _render_items(items: Iterable[Mapping[str, Any]]) -> str:
    parts: list[str] = []
    for item in items:
        text = item.get("text")
        if isinstance(text, str):
            parts.append(text)
        else:
            parts.append(json.dumps(dict(item), ensure_ascii=False, default=str))
    return "\n".join(parts)


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of a tool invocation as returned by the transport."""

    content: tuple[Mapping[str, Any], ...] = ()
    is_error: bool = False

    @property
    def text(self) -> str:
        """Text items joined by newlines; other items JSON encoded."""

        return _render_items(self.content)


@dataclass(frozen=True, slots=True)
class ResourceContent:
    """Contents read from a resource URI."""

    uri: str
    contents: tuple[Mapping[str, Any], ...] = ()

    @property
    def text(self) -> str:
        return _render_items(self.contents)


@dataclass(slots=True)
class ServerInstance:
    """Runtime state of one configured server. Owned by the registry."""

    config: ServerConfig
    status: ServerStatus = ServerStatus.STOPPED
    error: str | None = None
    tools: tuple[Tool, ...] = ()
    resources: tuple[Resource, ...] = ()
    last_started: datetime | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self.status is ServerStatus.RUNNING

    @property
    def tool_count(self) -> int:
        return len(self.tools)

    def snapshot(self) -> "ServerInstance":
        """Return a detached copy safe to hand to callers."""

        return replace(self)

    def find_tool(self, tool_name: str) -> Tool | None:
        for tool in self.tools:
            if tool.name == tool_name:
                return tool
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "status": self.status.value,
            "error": self.error,
            "tools": [tool.to_dict() for tool in self.tools],
            "resources": [resource.to_dict() for resource in self.resources],
            "last_started": self.last_started.isoformat() if self.last_started else None,
        }


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------

_TEMPLATES: tuple[ServerConfig, ...] = (
    ServerConfig(
        name=FILESYSTEM_SERVER,
        command="npx",
        args=("-y", _FILESYSTEM_PACKAGE),
        description="Provides file system operations and navigation",
        category=ServerCategory.FILESYSTEM,
    ),
    ServerConfig(
        name="git",
        command="npx",
        args=("-y", "@modelcontextprotocol/server-git"),
        description="Git repository management and operations",
        category=ServerCategory.GIT,
    ),
    ServerConfig(
        name="sqlite",
        command="npx",
        args=("-y", "@modelcontextprotocol/server-sqlite"),
        description="SQLite database operations",
        category=ServerCategory.DATABASE,
    ),
    ServerConfig(
        name="postgres",
        command="npx",
        args=("-y", "@modelcontextprotocol/server-postgres"),
        description="PostgreSQL database operations",
        category=ServerCategory.DATABASE,
    ),
    ServerConfig(
        name="brave-search",
        command="npx",
        args=("-y", "@modelcontextprotocol/server-brave-search"),
        description="Web search using Brave Search API",
        category=ServerCategory.WEB,
    ),
)


def server_templates() -> list[ServerConfig]:
    """Pre-configured server definitions offered by the server picker."""

    return [replace(template) for template in _TEMPLATES]


def filesystem_base_args() -> tuple[str, ...]:
    return ("-y", _FILESYSTEM_PACKAGE)


def default_filesystem_config(root: str | None) -> ServerConfig:
    """Config for the reserved filesystem server rooted at ``root``."""

    args: Sequence[str] = filesystem_base_args()
    if root:
        args = (*args, root)
    return ServerConfig(
        name=FILESYSTEM_SERVER,
        command="npx",
        args=tuple(args),
        description="Provides file system operations and navigation",
        category=ServerCategory.FILESYSTEM,
    )


__all__ = [
    "FILESYSTEM_SERVER",
    "ServerStatus",
    "ServerCategory",
    "ServerConfig",
    "ServerInstance",
    "Tool",
    "Resource",
    "ToolResult",
    "ResourceContent",
    "server_templates",
    "filesystem_base_args",
    "default_filesystem_config",
]
