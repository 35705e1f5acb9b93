"""Capability servers: models, events, transport and the lifecycle registry."""

from .catalog import (
    SEPARATOR,
    CatalogEntry,
    ResourceEntry,
    ResourceGroup,
    ToolGroup,
    build_resource_catalog,
    build_tool_catalog,
    describe_catalog,
    display_tool_name,
    qualify_tool_name,
    split_qualified_name,
)
from .events import EVENT_NAMES, Event, EventBus, EventChannel
from .models import (
    FILESYSTEM_SERVER,
    Resource,
    ResourceContent,
    ServerCategory,
    ServerConfig,
    ServerInstance,
    ServerStatus,
    Tool,
    ToolResult,
    server_templates,
)
from .registry import ServerRegistry
from .transport import McpStdioTransport, TransportAdapter

__all__ = [
    "SEPARATOR",
    "CatalogEntry",
    "ResourceEntry",
    "ResourceGroup",
    "ToolGroup",
    "build_resource_catalog",
    "build_tool_catalog",
    "describe_catalog",
    "display_tool_name",
    "qualify_tool_name",
    "split_qualified_name",
    "EVENT_NAMES",
    "Event",
    "EventBus",
    "EventChannel",
    "FILESYSTEM_SERVER",
    "Resource",
    "ResourceContent",
    "ServerCategory",
    "ServerConfig",
    "ServerInstance",
    "ServerStatus",
    "Tool",
    "ToolResult",
    "server_templates",
    "ServerRegistry",
    "McpStdioTransport",
    "TransportAdapter",
]
