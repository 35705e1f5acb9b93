"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from butler.mcp.registry import ServerRegistry
from tests.helpers import FakeTransport, make_tool


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(
        tools={
            "filesystem": [make_tool("read_file"), make_tool("list_directory")],
            "git": [make_tool("status"), make_tool("log")],
            "server": [make_tool("echo")],
        }
    )


@pytest.fixture
def registry(transport: FakeTransport) -> ServerRegistry:
    return ServerRegistry(transport, restart_delay=0.0, workspace_root="/workspace")
