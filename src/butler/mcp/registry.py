"""Server registry and lifecycle controller.

The registry is the single owner of every :class:`ServerInstance`. It runs
the ``stopped -> starting -> running`` state machine through a
:class:`TransportAdapter`, aggregates the capabilities of running servers,
and routes tool/resource invocations to their owning server. Lifecycle
failures never escape ``start_server``/``stop_server``; they are recorded on
the instance and published on the event bus instead.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Mapping, Sequence

from ..errors import (
    DuplicateServerError,
    InvalidServerConfigError,
    ProtectedServerError,
    ServerNotFoundError,
    ServerNotRunningError,
    ToolNotFoundError,
    error_message,
)
from .catalog import (
    CatalogEntry,
    ResourceGroup,
    ToolGroup,
    build_tool_catalog,
    validate_server_name,
)
from .events import (
    Event,
    EventBus,
    Handler,
    ResourceFailed,
    ResourceRead,
    ServerAdded,
    ServerConfigUpdated,
    ServerRemoved,
    ServerStarted,
    ServerStatusChanged,
    ServerStopped,
    ToolCalled,
    ToolFailed,
)
from .models import (
    FILESYSTEM_SERVER,
    Resource,
    ServerConfig,
    ServerInstance,
    ServerStatus,
    Tool,
    default_filesystem_config,
    filesystem_base_args,
    server_templates,
)
from .transport import TransportAdapter, resource_from_payload, tool_from_payload

LOGGER = logging.getLogger(__name__)

DEFAULT_RESTART_DELAY = 0.5


class ServerRegistry:
    """Owns configured capability servers and drives their lifecycle.

    Example::

        registry = ServerRegistry(McpStdioTransport(), workspace_root="/src/app")
        await registry.start_server("filesystem")
        result = await registry.call_tool("filesystem", "read_file", {"path": "README.md"})
        await registry.cleanup()

    Operations on the same server are serialized by a per-server lock;
    operations on different servers may interleave freely.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        *,
        bus: EventBus | None = None,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        workspace_root: str | os.PathLike[str] | None = None,
        include_filesystem: bool = True,
    ) -> None:
        self._transport = transport
        self._bus = bus if bus is not None else EventBus()
        self._restart_delay = max(0.0, float(restart_delay))
        self._servers: dict[str, ServerInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task[bool]] = set()
        if include_filesystem:
            root = os.fspath(workspace_root) if workspace_root is not None else os.getcwd()
            config = default_filesystem_config(root)
            self._servers[config.name] = ServerInstance(config=config)

    # ------------------------------------------------------------------
    # Properties & events
    # ------------------------------------------------------------------

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def restart_delay(self) -> float:
        return self._restart_delay

    @restart_delay.setter
    def restart_delay(self, value: float) -> None:
        self._restart_delay = max(0.0, float(value))

    def add_event_listener(self, event: str | type[Event], handler: Handler) -> None:
        self._bus.add_event_listener(event, handler)

    def remove_event_listener(self, event: str | type[Event], handler: Handler) -> None:
        self._bus.remove_event_listener(event, handler)

    def _emit(self, event: Event) -> None:
        self._bus.publish(event)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_server(self, config: ServerConfig | Mapping[str, Any]) -> ServerInstance:
        """Register a new server in the ``stopped`` state."""

        if not isinstance(config, ServerConfig):
            config = ServerConfig.from_dict(config)
        validate_server_name(config.name)
        if config.name in self._servers:
            raise DuplicateServerError(server_name=config.name)

        instance = ServerInstance(config=config)
        self._servers[config.name] = instance
        LOGGER.info("Added server %s (%s)", config.name, config.category.value)
        self._emit(ServerAdded(server_name=config.name, config=config))
        return instance.snapshot()

    async def remove_server(self, name: str) -> None:
        """Stop (when needed) and forget ``name``. Unknown names are ignored."""

        if name == FILESYSTEM_SERVER:
            raise ProtectedServerError(server_name=name)
        instance = self._servers.get(name)
        if instance is None:
            return

        if instance.status is not ServerStatus.STOPPED:
            stopped = await self.stop_server(name)
            if not stopped:
                LOGGER.warning("Removing server %s after failed stop: %s", name, instance.error)

        self._servers.pop(name, None)
        self._locks.pop(name, None)
        LOGGER.info("Removed server %s", name)
        self._emit(ServerRemoved(server_name=name))

    def update_server_config(
        self,
        name: str,
        changes: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ServerConfig:
        """Shallow-merge ``changes`` into the config. Does not restart the server."""

        instance = self._require(name)
        merged = {**dict(changes or {}), **fields}
        if "name" in merged and merged["name"] != name:
            raise InvalidServerConfigError(
                message="Server names cannot be changed; remove and re-add the server",
                field_name="name",
            )
        updated = instance.config.with_updates(merged)
        instance.config = updated
        LOGGER.debug("Updated config for %s: %s", name, sorted(merged))
        self._emit(ServerConfigUpdated(server_name=name, config=updated))
        return updated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_server(self, name: str) -> bool:
        """Connect ``name`` and load its capabilities. Returns ``False`` on failure."""

        instance = self._require(name)
        async with self._lock_for(name):
            return await self._start_locked(instance)

    async def stop_server(self, name: str) -> bool:
        """Disconnect ``name``. Returns ``False`` when the transport refused."""

        instance = self._require(name)
        async with self._lock_for(name):
            return await self._stop_locked(instance)

    async def restart_server(self, name: str) -> bool:
        """Stop, wait ``restart_delay`` seconds, then start ``name``.

        The delay lets transports reap the previous process before a new
        one binds the same resources.
        """

        instance = self._require(name)
        async with self._lock_for(name):
            await self._stop_locked(instance)
            await asyncio.sleep(self._restart_delay)
            return await self._start_locked(instance)

    async def _start_locked(self, instance: ServerInstance) -> bool:
        name = instance.name
        if instance.status is ServerStatus.RUNNING:
            return True

        self._set_status(instance, ServerStatus.STARTING)
        config = instance.config
        connected = False
        try:
            if config.env:
                await self._transport.connect(name, config.command, list(config.args), env=dict(config.env))
            else:
                await self._transport.connect(name, config.command, list(config.args))
            connected = True
            tools = tuple(_as_tool(tool) for tool in await self._transport.list_tools(name))
        except Exception as exc:
            message = error_message(exc)
            LOGGER.warning("Failed to start server %s: %s", name, message)
            if connected:
                await self._discard_connection(name)
            instance.tools = ()
            instance.resources = ()
            self._set_status(instance, ServerStatus.ERROR, error=message)
            return False

        resources = await self._list_resources_guarded(name)

        instance.tools = tools
        instance.resources = resources
        instance.last_started = datetime.now(timezone.utc)
        self._set_status(instance, ServerStatus.RUNNING)
        LOGGER.info("Server %s running with %d tool(s), %d resource(s)", name, len(tools), len(resources))
        self._emit(ServerStarted(server_name=name, tools=tools, resources=resources))
        return True

    async def _stop_locked(self, instance: ServerInstance) -> bool:
        name = instance.name
        if instance.status is ServerStatus.STOPPED:
            return True

        try:
            await self._transport.disconnect(name)
        except Exception as exc:
            message = error_message(exc)
            LOGGER.warning("Failed to stop server %s: %s", name, message)
            instance.tools = ()
            instance.resources = ()
            self._set_status(instance, ServerStatus.ERROR, error=message)
            return False

        instance.tools = ()
        instance.resources = ()
        self._set_status(instance, ServerStatus.STOPPED)
        LOGGER.info("Server %s stopped", name)
        self._emit(ServerStopped(server_name=name))
        return True

    async def _list_resources_guarded(self, name: str) -> tuple[Resource, ...]:
        # Resource listing is optional for servers; failure means "no resources".
        try:
            return tuple(_as_resource(resource) for resource in await self._transport.list_resources(name))
        except Exception as exc:
            LOGGER.warning("Server %s does not list resources: %s", name, error_message(exc))
            return ()

    async def _discard_connection(self, name: str) -> None:
        try:
            await self._transport.disconnect(name)
        except Exception as exc:
            LOGGER.warning("Cleanup disconnect for %s failed: %s", name, error_message(exc))

    def _set_status(self, instance: ServerInstance, status: ServerStatus, *, error: str | None = None) -> None:
        instance.status = status
        instance.error = error
        LOGGER.debug("Server %s -> %s", instance.name, status.value)
        self._emit(ServerStatusChanged(server_name=instance.name, status=status, error=error))

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Workspace root
    # ------------------------------------------------------------------

    @property
    def workspace_root(self) -> str | None:
        instance = self._servers.get(FILESYSTEM_SERVER)
        if instance is None:
            return None
        base = _filesystem_prefix(instance.config.args)
        if len(instance.config.args) > len(base):
            return instance.config.args[-1]
        return None

    def set_workspace_root(self, path: str | os.PathLike[str] | None) -> asyncio.Task[bool]:
        """Point the filesystem server at ``path`` and schedule the matching lifecycle step.

        Returns the scheduled task; await it to observe the new root being
        served. ``None`` stops a running or starting filesystem server; the
        per-server lock orders that stop after any start already in flight.
        """

        instance = self._require(FILESYSTEM_SERVER)
        root = os.fspath(path) if path is not None else None
        prefix = _filesystem_prefix(instance.config.args)
        args = (*prefix, root) if root else prefix
        instance.config = replace(instance.config, args=args)
        LOGGER.info("Workspace root set to %s", root)
        self._emit(ServerConfigUpdated(server_name=FILESYSTEM_SERVER, config=instance.config))

        operation: Awaitable[bool]
        if root is None:
            if instance.status in (ServerStatus.RUNNING, ServerStatus.STARTING):
                operation = self.stop_server(FILESYSTEM_SERVER)
            else:
                operation = _resolved(True)
        elif instance.status in (ServerStatus.RUNNING, ServerStatus.STARTING):
            operation = self.restart_server(FILESYSTEM_SERVER)
        else:
            operation = self.start_server(FILESYSTEM_SERVER)
        return self._spawn(operation, name="workspace-root")

    def _spawn(self, operation: Awaitable[bool], *, name: str) -> asyncio.Task[bool]:
        task = asyncio.ensure_future(operation)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Mapping[str, Any] | None = None,
    ) -> Any:
        """Invoke ``tool_name`` on a running server; failures are emitted then re-raised."""

        instance = self._require(server_name)
        if not instance.is_running:
            raise ServerNotRunningError(server_name=server_name)
        if instance.find_tool(tool_name) is None:
            raise ToolNotFoundError(server_name=server_name, tool_name=tool_name)

        payload = dict(arguments or {})
        LOGGER.debug("Calling %s on %s with %s", tool_name, server_name, payload)
        try:
            result = await self._transport.call_tool(server_name, tool_name, payload)
        except Exception as exc:
            self._emit(
                ToolFailed(
                    server_name=server_name,
                    tool_name=tool_name,
                    arguments=payload,
                    error=error_message(exc),
                )
            )
            raise
        self._emit(ToolCalled(server_name=server_name, tool_name=tool_name, arguments=payload, result=result))
        return result

    async def read_resource(self, server_name: str, uri: str) -> Any:
        instance = self._require(server_name)
        if not instance.is_running:
            raise ServerNotRunningError(server_name=server_name)

        try:
            result = await self._transport.read_resource(server_name, uri)
        except Exception as exc:
            self._emit(ResourceFailed(server_name=server_name, uri=uri, error=error_message(exc)))
            raise
        self._emit(ResourceRead(server_name=server_name, uri=uri, result=result))
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_servers(self) -> list[ServerInstance]:
        return [instance.snapshot() for instance in self._servers.values()]

    def get_server(self, name: str) -> ServerInstance | None:
        instance = self._servers.get(name)
        return instance.snapshot() if instance is not None else None

    def get_running_servers(self) -> list[ServerInstance]:
        return [instance.snapshot() for instance in self._servers.values() if instance.is_running]

    def get_server_status(self, name: str) -> ServerStatus:
        instance = self._servers.get(name)
        return instance.status if instance is not None else ServerStatus.STOPPED

    def get_server_error(self, name: str) -> str | None:
        instance = self._servers.get(name)
        return instance.error if instance is not None else None

    def get_available_tools(self) -> list[ToolGroup]:
        return [
            ToolGroup(server_name=instance.name, tools=instance.tools)
            for instance in self._servers.values()
            if instance.is_running
        ]

    def get_available_resources(self) -> list[ResourceGroup]:
        return [
            ResourceGroup(server_name=instance.name, resources=instance.resources)
            for instance in self._servers.values()
            if instance.is_running
        ]

    def get_tool_catalog(self) -> list[CatalogEntry]:
        """Flat, qualified tool catalog of the running servers."""

        return build_tool_catalog(self.get_available_tools())

    @staticmethod
    def get_server_templates() -> list[ServerConfig]:
        return server_templates()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Stop every running server concurrently and drop all state and listeners."""

        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        running = [instance.name for instance in self._servers.values() if instance.is_running]
        if running:
            LOGGER.info("Stopping %d running server(s)", len(running))
            await asyncio.gather(*(self.stop_server(name) for name in running))

        self._servers.clear()
        self._locks.clear()
        self._background.clear()
        self._bus.clear()

    async def __aenter__(self) -> "ServerRegistry":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cleanup()

    def _require(self, name: str) -> ServerInstance:
        instance = self._servers.get(name)
        if instance is None:
            raise ServerNotFoundError(server_name=name)
        return instance


async def _resolved(value: bool) -> bool:
    return value


def _filesystem_prefix(args: Sequence[str]) -> tuple[str, ...]:
    """Args of the filesystem server without its root directory."""

    base = filesystem_base_args()
    package = base[-1]
    if package in args:
        index = list(args).index(package)
        return tuple(args[: index + 1])
    return base


def _as_tool(payload: Any) -> Tool:
    return payload if isinstance(payload, Tool) else tool_from_payload(payload)


def _as_resource(payload: Any) -> Resource:
    return payload if isinstance(payload, Resource) else resource_from_payload(payload)


__all__ = ["ServerRegistry", "DEFAULT_RESTART_DELAY"]
