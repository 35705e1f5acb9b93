"""Standardized error types for the capability-server engine.

This module provides a hierarchy of error classes with consistent
JSON serialization, grouped by how callers are expected to react:
configuration errors are rejected up front, invocation errors are raised
to the immediate caller, protocol errors degrade into inline transcript
fragments, and provider errors abort the current response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in error payloads."""

    # Configuration errors
    DUPLICATE_SERVER = "duplicate_server"
    PROTECTED_SERVER = "protected_server"
    SERVER_NOT_FOUND = "server_not_found"
    INVALID_SERVER_CONFIG = "invalid_server_config"

    # Invocation errors
    SERVER_NOT_RUNNING = "server_not_running"
    TOOL_NOT_FOUND = "tool_not_found"
    TRANSPORT_FAILURE = "transport_failure"

    # Protocol errors
    INVALID_QUALIFIED_NAME = "invalid_qualified_name"
    INVALID_TOOL_ARGUMENTS = "invalid_tool_arguments"
    PROTOCOL_VIOLATION = "protocol_violation"

    # Provider errors
    PROVIDER_FAILURE = "provider_failure"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ButlerError(Exception):
    """Base exception class for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    category: ClassVar[str] = "internal"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for UI/error payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "category": self.category,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Configuration Errors
# -----------------------------------------------------------------------------

@dataclass
class ConfigurationError(ButlerError):
    """Rejected registry configuration change. Never retried."""

    category: ClassVar[str] = "configuration"


@dataclass
class DuplicateServerError(ConfigurationError):
    """Raised when adding a server whose name is already registered."""

    error_code: str = field(default=ErrorCode.DUPLICATE_SERVER)
    message: str = field(default="A server with this name already exists")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Pick a different name or update the existing server")

    server_name: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.server_name is not None:
            self.message = f"Server {self.server_name} already exists"
        super().__post_init__()


@dataclass
class ProtectedServerError(ConfigurationError):
    """Raised when removing a server the registry must always keep."""

    error_code: str = field(default=ErrorCode.PROTECTED_SERVER)
    message: str = field(default="This server cannot be removed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Stop the server instead of removing it")

    server_name: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.server_name is not None:
            self.message = f"Server {self.server_name} is protected and cannot be removed"
        super().__post_init__()


@dataclass
class ServerNotFoundError(ConfigurationError):
    """Raised when a server name is not registered."""

    error_code: str = field(default=ErrorCode.SERVER_NOT_FOUND)
    message: str = field(default="Server not found")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use get_servers() to list configured servers")

    server_name: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.server_name is not None:
            self.message = f"Server {self.server_name} not found"
        super().__post_init__()


@dataclass
class InvalidServerConfigError(ConfigurationError):
    """Raised when a server configuration or partial update is malformed."""

    error_code: str = field(default=ErrorCode.INVALID_SERVER_CONFIG)
    message: str = field(default="Invalid server configuration")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    field_name: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field_name is not None:
            result["field"] = self.field_name
        return result


# -----------------------------------------------------------------------------
# Invocation Errors
# -----------------------------------------------------------------------------

@dataclass
class InvocationError(ButlerError):
    """Tool or resource invocation failure, raised to the immediate caller."""

    category: ClassVar[str] = "invocation"


@dataclass
class ServerNotRunningError(InvocationError):
    """Raised when invoking a server whose status is not ``running``."""

    error_code: str = field(default=ErrorCode.SERVER_NOT_RUNNING)
    message: str = field(default="Server is not running")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Start the server and retry")

    server_name: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.server_name is not None:
            self.message = f"Server {self.server_name} is not running"
        super().__post_init__()


@dataclass
class ToolNotFoundError(InvocationError):
    """Raised when a tool is absent from the server's current tool list."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="Tool not found")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Refresh the tool catalog; the server may have restarted")

    server_name: str | None = field(default=None)
    tool_name: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.tool_name is not None:
            self.message = f"Tool {self.tool_name} not found on server {self.server_name}"
        super().__post_init__()


@dataclass
class TransportError(InvocationError):
    """Failure reported by the transport adapter (connect, RPC, disconnect)."""

    error_code: str = field(default=ErrorCode.TRANSPORT_FAILURE)
    message: str = field(default="Transport operation failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    server_name: str | None = field(default=None)
    operation: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.server_name is not None:
            result["server"] = self.server_name
        if self.operation is not None:
            result["operation"] = self.operation
        return result


# -----------------------------------------------------------------------------
# Protocol Errors
# -----------------------------------------------------------------------------

@dataclass
class ProtocolError(ButlerError):
    """Malformed data coming back from the model provider."""

    category: ClassVar[str] = "protocol"


@dataclass
class QualifiedNameError(ProtocolError):
    """Raised when a qualified tool name cannot be built or split."""

    error_code: str = field(default=ErrorCode.INVALID_QUALIFIED_NAME)
    message: str = field(default="Invalid qualified tool name")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Qualified names take the form <server>_<tool>")

    name: str | None = field(default=None)


@dataclass
class ToolArgumentsError(ProtocolError):
    """Raised when assembled tool-call arguments do not decode to an object."""

    error_code: str = field(default=ErrorCode.INVALID_TOOL_ARGUMENTS)
    message: str = field(default="Tool arguments are not a valid JSON object")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    raw_arguments: str | None = field(default=None)


@dataclass
class ProtocolViolationError(ProtocolError):
    """Raised when the provider stream breaks the one-pending-call contract."""

    error_code: str = field(default=ErrorCode.PROTOCOL_VIOLATION)
    message: str = field(default="Provider stream violated the tool-use protocol")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


# -----------------------------------------------------------------------------
# Provider Errors
# -----------------------------------------------------------------------------

@dataclass
class ProviderError(ButlerError):
    """Model provider failure. Fatal to the current response only."""

    error_code: str = field(default=ErrorCode.PROVIDER_FAILURE)
    message: str = field(default="Model provider request failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the API key, model name and network connectivity")

    provider: str = field(default="provider")

    category: ClassVar[str] = "provider"

    def __post_init__(self) -> None:
        prefix = f"{self.provider} API error: "
        if not self.message.startswith(prefix):
            self.message = f"{prefix}{self.message}"
        super().__post_init__()

    def __str__(self) -> str:
        return self.message


def error_message(exc: BaseException) -> str:
    """Return the human-readable message carried by ``exc``."""

    if isinstance(exc, ButlerError):
        return exc.message
    text = str(exc)
    return text or type(exc).__name__


__all__ = [
    "ErrorCode",
    "ButlerError",
    "ConfigurationError",
    "DuplicateServerError",
    "ProtectedServerError",
    "ServerNotFoundError",
    "InvalidServerConfigError",
    "InvocationError",
    "ServerNotRunningError",
    "ToolNotFoundError",
    "TransportError",
    "ProtocolError",
    "QualifiedNameError",
    "ToolArgumentsError",
    "ProtocolViolationError",
    "ProviderError",
    "error_message",
]
