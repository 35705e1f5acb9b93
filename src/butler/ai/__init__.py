"""Model providers, prompt templates and the tool-use response driver."""

from .client import AnthropicProvider, ClientSettings, ModelProvider, OpenAIProvider, build_provider
from .driver import ResponseDriver, render_tool_payload

__all__ = [
    "AnthropicProvider",
    "ClientSettings",
    "ModelProvider",
    "OpenAIProvider",
    "build_provider",
    "ResponseDriver",
    "render_tool_payload",
]
