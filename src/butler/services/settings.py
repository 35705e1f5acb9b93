"""Settings dataclass and environment overrides.

Settings live in memory for the session only; nothing is written to disk.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping

__all__ = [
    "Settings",
    "PROVIDER_CHOICES",
    "load_settings",
    "active_env_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
ENV_PREFIX = "BUTLER_"
PROVIDER_CHOICES: tuple[str, ...] = ("anthropic", "openai")
_ENV_OVERRIDES: Mapping[str, str] = {
    "BUTLER_API_KEY": "api_key",
    "BUTLER_PROVIDER": "provider",
    "BUTLER_BASE_URL": "base_url",
    "BUTLER_MODEL": "model",
    "BUTLER_WORKSPACE_ROOT": "workspace_root",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "BUTLER_DEBUG_LOGGING": "debug_logging",
    "BUTLER_AUTOSTART_FILESYSTEM": "autostart_filesystem",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "BUTLER_REQUEST_TIMEOUT": "request_timeout",
    "BUTLER_TEMPERATURE": "temperature",
    "BUTLER_RESTART_DELAY": "restart_delay",
    "BUTLER_CONNECT_TIMEOUT": "connect_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "BUTLER_MAX_TOKENS": "max_tokens",
    "BUTLER_MAX_RETRIES": "max_retries",
}
_PROVIDER_KEY_ENV: Mapping[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings for one session."""

    provider: str = "anthropic"
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    max_tokens: int = 4000
    temperature: float | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    restart_delay: float = 0.5
    connect_timeout: float = 30.0
    workspace_root: str | None = None
    autostart_filesystem: bool = True
    debug_logging: bool = False


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from defaults, then ``BUTLER_*`` variables, then ``overrides``."""

    env = os.environ if environ is None else environ
    settings = _apply_env_overrides(Settings(), env)
    if overrides:
        known = {f.name for f in fields(Settings)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
        settings = replace(settings, **dict(overrides))

    settings.provider = (settings.provider or "anthropic").strip().lower()
    if settings.provider not in PROVIDER_CHOICES:
        raise ValueError(f"Unknown provider '{settings.provider}'. Expected one of: {', '.join(PROVIDER_CHOICES)}")
    if not settings.api_key:
        fallback = _PROVIDER_KEY_ENV[settings.provider]
        settings.api_key = env.get(fallback, "")
        if settings.api_key:
            LOGGER.debug("Using API key from %s", fallback)
    return settings


def _apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    if not overrides:
        return settings
    return replace(settings, **overrides)


def active_env_overrides(environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    return sorted(name for name in env if name.startswith(ENV_PREFIX))


def redact_secret(value: str | None) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
