"""Tests for the settings layer."""

from __future__ import annotations

import pytest

from butler.services.settings import Settings, active_env_overrides, load_settings, redact_secret


def test_defaults_without_environment() -> None:
    settings = load_settings(environ={})

    assert settings == Settings()
    assert settings.provider == "anthropic"
    assert settings.max_tokens == 4000


def test_environment_overrides_are_typed() -> None:
    settings = load_settings(
        environ={
            "BUTLER_PROVIDER": "OpenAI",
            "BUTLER_API_KEY": "sk-test",
            "BUTLER_MAX_TOKENS": "1024",
            "BUTLER_TEMPERATURE": "0.3",
            "BUTLER_DEBUG_LOGGING": "yes",
            "BUTLER_AUTOSTART_FILESYSTEM": "off",
            "BUTLER_WORKSPACE_ROOT": "/repo",
        }
    )

    assert settings.provider == "openai"
    assert settings.api_key == "sk-test"
    assert settings.max_tokens == 1024
    assert settings.temperature == 0.3
    assert settings.debug_logging is True
    assert settings.autostart_filesystem is False
    assert settings.workspace_root == "/repo"


def test_invalid_numeric_environment_values_are_ignored(caplog: pytest.LogCaptureFixture) -> None:
    settings = load_settings(environ={"BUTLER_MAX_TOKENS": "lots", "BUTLER_REQUEST_TIMEOUT": "soon"})

    assert settings.max_tokens == 4000
    assert settings.request_timeout == 90.0
    assert "not a valid integer" in caplog.text


def test_overrides_win_over_environment() -> None:
    settings = load_settings({"model": "claude-opus"}, environ={"BUTLER_MODEL": "claude-haiku"})
    assert settings.model == "claude-opus"


def test_unknown_override_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown setting"):
        load_settings({"colour": "blue"}, environ={})


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown provider"):
        load_settings(environ={"BUTLER_PROVIDER": "mistral"})


@pytest.mark.parametrize(
    ("provider", "variable"),
    [("anthropic", "ANTHROPIC_API_KEY"), ("openai", "OPENAI_API_KEY")],
)
def test_provider_key_fallback(provider: str, variable: str) -> None:
    settings = load_settings({"provider": provider}, environ={variable: "from-env"})
    assert settings.api_key == "from-env"


def test_explicit_key_beats_provider_fallback() -> None:
    settings = load_settings(environ={"BUTLER_API_KEY": "explicit", "ANTHROPIC_API_KEY": "fallback"})
    assert settings.api_key == "explicit"


def test_active_env_overrides_lists_prefixed_variables() -> None:
    env = {"BUTLER_MODEL": "x", "BUTLER_API_KEY": "y", "HOME": "/root"}
    assert active_env_overrides(env) == ["BUTLER_API_KEY", "BUTLER_MODEL"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ""), ("", ""), ("abc", "***"), ("sk-secret", "sk*****et")],
)
def test_redact_secret(value: str | None, expected: str) -> None:
    assert redact_secret(value) == expected
