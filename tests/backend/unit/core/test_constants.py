"""Tests for constants module.

Tests settings validation, derived properties and conversation limits.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from pydantic import ValidationError

from core.constants import (
    CONTROL_CHARACTERS_PATTERN,
    PROMPT_INJECTION_PATTERNS,
    ConversationLimits,
    Settings,
    _SettingsManager,
)

VALID_OPENAI_KEY = "sk-test-1234567890"
VALID_AZURE_KEY = "a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep real .env files and provider variables out of settings construction."""
    for var in (
        "API_PROVIDER",
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "AZURE_OPENAI_ENDPOINT",
        "APP_ENV",
        "THREAD_STATE_BACKEND",
        "REDIS_URL",
        "ALLOW_LOCALHOST_NOAUTH",
    ):
        monkeypatch.delenv(var, raising=False)
    with patch("core.constants._get_env_files", return_value=[]):
        yield


def _openai(**overrides: Any) -> Settings:
    kwargs: dict[str, Any] = {"api_provider": "openai", "openai_api_key": VALID_OPENAI_KEY}
    kwargs.update(overrides)
    return Settings(**kwargs)


class TestConstants:
    def test_control_characters_pattern_keeps_whitespace(self) -> None:
        assert CONTROL_CHARACTERS_PATTERN.sub("", "a\x00b\tc\nd\re\x7f") == "ab\tc\nd\re"

    def test_injection_patterns_are_lowercase(self) -> None:
        assert all(p == p.lower() for p in PROMPT_INJECTION_PATTERNS)


class TestSettingsValidation:
    def test_openai_provider(self) -> None:
        settings = _openai()

        assert settings.api_provider == "openai"
        assert settings.thread_state_backend == "memory"
        assert settings.is_development is True

    def test_provider_is_normalized(self) -> None:
        assert _openai(api_provider="OpenAI").api_provider == "openai"

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValidationError, match="api_provider"):
            Settings(api_provider="anthropic", openai_api_key=VALID_OPENAI_KEY)

    def test_openai_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="openai_api_key is required"):
            Settings(api_provider="openai")

    def test_short_api_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Invalid API key format"):
            Settings(api_provider="openai", openai_api_key="short")

    def test_azure_requires_endpoint(self) -> None:
        with pytest.raises(ValidationError, match="azure_openai_endpoint is required"):
            Settings(api_provider="azure", azure_openai_api_key=VALID_AZURE_KEY)

    def test_azure_endpoint_gets_trailing_slash(self) -> None:
        settings = Settings(
            api_provider="azure",
            azure_openai_api_key=VALID_AZURE_KEY,
            azure_openai_endpoint="https://test.openai.azure.com",
        )

        assert settings.azure_endpoint_str == "https://test.openai.azure.com/"

    def test_redis_backend_requires_url(self) -> None:
        with pytest.raises(ValidationError, match="redis_url is required"):
            _openai(thread_state_backend="redis")

        assert _openai(thread_state_backend="REDIS", redis_url="redis://localhost:6379/0").thread_state_backend == "redis"

    def test_unknown_thread_state_backend_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _openai(thread_state_backend="memcached")

    def test_trim_target_must_be_below_budget(self) -> None:
        with pytest.raises(ValidationError, match="context_trim_target"):
            _openai(context_token_budget=4000, context_trim_target=4000)

    def test_hard_limit_must_cover_operational_limit(self) -> None:
        with pytest.raises(ValidationError, match="message_hard_limit"):
            _openai(max_message_length=20_000, message_hard_limit=10_000)

    def test_production_forbids_localhost_noauth(self) -> None:
        with pytest.raises(ValidationError, match="allow_localhost_noauth"):
            _openai(app_env="production")

        settings = _openai(app_env="PRODUCTION", allow_localhost_noauth=False)
        assert settings.is_production is True

    def test_invalid_app_env_rejected(self) -> None:
        with pytest.raises(ValidationError, match="app_env"):
            _openai(app_env="staging")

    def test_cors_origins_list(self) -> None:
        settings = _openai(cors_allow_origins="https://a.example, https://b.example,,")

        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]

    def test_environment_variables_are_read(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("API_PROVIDER", "openai")
        monkeypatch.setenv("OPENAI_API_KEY", VALID_OPENAI_KEY)
        monkeypatch.setenv("WS_MAX_CONNECTIONS_PER_CONVERSATION", "7")

        settings = Settings()

        assert settings.ws_max_connections_per_conversation == 7


class TestConversationLimits:
    def test_defaults(self) -> None:
        limits = ConversationLimits()

        assert limits.max_message_length == 10_000
        assert limits.title_max_length == 50
        assert limits.list_limit == 50
        assert limits.thread_ttl_hours == 24
        assert limits.serialize_sends is True

    def test_from_settings(self) -> None:
        settings = _openai(
            max_message_length=500,
            context_token_budget=3000,
            context_trim_target=2000,
            list_conversations_limit=20,
            serialize_conversation_sends=False,
        )

        limits = ConversationLimits.from_settings(settings)

        assert limits.max_message_length == 500
        assert limits.context_token_budget == 3000
        assert limits.context_trim_target == 2000
        assert limits.list_limit == 20
        assert limits.serialize_sends is False


class TestSettingsManager:
    def test_settings_cached_without_hot_reload(self) -> None:
        manager = _SettingsManager()
        instance = MagicMock(config_hot_reload=False)

        with (
            patch("core.constants.Settings", return_value=instance) as settings_cls,
            patch("core.constants._reload_dotenv_into_environ"),
        ):
            assert manager.get() is instance
            assert manager.get() is instance

        settings_cls.assert_called_once()

    def test_hot_reload_rebuilds_each_time(self) -> None:
        manager = _SettingsManager()

        with (
            patch("core.constants.Settings", side_effect=lambda: MagicMock(config_hot_reload=True)) as settings_cls,
            patch("core.constants._reload_dotenv_into_environ"),
        ):
            first = manager.get()
            second = manager.get()

        assert first is not second
        assert settings_cls.call_count == 2

    def test_clear_and_reload(self) -> None:
        manager = _SettingsManager()

        with (
            patch("core.constants.Settings", side_effect=lambda: MagicMock(config_hot_reload=False)),
            patch("core.constants._reload_dotenv_into_environ") as reload_env,
        ):
            first = manager.get()
            manager.clear()
            second = manager.get()
            third = manager.reload()

        assert len({id(first), id(second), id(third)}) == 3
        assert reload_env.call_count == 3
