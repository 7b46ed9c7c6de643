"""Tests for timeblocker configuration loading."""

from __future__ import annotations

import dataclasses

import pytest

from timeblocker.config import ConfigError, Settings, load_settings


class TestLoadSettingsHappyPath:
    """Tests for successful configuration loading."""

    def test_load_settings_with_required_vars(self, monkeypatch_env: dict[str, str]) -> None:
        """Only GEMINI_API_KEY set returns Settings with every default."""
        settings = load_settings()

        assert settings.gemini_api_key == "test-gemini-key-12345"
        assert settings.log_level == "INFO"
        assert settings.timezone == "UTC"
        assert settings.default_model == "gemini-2.0-flash"
        assert settings.request_timeout_seconds == 30.0
        assert settings.max_attempts == 3
        assert settings.daily_token_limit == 100_000
        assert settings.monthly_token_limit == 2_000_000
        assert settings.usage_retention_days == 30
        assert settings.cleanup_interval_seconds == 86_400.0

    def test_load_settings_custom_timezone(
        self, monkeypatch_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """TIMEZONE=Europe/Berlin is honoured."""
        monkeypatch.setenv("TIMEZONE", "Europe/Berlin")

        assert load_settings().timezone == "Europe/Berlin"

    def test_load_settings_numeric_overrides(
        self, monkeypatch_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Numeric variables are converted to their field types."""
        monkeypatch.setenv("MAX_ATTEMPTS", "5")
        monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("DAILY_TOKEN_LIMIT", "5000")

        settings = load_settings()

        assert settings.max_attempts == 5
        assert settings.request_timeout_seconds == 12.5
        assert settings.daily_token_limit == 5000

    def test_settings_is_frozen(self, monkeypatch_env: dict[str, str]) -> None:
        """Settings cannot be mutated after loading."""
        settings = load_settings()

        with pytest.raises(dataclasses.FrozenInstanceError):
            settings.timezone = "Asia/Tokyo"  # type: ignore[misc]

    def test_repr_masks_api_key(self) -> None:
        """The API key never appears in repr()."""
        settings = Settings(gemini_api_key="super-secret")

        assert "super-secret" not in repr(settings)
        assert "***" in repr(settings)


class TestLoadSettingsInvalid:
    """Tests for missing or invalid environment variables."""

    def test_missing_gemini_api_key(self, clean_env: None) -> None:
        """Missing GEMINI_API_KEY raises ConfigError naming the variable."""
        with pytest.raises(ConfigError, match="GEMINI_API_KEY"):
            load_settings()

    def test_blank_gemini_api_key(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        """Whitespace-only GEMINI_API_KEY counts as missing."""
        monkeypatch.setenv("GEMINI_API_KEY", "   ")

        with pytest.raises(ConfigError, match="GEMINI_API_KEY"):
            load_settings()

    def test_non_numeric_value(
        self, monkeypatch_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A non-numeric MAX_ATTEMPTS raises ConfigError naming it."""
        monkeypatch.setenv("MAX_ATTEMPTS", "three")

        with pytest.raises(ConfigError, match="MAX_ATTEMPTS"):
            load_settings()

    def test_non_positive_values_all_named(
        self, monkeypatch_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Every non-positive numeric variable is named in one error."""
        monkeypatch.setenv("DAILY_TOKEN_LIMIT", "0")
        monkeypatch.setenv("CLEANUP_INTERVAL_SECONDS", "-1")

        with pytest.raises(ConfigError) as exc_info:
            load_settings()

        message = str(exc_info.value)
        assert "DAILY_TOKEN_LIMIT" in message
        assert "CLEANUP_INTERVAL_SECONDS" in message
