"""Configuration loading for timeblocker.

Reads settings from environment variables (with .env support via
python-dotenv).  The resulting :class:`Settings` is built once at service
start and handed to :class:`~timeblocker.runtime.Services`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    """Process-wide settings.

    Attributes:
        gemini_api_key: API key for the model-completion endpoint.
        log_level: Logging level name.
        timezone: Default IANA timezone for requests that omit one.
        default_model: Model every template is sent to.
        request_timeout_seconds: Per-call timeout for model requests.
        max_attempts: Total attempts (first call plus retries) for
            transient model failures.
        daily_token_limit: Default per-user daily token quota.
        monthly_token_limit: Default per-user monthly token quota.
        usage_retention_days: Age after which usage records and idle
            sessions are pruned.
        cleanup_interval_seconds: Period of the maintenance sweep.
    """

    gemini_api_key: str
    log_level: str = "INFO"
    timezone: str = "UTC"
    default_model: str = "gemini-2.0-flash"
    request_timeout_seconds: float = 30.0
    max_attempts: int = 3
    daily_token_limit: int = 100_000
    monthly_token_limit: int = 2_000_000
    usage_retention_days: int = 30
    cleanup_interval_seconds: float = 86_400.0

    def __repr__(self) -> str:
        return (
            f"Settings(gemini_api_key='***', "
            f"log_level={self.log_level!r}, "
            f"timezone={self.timezone!r}, "
            f"default_model={self.default_model!r}, "
            f"request_timeout_seconds={self.request_timeout_seconds!r}, "
            f"max_attempts={self.max_attempts!r}, "
            f"daily_token_limit={self.daily_token_limit!r}, "
            f"monthly_token_limit={self.monthly_token_limit!r}, "
            f"usage_retention_days={self.usage_retention_days!r}, "
            f"cleanup_interval_seconds={self.cleanup_interval_seconds!r})"
        )


# env var -> (field name, converter)
_NUMERIC_SETTINGS: dict[str, tuple[str, type]] = {
    "REQUEST_TIMEOUT_SECONDS": ("request_timeout_seconds", float),
    "MAX_ATTEMPTS": ("max_attempts", int),
    "DAILY_TOKEN_LIMIT": ("daily_token_limit", int),
    "MONTHLY_TOKEN_LIMIT": ("monthly_token_limit", int),
    "USAGE_RETENTION_DAYS": ("usage_retention_days", int),
    "CLEANUP_INTERVAL_SECONDS": ("cleanup_interval_seconds", float),
}

_STRING_SETTINGS: dict[str, str] = {
    "LOG_LEVEL": "log_level",
    "TIMEZONE": "timezone",
    "DEFAULT_MODEL": "default_model",
}


def load_settings() -> Settings:
    """Load and validate settings from environment variables.

    Returns:
        A validated :class:`Settings` instance.

    Raises:
        ConfigError: If ``GEMINI_API_KEY`` is missing or blank, or if a
            numeric setting is not a positive number.  The message names
            every offending variable.
    """
    load_dotenv()

    api_key = os.environ.get("GEMINI_API_KEY", "")
    if not api_key.strip():
        raise ConfigError("Missing required environment variables: GEMINI_API_KEY")

    values: dict[str, object] = {"gemini_api_key": api_key}

    for env_var, field_name in _STRING_SETTINGS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[field_name] = raw

    invalid: list[str] = []
    for env_var, (field_name, convert) in _NUMERIC_SETTINGS.items():
        raw = os.environ.get(env_var, "").strip()
        if not raw:
            continue
        try:
            number = convert(raw)
        except ValueError:
            invalid.append(env_var)
            continue
        if number <= 0:
            invalid.append(env_var)
            continue
        values[field_name] = number

    if invalid:
        names = ", ".join(invalid)
        raise ConfigError(f"Invalid numeric environment variables: {names}")

    return Settings(**values)
