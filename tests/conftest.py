"""Shared fixtures for timeblocker tests."""

from __future__ import annotations

import logging
from collections.abc import Generator

import pytest

_OPTIONAL_VARS = (
    "LOG_LEVEL",
    "TIMEZONE",
    "DEFAULT_MODEL",
    "REQUEST_TIMEOUT_SECONDS",
    "MAX_ATTEMPTS",
    "DAILY_TOKEN_LIMIT",
    "MONTHLY_TOKEN_LIMIT",
    "USAGE_RETENTION_DAYS",
    "CLEANUP_INTERVAL_SECONDS",
)


@pytest.fixture()
def monkeypatch_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set the required environment variables to valid defaults.

    Also patches ``load_dotenv`` so that a real ``.env`` file on disk does not
    override the test values, and clears every optional variable.

    Returns the dict of variables so tests can inspect or override values.
    """
    monkeypatch.setattr("timeblocker.config.load_dotenv", lambda *_a, **_kw: None)
    for key in _OPTIONAL_VARS:
        monkeypatch.delenv(key, raising=False)
    env_vars = {"GEMINI_API_KEY": "test-gemini-key-12345"}
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all timeblocker-related environment variables.

    Patches ``load_dotenv`` so a real ``.env`` file cannot re-inject values
    that the test explicitly removed.
    """
    monkeypatch.setattr("timeblocker.config.load_dotenv", lambda *_a, **_kw: None)
    for key in ("GEMINI_API_KEY", *_OPTIONAL_VARS):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_root_logger() -> Generator[None, None, None]:
    """Reset the root logger after each test to prevent handler leaks."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
