"""Tests for process-wide services and the maintenance scheduler."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from timeblocker.config import Settings
from timeblocker.runtime import MaintenanceScheduler, Services


def _make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "gemini_api_key": "test-key",
        "timezone": "Europe/London",
        "default_model": "gemini-2.5-flash",
        "request_timeout_seconds": 12.5,
        "max_attempts": 4,
        "daily_token_limit": 500,
        "monthly_token_limit": 5000,
        "usage_retention_days": 7,
        "cleanup_interval_seconds": 60.0,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _make_services(**overrides: object) -> Services:
    with patch("timeblocker.llm.genai.Client"):
        return Services.create(_make_settings(**overrides))


class TestMaintenanceScheduler:
    """Background sweep thread."""

    def test_runs_task_and_stops(self) -> None:
        """The task runs on each tick until stop() is called."""
        ran = threading.Event()
        scheduler = MaintenanceScheduler(ran.set, interval_seconds=0.01)

        scheduler.start()
        try:
            assert ran.wait(timeout=2.0)
            assert scheduler.is_running is True
        finally:
            scheduler.stop()

        assert scheduler.is_running is False

    def test_task_errors_do_not_kill_loop(self) -> None:
        """A failing sweep is logged and the next tick still runs."""
        calls: list[int] = []
        done = threading.Event()

        def _task() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            done.set()

        scheduler = MaintenanceScheduler(_task, interval_seconds=0.01)
        scheduler.start()
        try:
            assert done.wait(timeout=2.0)
        finally:
            scheduler.stop()

        assert len(calls) >= 2

    def test_start_twice_is_noop(self) -> None:
        scheduler = MaintenanceScheduler(lambda: None, interval_seconds=60)
        scheduler.start()
        try:
            first = scheduler._thread
            scheduler.start()
            assert scheduler._thread is first
        finally:
            scheduler.stop()

    def test_stop_without_start(self) -> None:
        MaintenanceScheduler(lambda: None, interval_seconds=1).stop()

    def test_invalid_interval(self) -> None:
        with pytest.raises(ValueError):
            MaintenanceScheduler(lambda: None, interval_seconds=0)


class TestServices:
    """Services.create() and lifecycle."""

    def test_create_wires_settings(self) -> None:
        """Limits, retries, timeout, timezone and model come from settings."""
        with patch("timeblocker.llm.genai.Client") as mock_client:
            services = Services.create(_make_settings())

        assert mock_client.call_args.kwargs["api_key"] == "test-key"
        assert mock_client.call_args.kwargs["http_options"].timeout == 12500
        assert services.client._max_attempts == 4
        assert services.tracker.check_limits("anyone").daily_limit == 500
        assert services.tracker.check_limits("anyone").monthly_limit == 5000
        prompt, tz_name = services.extractor.build_prompt("hi")
        assert tz_name == "Europe/London"
        assert services.extractor._config(prompt).model == "gemini-2.5-flash"
        assert services.scheduler.is_running is False

    def test_context_manager_starts_and_stops(self) -> None:
        services = _make_services()

        with services:
            assert services.scheduler.is_running is True

        assert services.scheduler.is_running is False

    def test_run_maintenance(self) -> None:
        """Maintenance prunes usage and idle sessions with the retention setting."""
        services = _make_services()
        services.tracker = MagicMock()
        services.store = MagicMock()
        services.tracker.prune.return_value = 2
        services.store.cleanup_old_data.return_value = 1

        services.run_maintenance()

        services.tracker.prune.assert_called_once_with(7)
        services.store.cleanup_old_data.assert_called_once_with(7)
