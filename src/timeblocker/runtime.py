"""Process-wide services and their lifecycle.

:class:`Services` builds the shared components once (conversation store,
token tracker, completion client, extractor, pipeline) and hands them
out as an explicit handle.  Nothing is created or started at import
time: the owner calls :meth:`Services.start` to launch the maintenance
sweep and :meth:`Services.shutdown` to stop it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from timeblocker.config import Settings
from timeblocker.conflicts import ConflictDetector
from timeblocker.conversation import ConversationStore
from timeblocker.extractor import EventExtractor
from timeblocker.llm import CompletionClient
from timeblocker.pipeline import SchedulingPipeline
from timeblocker.usage import TokenTracker

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs a maintenance callback on a fixed interval in a daemon thread.

    The first sweep happens one interval after :meth:`start`.

    Args:
        task: Callback run on every tick.
        interval_seconds: Seconds between ticks.
        name: Thread name.
    """

    def __init__(
        self,
        task: Callable[[], None],
        interval_seconds: float,
        name: str = "timeblocker-maintenance",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._task = task
        self._interval = interval_seconds
        self._name = name
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()
        logger.info("Maintenance scheduler started (every %.0fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and wait up to *timeout* seconds for the thread."""
        if self._thread is None:
            return

        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Maintenance thread did not stop within %.1fs", timeout)
        self._thread = None
        logger.info("Maintenance scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._task()
            except Exception:
                logger.exception("Maintenance sweep failed")


@dataclass
class Services:
    """Handle to the process-wide components.

    Attributes:
        settings: Settings the services were built from.
        store: Shared conversation store.
        tracker: Shared token tracker.
        client: Completion client.
        extractor: Event extractor.
        detector: Conflict detector.
        pipeline: Scheduling pipeline wired to all of the above.
        scheduler: Maintenance sweep; started by :meth:`start`.
    """

    settings: Settings
    store: ConversationStore
    tracker: TokenTracker
    client: CompletionClient
    extractor: EventExtractor
    detector: ConflictDetector
    pipeline: SchedulingPipeline
    scheduler: MaintenanceScheduler = field(init=False)

    def __post_init__(self) -> None:
        self.scheduler = MaintenanceScheduler(
            self.run_maintenance,
            self.settings.cleanup_interval_seconds,
        )

    @classmethod
    def create(cls, settings: Settings) -> Services:
        """Build every component from *settings*.  Starts nothing."""
        store = ConversationStore()
        tracker = TokenTracker(
            daily_limit=settings.daily_token_limit,
            monthly_limit=settings.monthly_token_limit,
        )
        client = CompletionClient(
            api_key=settings.gemini_api_key,
            timeout_seconds=settings.request_timeout_seconds,
            max_attempts=settings.max_attempts,
        )
        extractor = EventExtractor(
            client,
            default_timezone=settings.timezone,
            model_override=settings.default_model,
        )
        detector = ConflictDetector()
        pipeline = SchedulingPipeline(
            extractor,
            detector,
            store,
            tracker,
            default_timezone=settings.timezone,
        )
        logger.debug("Services created: %r", settings)
        return cls(
            settings=settings,
            store=store,
            tracker=tracker,
            client=client,
            extractor=extractor,
            detector=detector,
            pipeline=pipeline,
        )

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        """Stop background work.  Stored state is left in place."""
        self.scheduler.stop()

    def run_maintenance(self) -> None:
        """Prune usage records and idle sessions past the retention window."""
        days = self.settings.usage_retention_days
        pruned = self.tracker.prune(days)
        removed = self.store.cleanup_old_data(days)
        logger.info("Maintenance: pruned %d usage record(s), %d session(s)", pruned, removed)

    def __enter__(self) -> Services:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
