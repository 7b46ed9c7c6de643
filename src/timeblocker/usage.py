"""Token usage and cost accounting.

:class:`TokenTracker` keeps an append-only, in-process log of
:class:`~timeblocker.models.usage.TokenUsageRecord` entries and answers
aggregate and quota questions about it.  It is shared by concurrent
pipeline runs, so every read and write happens under one lock.

Quota checks are advisory: :meth:`TokenTracker.check_limits` reports,
the caller decides whether to block.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Literal

from timeblocker.models.usage import (
    LimitStatus,
    ModelRecommendation,
    ModelUsage,
    TokenUsageRecord,
    UsageStats,
)

logger = logging.getLogger(__name__)

Timeframe = Literal["hour", "day", "week", "month"]
TaskType = Literal["calendar", "chat", "analysis", "generation"]

DEFAULT_DAILY_LIMIT = 100_000
DEFAULT_MONTHLY_LIMIT = 2_000_000
DEFAULT_RETENTION_DAYS = 30
DEFAULT_PRICING_MODEL = "gemini-2.0-flash"

# USD per token: (input, output).
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gemini-2.0-flash": (0.10 / 1_000_000, 0.40 / 1_000_000),
    "gemini-2.0-flash-lite": (0.075 / 1_000_000, 0.30 / 1_000_000),
    "gemini-2.5-flash": (0.30 / 1_000_000, 2.50 / 1_000_000),
    "gemini-2.5-pro": (1.25 / 1_000_000, 10.00 / 1_000_000),
}

_TIMEFRAMES: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

# Average tokens per request above which a cheaper model is suggested.
_HIGH_AVERAGE_TOKENS = 2000
# Daily tokens above which recommendations switch to the cheapest model.
_HIGH_DAILY_USAGE = 50_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(now: datetime) -> datetime:
    return _day_start(now).replace(day=1)


class TokenTracker:
    """Append-only token usage log with cost and quota accounting.

    Args:
        daily_limit: Default daily token limit per user.
        monthly_limit: Default monthly token limit per user.
        default_pricing_model: Model whose rates apply to unknown models.
        clock: Returns the current time; must be timezone-aware.
    """

    def __init__(
        self,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        monthly_limit: int = DEFAULT_MONTHLY_LIMIT,
        default_pricing_model: str = DEFAULT_PRICING_MODEL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if default_pricing_model not in MODEL_COSTS:
            raise ValueError(f"No pricing for default model {default_pricing_model!r}")
        _check_limit("daily_limit", daily_limit)
        _check_limit("monthly_limit", monthly_limit)

        self._records: list[TokenUsageRecord] = []
        self._daily_limits: dict[str, int] = {}
        self._monthly_limits: dict[str, int] = {}
        self._default_daily = daily_limit
        self._default_monthly = monthly_limit
        self._default_pricing_model = default_pricing_model
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def track_usage(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        model: str,
        request_id: str,
        user_id: str | None = None,
    ) -> TokenUsageRecord:
        """Append a usage record and return it.

        Raises:
            ValueError: If a token count is negative.
        """
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError(
                f"Token counts must be non-negative, got "
                f"prompt={prompt_tokens}, completion={completion_tokens}"
            )

        record = TokenUsageRecord(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=model,
            timestamp=self._clock(),
            cost=self.estimate_cost(prompt_tokens, completion_tokens, model),
            request_id=request_id,
            user_id=user_id,
        )
        with self._lock:
            self._records.append(record)

        logger.debug(
            "Tracked %d tokens ($%.6f) for request %s on %s",
            record.total_tokens,
            record.cost,
            request_id,
            model,
        )
        return record

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str) -> float:
        """Cost in USD of a call; unknown models use the default model's rates."""
        rates = MODEL_COSTS.get(model)
        if rates is None:
            logger.warning(
                "Unknown model %r, using %s pricing", model, self._default_pricing_model
            )
            rates = MODEL_COSTS[self._default_pricing_model]
        input_rate, output_rate = rates
        return prompt_tokens * input_rate + completion_tokens * output_rate

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def get_usage_stats(
        self,
        timeframe: Timeframe = "day",
        user_id: str | None = None,
    ) -> UsageStats:
        """Aggregate usage over a rolling *timeframe* ending now.

        Args:
            timeframe: ``hour``, ``day``, ``week`` or ``month`` (30 days).
            user_id: Restrict to records attributed to this user (plus
                unattributed records).  ``None`` aggregates everything.
        """
        if timeframe not in _TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe!r}")
        cutoff = self._clock() - _TIMEFRAMES[timeframe]
        return _aggregate(self._select(cutoff, user_id))

    def check_limits(self, user_id: str) -> LimitStatus:
        """Compare the user's usage in the current UTC day and month to limits.

        Unattributed usage counts against every user.  A limit is
        exceeded only when usage is strictly greater than it.
        """
        now = self._clock().astimezone(timezone.utc)
        with self._lock:
            daily_limit = self._daily_limits.get(user_id, self._default_daily)
            monthly_limit = self._monthly_limits.get(user_id, self._default_monthly)
            records = list(self._records)

        day_start = _day_start(now)
        month_start = _month_start(now)
        daily_usage = 0
        monthly_usage = 0
        for record in records:
            if record.user_id not in (None, user_id):
                continue
            if record.timestamp >= month_start:
                monthly_usage += record.total_tokens
                if record.timestamp >= day_start:
                    daily_usage += record.total_tokens

        status = LimitStatus(
            daily_exceeded=daily_usage > daily_limit,
            monthly_exceeded=monthly_usage > monthly_limit,
            daily_usage=daily_usage,
            monthly_usage=monthly_usage,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
        )
        if status.exceeded:
            logger.warning(
                "User %s over quota: daily %d/%d, monthly %d/%d",
                user_id,
                daily_usage,
                daily_limit,
                monthly_usage,
                monthly_limit,
            )
        return status

    def set_limits(self, user_id: str, daily_limit: int, monthly_limit: int) -> None:
        """Override the quota for one user; takes effect on the next check."""
        _check_limit("daily_limit", daily_limit)
        _check_limit("monthly_limit", monthly_limit)
        with self._lock:
            self._daily_limits[user_id] = daily_limit
            self._monthly_limits[user_id] = monthly_limit

    # ------------------------------------------------------------------
    # Advice
    # ------------------------------------------------------------------

    def get_model_recommendation(self, task_type: TaskType) -> ModelRecommendation:
        """Suggest a model for *task_type*, cheaper under heavy daily use."""
        heavy = self.get_usage_stats("day").total_tokens > _HIGH_DAILY_USAGE
        cheap = "gemini-2.0-flash-lite"

        if task_type == "calendar":
            return ModelRecommendation(
                model=cheap if heavy else "gemini-2.0-flash",
                max_tokens=1000,
                temperature=0.3,
                reasoning="Calendar parsing needs precise, structured output",
            )
        if task_type == "chat":
            return ModelRecommendation(
                model=cheap if heavy else "gemini-2.5-flash",
                max_tokens=1500,
                temperature=0.7,
                reasoning="Chat needs conversational ability and context",
            )
        if task_type == "analysis":
            return ModelRecommendation(
                model="gemini-2.5-pro",
                max_tokens=2000,
                temperature=0.4,
                reasoning="Analysis needs complex reasoning and detailed output",
            )
        if task_type == "generation":
            return ModelRecommendation(
                model=cheap if heavy else "gemini-2.5-flash",
                max_tokens=2000,
                temperature=0.8,
                reasoning="Generation benefits from creativity and longer output",
            )
        return ModelRecommendation(
            model=self._default_pricing_model,
            max_tokens=1000,
            temperature=0.7,
            reasoning="Default recommendation for general use",
        )

    def get_optimization_suggestions(self) -> list[ModelRecommendation]:
        """Cost-saving suggestions based on the last day's usage."""
        stats = self.get_usage_stats("day")
        suggestions: list[ModelRecommendation] = []

        pro_usage = stats.model_breakdown.get("gemini-2.5-pro")
        if pro_usage is not None and pro_usage.tokens > 0:
            suggestions.append(
                ModelRecommendation(
                    model="gemini-2.5-flash",
                    max_tokens=1000,
                    temperature=0.7,
                    reasoning="Most requests do not need the pro model",
                )
            )
        if stats.average_tokens_per_request > _HIGH_AVERAGE_TOKENS:
            suggestions.append(
                ModelRecommendation(
                    model="gemini-2.0-flash-lite",
                    max_tokens=1000,
                    temperature=0.7,
                    reasoning="Average request size is high; cap output tokens",
                )
            )
        return suggestions

    # ------------------------------------------------------------------
    # Retention and transport
    # ------------------------------------------------------------------

    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Drop records older than *retention_days*.

        Records from the current UTC month are always kept, so the
        monthly quota window stays complete.

        Returns:
            Number of records removed.
        """
        now = self._clock().astimezone(timezone.utc)
        cutoff = min(now - timedelta(days=retention_days), _month_start(now))
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp >= cutoff]
            removed = before - len(self._records)
        if removed:
            logger.info("Pruned %d usage record(s) older than %s", removed, cutoff.isoformat())
        return removed

    def export_usage(self) -> list[TokenUsageRecord]:
        with self._lock:
            return list(self._records)

    def import_usage(self, records: Iterable[TokenUsageRecord | dict]) -> int:
        """Append previously exported records; returns how many were added."""
        validated = [
            r if isinstance(r, TokenUsageRecord) else TokenUsageRecord.model_validate(r)
            for r in records
        ]
        with self._lock:
            self._records.extend(validated)
        return len(validated)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _select(self, cutoff: datetime, user_id: str | None) -> list[TokenUsageRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r
            for r in records
            if r.timestamp >= cutoff and (user_id is None or r.user_id in (None, user_id))
        ]


def _check_limit(name: str, value: int) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


def _aggregate(records: list[TokenUsageRecord]) -> UsageStats:
    breakdown: dict[str, ModelUsage] = {}
    total_tokens = 0
    total_cost = 0.0

    for record in records:
        total_tokens += record.total_tokens
        total_cost += record.cost
        usage = breakdown.setdefault(record.model, ModelUsage())
        usage.tokens += record.total_tokens
        usage.cost += record.cost
        usage.requests += 1

    count = len(records)
    return UsageStats(
        total_tokens=total_tokens,
        total_cost=total_cost,
        requests_count=count,
        average_tokens_per_request=total_tokens / count if count else 0.0,
        cost_per_token=total_cost / total_tokens if total_tokens else 0.0,
        model_breakdown=breakdown,
    )
