"""Data models for token usage accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field

from timeblocker.models.events import UtcDatetime


class TokenCounts(BaseModel):
    """Token counts reported by the model endpoint for one call."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class TokenUsageRecord(BaseModel):
    """Append-only log entry for one model invocation.

    Attributes:
        prompt_tokens: Input tokens.
        completion_tokens: Output tokens.
        total_tokens: ``prompt_tokens + completion_tokens``.
        model: Model identifier the call was made against.
        timestamp: When the usage was recorded (UTC).
        cost: Derived cost in USD.
        request_id: Caller-supplied id for the logical request.
        user_id: User the usage is attributed to, or ``None`` for usage
            that counts against every user's quota.
    """

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)
    model: str
    timestamp: UtcDatetime
    cost: float = Field(ge=0.0)
    request_id: str
    user_id: str | None = None


@dataclass
class ModelUsage:
    tokens: int = 0
    cost: float = 0.0
    requests: int = 0


@dataclass
class UsageStats:
    """Aggregate usage over a timeframe."""

    total_tokens: int = 0
    total_cost: float = 0.0
    requests_count: int = 0
    average_tokens_per_request: float = 0.0
    cost_per_token: float = 0.0
    model_breakdown: dict[str, ModelUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class LimitStatus:
    """Result of an advisory quota check.

    Attributes:
        daily_exceeded: Tokens used today strictly exceed ``daily_limit``.
        monthly_exceeded: Tokens used this month strictly exceed
            ``monthly_limit``.
        daily_usage: Tokens used in the current UTC day.
        monthly_usage: Tokens used in the current UTC month.
        daily_limit: Effective daily limit for the user.
        monthly_limit: Effective monthly limit for the user.
    """

    daily_exceeded: bool
    monthly_exceeded: bool
    daily_usage: int
    monthly_usage: int
    daily_limit: int
    monthly_limit: int

    @property
    def exceeded(self) -> bool:
        return self.daily_exceeded or self.monthly_exceeded


@dataclass(frozen=True)
class ModelRecommendation:
    model: str
    max_tokens: int
    temperature: float
    reasoning: str
