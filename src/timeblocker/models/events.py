"""Pydantic models for extracted events and detected conflicts.

- :class:`CandidateEvent` -- an event parsed from model output, with
  timezone-aware datetimes.  Immutable once built.
- :class:`ExistingEvent` -- an event already on the user's calendar,
  supplied by the caller for conflict detection and prompt context.
- :class:`Conflict` -- a detected collision between two events.
- :class:`ReportedConflict` -- a conflict note the model itself reported.
- :class:`ParsedResponse` -- the validated model response.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

Category = Literal["work", "personal", "meeting", "break", "focus", "other"]
Priority = Literal["low", "medium", "high", "urgent"]
ConflictType = Literal["overlap", "same_time", "insufficient_break", "travel_time"]
Severity = Literal["low", "medium", "high"]

CATEGORIES: frozenset[str] = frozenset(
    {"work", "personal", "meeting", "break", "focus", "other"}
)
PRIORITIES: frozenset[str] = frozenset({"low", "medium", "high", "urgent"})
CONFLICT_TYPES: frozenset[str] = frozenset(
    {"overlap", "same_time", "insufficient_break", "travel_time"}
)
SEVERITIES: frozenset[str] = frozenset({"low", "medium", "high"})

DEFAULT_CATEGORY: Category = "other"
DEFAULT_PRIORITY: Priority = "medium"


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Stored timestamps; naive input (e.g. from an old export) is read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# ---------------------------------------------------------------------------
# CandidateEvent
# ---------------------------------------------------------------------------


class CandidateEvent(BaseModel):
    """A calendar event extracted from natural language.

    Attributes:
        title: Non-empty event title.
        start_time: Event start (timezone-aware).
        end_time: Event end; never before ``start_time``.
        is_all_day: Whether the event spans whole days.
        recurrence_rule: Optional RRULE text.
        location: Optional location.
        description: Optional free-text description.
        category: One of :data:`CATEGORIES`.
        priority: One of :data:`PRIORITIES`.
        confidence: Model confidence in ``[0, 1]``.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["candidate"] = "candidate"
    title: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence_rule: str | None = None
    location: str | None = None
    description: str | None = None
    category: Category = DEFAULT_CATEGORY
    priority: Priority = DEFAULT_PRIORITY
    confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_chronology(self) -> CandidateEvent:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self


# ---------------------------------------------------------------------------
# ExistingEvent
# ---------------------------------------------------------------------------


class ExistingEvent(BaseModel):
    """An event already on the user's calendar.

    Resolved by the caller from external storage; the core never fetches
    these itself.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["existing"] = "existing"
    title: str
    start_time: datetime
    end_time: datetime
    id: str | None = None
    location: str | None = None
    is_all_day: bool = False

    @model_validator(mode="after")
    def _check_chronology(self) -> ExistingEvent:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self


# Tagged by ``kind`` so stored conflicts deserialize to the right class.
AnyEvent = Annotated[Union[CandidateEvent, ExistingEvent], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class Conflict(BaseModel):
    """A temporal or resource collision between two events.

    Derived on demand by :class:`~timeblocker.conflicts.ConflictDetector`;
    never stored as authoritative state.

    Attributes:
        event_a: The earlier event in input order.
        event_b: The later event in input order.
        type: Conflict type.
        severity: ``low``, ``medium`` or ``high``.
        minutes: Overlap duration for ``overlap``/``same_time``, gap
            duration for ``travel_time``/``insufficient_break``.
        description: Human-readable explanation.
    """

    model_config = ConfigDict(frozen=True)

    event_a: AnyEvent
    event_b: AnyEvent
    type: ConflictType
    severity: Severity
    minutes: float = 0.0
    description: str = ""


class ReportedConflict(BaseModel):
    """A conflict note included by the model in its own response."""

    model_config = ConfigDict(frozen=True)

    type: str = "overlap"
    description: str = ""
    severity: Severity = "medium"


# ---------------------------------------------------------------------------
# ParsedResponse
# ---------------------------------------------------------------------------


class ParsedResponse(BaseModel):
    """A validated model response.

    Attributes:
        events: Candidate events, in model order.
        message: Human-friendly confirmation message.
        suggestions: Scheduling suggestions from the model.
        conflicts: Conflicts the model reported (advisory only).
        optimizations: Schedule changes proposed by the optimization
            template, passed through as the model wrote them.
        insights: Observations accompanying ``optimizations``.
        resolutions: Proposed fixes from the conflict resolution template.
    """

    model_config = ConfigDict(frozen=True)

    events: list[CandidateEvent] = Field(default_factory=list)
    message: str = "Events parsed successfully"
    suggestions: list[str] = Field(default_factory=list)
    conflicts: list[ReportedConflict] = Field(default_factory=list)
    optimizations: list[dict[str, Any]] = Field(default_factory=list)
    insights: list[dict[str, Any]] = Field(default_factory=list)
    resolutions: list[dict[str, Any]] = Field(default_factory=list)
