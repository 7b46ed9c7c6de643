"""Pairwise conflict detection between calendar events.

Every unordered pair ``(i, j)`` with ``i < j`` is checked, so the result
order is deterministic: by ``i`` ascending, then ``j`` ascending, then
in the order the checks below are listed.

1. ``overlap`` -- the intervals intersect (``start_a < end_b`` and
   ``start_b < end_a``).  Severity depends on the overlap duration:
   more than 60 minutes is ``high``, 30 minutes or more is ``medium``,
   anything shorter is ``low``.
2. ``same_time`` -- both events start at the same instant (``high``).
3. ``travel_time`` -- both events have a location, the locations
   differ, and the gap between them is strictly between 0 and the
   travel buffer (15 minutes by default) (``medium``).
4. ``insufficient_break`` -- only when a break buffer is configured:
   the gap is strictly between 0 and that buffer (``low``).

Conflicts are derived data; they are recomputed whenever the event set
changes and never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from timeblocker.models.events import AnyEvent, Conflict, Severity

logger = logging.getLogger(__name__)

HIGH_OVERLAP_MINUTES = 60
MEDIUM_OVERLAP_MINUTES = 30
DEFAULT_TRAVEL_BUFFER_MINUTES = 15

_SEVERITY_RANK: dict[str, int] = {"low": 1, "medium": 2, "high": 3}


def overlap_severity(overlap_minutes: float) -> Severity:
    """Map an overlap duration in minutes to a severity tier."""
    if overlap_minutes > HIGH_OVERLAP_MINUTES:
        return "high"
    if overlap_minutes >= MEDIUM_OVERLAP_MINUTES:
        return "medium"
    return "low"


def _minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60


def overlap_minutes(a: AnyEvent, b: AnyEvent) -> float:
    """Duration of the intersection of two events, 0 when disjoint."""
    if not (a.start_time < b.end_time and b.start_time < a.end_time):
        return 0.0
    return _minutes(max(a.start_time, b.start_time), min(a.end_time, b.end_time))


def gap_minutes(a: AnyEvent, b: AnyEvent) -> float:
    """Minutes between the end of one event and the start of the other.

    Returns 0 when the events touch or overlap.
    """
    if a.end_time <= b.start_time:
        return _minutes(a.end_time, b.start_time)
    if b.end_time <= a.start_time:
        return _minutes(b.end_time, a.start_time)
    return 0.0


def _same_location(a: str, b: str) -> bool:
    return a.strip().casefold() == b.strip().casefold()


@dataclass(frozen=True)
class ConflictAnalysis:
    """Summary of a detection run.

    Attributes:
        conflicts: Conflicts in detection order.
        overall_severity: Highest severity found, or ``None`` when there
            are no conflicts.
        suggestions: Human-readable hints, one per conflict type found.
    """

    conflicts: list[Conflict] = field(default_factory=list)
    overall_severity: Severity | None = None
    suggestions: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.conflicts)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


_SUGGESTIONS: dict[str, str] = {
    "overlap": "Reschedule or shorten one of the overlapping events.",
    "same_time": "Two events start at the same time; move one of them.",
    "travel_time": "Leave more time to travel between locations.",
    "insufficient_break": "Add a short break between back-to-back events.",
}


class ConflictDetector:
    """Detects conflicts within a set of events.

    Args:
        travel_buffer_minutes: Gap below which consecutive events at
            different locations conflict.
        break_buffer_minutes: Gap below which consecutive events raise an
            ``insufficient_break`` conflict.  ``None`` disables the check.
    """

    def __init__(
        self,
        travel_buffer_minutes: float = DEFAULT_TRAVEL_BUFFER_MINUTES,
        break_buffer_minutes: float | None = None,
    ) -> None:
        self._travel_buffer = travel_buffer_minutes
        self._break_buffer = break_buffer_minutes

    def detect_conflicts(self, events: Sequence[AnyEvent]) -> list[Conflict]:
        """Return all conflicts among *events*, in deterministic order."""
        conflicts: list[Conflict] = []
        for i in range(len(events)):
            for j in range(i + 1, len(events)):
                conflicts.extend(self._check_pair(events[i], events[j]))

        if conflicts:
            logger.info("Detected %d conflict(s) among %d event(s)", len(conflicts), len(events))
        return conflicts

    def analyze(self, events: Sequence[AnyEvent]) -> ConflictAnalysis:
        conflicts = self.detect_conflicts(events)
        if not conflicts:
            return ConflictAnalysis()

        overall = max((c.severity for c in conflicts), key=_SEVERITY_RANK.__getitem__)
        seen_types = dict.fromkeys(c.type for c in conflicts)
        return ConflictAnalysis(
            conflicts=conflicts,
            overall_severity=overall,
            suggestions=[_SUGGESTIONS[t] for t in seen_types],
        )

    def _check_pair(self, a: AnyEvent, b: AnyEvent) -> list[Conflict]:
        found: list[Conflict] = []

        overlap = overlap_minutes(a, b)
        if overlap > 0:
            found.append(
                Conflict(
                    event_a=a,
                    event_b=b,
                    type="overlap",
                    severity=overlap_severity(overlap),
                    minutes=overlap,
                    description=f"'{a.title}' and '{b.title}' overlap by {overlap:g} minutes",
                )
            )

        if a.start_time == b.start_time:
            found.append(
                Conflict(
                    event_a=a,
                    event_b=b,
                    type="same_time",
                    severity="high",
                    minutes=overlap,
                    description=f"'{a.title}' and '{b.title}' start at the same time",
                )
            )

        gap = gap_minutes(a, b)
        if 0 < gap < self._travel_buffer and a.location and b.location:
            if not _same_location(a.location, b.location):
                found.append(
                    Conflict(
                        event_a=a,
                        event_b=b,
                        type="travel_time",
                        severity="medium",
                        minutes=gap,
                        description=(
                            f"Only {gap:g} minutes to get from {a.location!r} "
                            f"to {b.location!r}"
                        ),
                    )
                )

        if self._break_buffer is not None and 0 < gap < self._break_buffer:
            found.append(
                Conflict(
                    event_a=a,
                    event_b=b,
                    type="insufficient_break",
                    severity="low",
                    minutes=gap,
                    description=f"Only {gap:g} minutes between '{a.title}' and '{b.title}'",
                )
            )

        return found


def detect_conflicts(events: Sequence[AnyEvent]) -> list[Conflict]:
    """Detect conflicts with the default detector settings."""
    return ConflictDetector().detect_conflicts(events)
