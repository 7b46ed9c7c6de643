"""Console formatter for scheduling results.

Renders a :class:`~timeblocker.pipeline.SchedulingResult` as structured
console output: extracted events, detected conflicts, model suggestions
and a usage summary.

:func:`format_scheduling_result` returns the formatted string;
:func:`print_scheduling_result` writes it to stdout.
"""

from __future__ import annotations

import sys
from datetime import datetime

from timeblocker.models.events import CandidateEvent, Conflict
from timeblocker.pipeline import SchedulingResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BANNER_WIDTH = 60
_SEPARATOR = "=" * _BANNER_WIDTH

_SEVERITY_TAG = {"high": "HIGH", "medium": "MED", "low": "LOW"}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def format_scheduling_result(result: SchedulingResult) -> str:
    """Render a :class:`SchedulingResult` for the console.

    Sections, in order: banner, events, conflicts, recommendations,
    suggestions, summary.  Recommendations appear only for the
    optimization and conflict resolution templates.

    Args:
        result: The pipeline result to format.

    Returns:
        A multi-line string ready for console display.
    """
    lines: list[str] = []

    _append_banner(lines)
    _append_events(lines, result)
    _append_conflicts(lines, result.conflicts)
    _append_recommendations(lines, result)
    _append_suggestions(lines, result.suggestions)
    _append_summary(lines, result)
    lines.append(_SEPARATOR)

    return "\n".join(lines)


def print_scheduling_result(result: SchedulingResult) -> None:
    sys.stdout.write(format_scheduling_result(result) + "\n")


# ---------------------------------------------------------------------------
# Internal formatters
# ---------------------------------------------------------------------------


def _append_banner(lines: list[str]) -> None:
    lines.append(_SEPARATOR)
    lines.append("  TIMEBLOCKER AI")
    lines.append(_SEPARATOR)


def _append_events(lines: list[str], result: SchedulingResult) -> None:
    lines.append("")
    lines.append("--- EVENTS ---")
    if result.message:
        lines.append(f"  {result.message}")

    if not result.events:
        lines.append("  No calendar events detected.")
        return

    for idx, event in enumerate(result.events, start=1):
        _append_event(lines, idx, event)


def _append_event(lines: list[str], idx: int, event: CandidateEvent) -> None:
    lines.append("")
    lines.append(f"  Event {idx}: {event.title}")
    lines.append(f"    When: {_format_event_time(event)}")
    if event.location:
        lines.append(f"    Where: {event.location}")
    if event.recurrence_rule:
        lines.append(f"    Repeats: {event.recurrence_rule}")
    lines.append(f"    Category: {event.category}  Priority: {event.priority}")
    lines.append(f"    Confidence: {event.confidence:.2f}")
    if event.description:
        lines.append(f"    Notes: {event.description}")


def _append_conflicts(lines: list[str], conflicts: list[Conflict]) -> None:
    lines.append("")
    lines.append("--- CONFLICTS ---")
    if not conflicts:
        lines.append("  None.")
        return
    for conflict in conflicts:
        tag = _SEVERITY_TAG.get(conflict.severity, conflict.severity.upper())
        lines.append(f"  [{tag}] {conflict.type}: {conflict.description}")


def _append_recommendations(lines: list[str], result: SchedulingResult) -> None:
    items = [
        *(_describe(item, "title", "description") for item in result.optimizations),
        *(_describe(item, "title", "recommendation") for item in result.insights),
        *(_describe(item, "solution", "reasoning") for item in result.resolutions),
    ]
    if not items:
        return
    lines.append("")
    lines.append("--- RECOMMENDATIONS ---")
    for item in items:
        lines.append(f"  - {item}")


def _append_suggestions(lines: list[str], suggestions: list[str]) -> None:
    if not suggestions:
        return
    lines.append("")
    lines.append("--- SUGGESTIONS ---")
    for suggestion in suggestions:
        lines.append(f"  - {suggestion}")


def _append_summary(lines: list[str], result: SchedulingResult) -> None:
    lines.append("")
    lines.append("--- SUMMARY ---")
    lines.append(f"  Events extracted: {len(result.events)}")
    lines.append(f"  Conflicts: {len(result.conflicts)}")
    if result.usage is not None:
        lines.append(
            f"  Tokens: {result.usage.total_tokens} "
            f"({result.usage.prompt_tokens} prompt + {result.usage.completion_tokens} completion)"
        )
        lines.append(f"  Cost: ${result.usage.cost:.6f} ({result.usage.model})")
    if result.limits is not None and result.limits.exceeded:
        lines.append(
            f"  Quota exceeded: {result.limits.daily_usage}/{result.limits.daily_limit} today, "
            f"{result.limits.monthly_usage}/{result.limits.monthly_limit} this month"
        )
    lines.append(f"  Pipeline duration: {result.duration_seconds:.1f}s")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_event_time(event: CandidateEvent) -> str:
    """Format an event's time range for display.

    All-day events show dates only; same-day timed events show the end
    as a bare time.
    """
    if event.is_all_day:
        return f"{event.start_time:%A %Y-%m-%d} (all day)"

    start_str = _format_datetime(event.start_time)
    if event.start_time.date() == event.end_time.date():
        end_str = event.end_time.strftime("%I:%M %p")
    else:
        end_str = _format_datetime(event.end_time)
    return f"{start_str} - {end_str}"


def _format_datetime(value: datetime) -> str:
    return value.strftime("%A %Y-%m-%d, %I:%M %p")


def _describe(item: dict, head_key: str, detail_key: str) -> str:
    head = str(item.get(head_key) or "").strip()
    detail = str(item.get(detail_key) or "").strip()
    if head and detail:
        return f"{head}: {detail}"
    return head or detail or "(no details)"
