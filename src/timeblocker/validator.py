"""Validation and repair of raw model output.

The model's JSON is untrusted.  Validation is lenient at the field level
and strict at the batch level:

- Field drift is repaired in place: confidence is clamped to ``[0, 1]``
  (non-numeric -> 0.5), unknown categories become ``"other"``, unknown
  priorities become ``"medium"``, a missing end time becomes start + 1
  hour (start + 1 day for all-day events).
- Structural problems reject the whole batch with a
  :class:`~timeblocker.exceptions.SchemaValidationError` naming the
  offending field: invalid JSON, a missing ``events`` array (unless the
  caller allows it), a missing title, an unparsable date, a non-boolean
  ``isAllDay``, or an end time before the start time.

Naive datetimes are interpreted in the caller's timezone; offset-aware
datetimes are converted to it.
"""

from __future__ import annotations

import json
import logging
import math
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from timeblocker.exceptions import SchemaValidationError
from timeblocker.models.events import (
    CATEGORIES,
    CONFLICT_TYPES,
    DEFAULT_CATEGORY,
    DEFAULT_PRIORITY,
    PRIORITIES,
    SEVERITIES,
    CandidateEvent,
    ParsedResponse,
    ReportedConflict,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
DEFAULT_MESSAGE = "Events parsed successfully"

_DEFAULT_DURATION = timedelta(hours=1)
_ALL_DAY_DURATION = timedelta(days=1)

# ```json ... ``` wrappers some models add despite JSON mode.
_CODE_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)

# Accepted spellings for each field, first match wins.
_START_KEYS = ("startTime", "startDate", "start_time", "start")
_END_KEYS = ("endTime", "endDate", "end_time", "end")
_ALL_DAY_KEYS = ("isAllDay", "is_all_day", "allDay")
_RECURRENCE_KEYS = ("recurrenceRule", "recurrence", "recurrence_rule", "rrule")


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the zone for IANA *name*, falling back to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def validate_response(
    raw_output: str,
    timezone: str | tzinfo | None = "UTC",
    require_events: bool = True,
) -> ParsedResponse:
    """Validate raw model output and build a :class:`ParsedResponse`.

    Args:
        raw_output: JSON text returned by the model.
        timezone: Zone (IANA name or ``tzinfo``) in which naive datetimes
            are interpreted and to which all datetimes are converted.
        require_events: Reject a response without an ``events`` array.
            When false a missing array means no events; a present one
            is still validated.

    Returns:
        The repaired, validated response.

    Raises:
        SchemaValidationError: If the batch cannot be used.
    """
    tz = timezone if isinstance(timezone, tzinfo) else resolve_timezone(timezone)
    data = _load_json(raw_output)

    if not isinstance(data, dict):
        raise SchemaValidationError(
            "Model response must be a JSON object", field=None, raw_response=raw_output
        )

    events_raw = data.get("events")
    if events_raw is None and not require_events:
        events_raw = []
    if not isinstance(events_raw, list):
        raise SchemaValidationError(
            "Model response is missing the 'events' array",
            field="events",
            raw_response=raw_output,
        )

    events = [
        _validate_event(index, item, tz, raw_output) for index, item in enumerate(events_raw)
    ]

    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        message = DEFAULT_MESSAGE

    return ParsedResponse(
        events=events,
        message=message,
        suggestions=_string_list(data.get("suggestions")),
        conflicts=_reported_conflicts(data.get("conflicts")),
        optimizations=_object_list(data.get("optimizations")),
        insights=_object_list(data.get("insights")),
        resolutions=_object_list(data.get("resolutions")),
    )


# ---------------------------------------------------------------------------
# Document level
# ---------------------------------------------------------------------------


def _load_json(raw_output: str) -> Any:
    if not raw_output or not raw_output.strip():
        raise SchemaValidationError("Empty model response", raw_response=raw_output or "")

    text = raw_output
    fenced = _CODE_FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(
            f"Invalid JSON in model response: {exc}", raw_response=raw_output
        ) from exc


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _object_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _reported_conflicts(value: Any) -> list[ReportedConflict]:
    if not isinstance(value, list):
        return []
    reported: list[ReportedConflict] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        conflict_type = item.get("type")
        severity = item.get("severity")
        description = item.get("description")
        reported.append(
            ReportedConflict(
                type=conflict_type if conflict_type in CONFLICT_TYPES else "overlap",
                severity=severity if severity in SEVERITIES else "medium",
                description=description if isinstance(description, str) else "",
            )
        )
    return reported


# ---------------------------------------------------------------------------
# Event level
# ---------------------------------------------------------------------------


def _first_present(item: dict[str, Any], keys: tuple[str, ...]) -> tuple[str, Any]:
    for key in keys:
        if item.get(key) is not None:
            return key, item[key]
    return keys[0], None


def _validate_event(
    index: int,
    item: Any,
    tz: tzinfo,
    raw_output: str,
) -> CandidateEvent:
    prefix = f"events[{index}]"

    if not isinstance(item, dict):
        raise SchemaValidationError(
            f"{prefix} must be an object", field=prefix, raw_response=raw_output
        )

    title = item.get("title")
    if not isinstance(title, str) or not title.strip():
        raise SchemaValidationError(
            f"{prefix}.title is missing or empty",
            field=f"{prefix}.title",
            raw_response=raw_output,
        )

    all_day_key, is_all_day = _first_present(item, _ALL_DAY_KEYS)
    if is_all_day is None:
        is_all_day = False
    elif not isinstance(is_all_day, bool):
        raise SchemaValidationError(
            f"{prefix}.{all_day_key} must be a boolean",
            field=f"{prefix}.{all_day_key}",
            raw_response=raw_output,
        )

    start_key, start_raw = _first_present(item, _START_KEYS)
    start = _parse_datetime(start_raw, tz, f"{prefix}.{start_key}", raw_output)

    end_key, end_raw = _first_present(item, _END_KEYS)
    if end_raw is None:
        end = start + (_ALL_DAY_DURATION if is_all_day else _DEFAULT_DURATION)
    else:
        end = _parse_datetime(end_raw, tz, f"{prefix}.{end_key}", raw_output)

    if end < start:
        raise SchemaValidationError(
            f"{prefix}.{end_key} is before the start time",
            field=f"{prefix}.{end_key}",
            raw_response=raw_output,
        )

    category = item.get("category")
    if category not in CATEGORIES:
        if category is not None:
            logger.debug("%s: unknown category %r, using %r", prefix, category, DEFAULT_CATEGORY)
        category = DEFAULT_CATEGORY

    priority = item.get("priority")
    if priority not in PRIORITIES:
        if priority is not None:
            logger.debug("%s: unknown priority %r, using %r", prefix, priority, DEFAULT_PRIORITY)
        priority = DEFAULT_PRIORITY

    _, recurrence = _first_present(item, _RECURRENCE_KEYS)

    try:
        return CandidateEvent(
            title=title.strip(),
            start_time=start,
            end_time=end,
            is_all_day=is_all_day,
            recurrence_rule=_optional_text(recurrence),
            location=_optional_text(item.get("location")),
            description=_optional_text(item.get("description")),
            category=category,
            priority=priority,
            confidence=clamp_confidence(item.get("confidence")),
        )
    except ValidationError as exc:
        raise SchemaValidationError(
            f"{prefix} failed validation: {exc}", field=prefix, raw_response=raw_output
        ) from exc


def clamp_confidence(value: Any) -> float:
    """Clamp a model-supplied confidence into ``[0, 1]``.

    Non-numeric values (including booleans and NaN) become
    :data:`DEFAULT_CONFIDENCE`.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                return DEFAULT_CONFIDENCE
        else:
            return DEFAULT_CONFIDENCE
    if math.isnan(value):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped or stripped.lower() in {"null", "none"}:
        return None
    return stripped


def _parse_datetime(value: Any, tz: tzinfo, field: str, raw_output: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise SchemaValidationError(
            f"{field} is missing", field=field, raw_response=raw_output
        )

    text = value.strip()
    # fromisoformat() on older interpreters rejects the "Z" suffix.
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        except ValueError as exc:
            raise SchemaValidationError(
                f"{field} is not a valid ISO 8601 datetime: {value!r}",
                field=field,
                raw_response=raw_output,
            ) from exc

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)
