"""Tests for validation and repair of raw model output."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from timeblocker.exceptions import SchemaValidationError
from timeblocker.validator import clamp_confidence, resolve_timezone, validate_response

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(**overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "title": "Meeting with Sam",
        "startTime": "2026-03-03T14:00:00",
        "endTime": "2026-03-03T15:00:00",
        "isAllDay": False,
        "confidence": 0.9,
        "category": "meeting",
        "priority": "medium",
    }
    event.update(overrides)
    return {k: v for k, v in event.items() if v is not _DROP}


_DROP = object()


def _make_raw(events: list[dict[str, Any]], **extra: Any) -> str:
    return json.dumps({"events": events, **extra})


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestValidResponses:
    """Well-formed output is accepted as-is."""

    def test_single_event(self) -> None:
        """A valid event is parsed with timezone-aware datetimes."""
        parsed = validate_response(_make_raw([_make_event()]), "UTC")

        assert len(parsed.events) == 1
        event = parsed.events[0]
        assert event.title == "Meeting with Sam"
        assert event.start_time == datetime(2026, 3, 3, 14, 0, tzinfo=ZoneInfo("UTC"))
        assert event.end_time - event.start_time == timedelta(hours=1)
        assert event.category == "meeting"
        assert event.confidence == 0.9

    def test_n_events_in_n_events_out(self) -> None:
        """N valid events produce N candidates in model order."""
        events = [_make_event(title=f"Block {i}") for i in range(4)]

        parsed = validate_response(_make_raw(events))

        assert [e.title for e in parsed.events] == ["Block 0", "Block 1", "Block 2", "Block 3"]

    def test_empty_events_array(self) -> None:
        """An empty events array is valid."""
        parsed = validate_response(_make_raw([], message="Nothing to schedule"))

        assert parsed.events == []
        assert parsed.message == "Nothing to schedule"

    def test_naive_times_use_caller_timezone(self) -> None:
        """Naive datetimes are interpreted in the requested zone."""
        parsed = validate_response(_make_raw([_make_event()]), "America/New_York")

        start = parsed.events[0].start_time
        assert start.tzinfo == ZoneInfo("America/New_York")
        assert start.hour == 14

    def test_offset_times_converted(self) -> None:
        """Zulu times are converted into the requested zone."""
        raw = _make_raw(
            [_make_event(startTime="2026-03-03T14:00:00Z", endTime="2026-03-03T15:00:00Z")]
        )

        start = validate_response(raw, "Europe/Berlin").events[0].start_time

        assert start.astimezone(timezone.utc) == datetime(2026, 3, 3, 14, tzinfo=timezone.utc)
        assert start.hour == 15

    def test_start_date_keys_accepted(self) -> None:
        """startDate/endDate work as aliases for startTime/endTime."""
        event = _make_event(
            startTime=_DROP,
            endTime=_DROP,
            startDate="2026-03-03T09:00:00",
            endDate="2026-03-03T09:30:00",
        )

        parsed = validate_response(_make_raw([event]))

        assert parsed.events[0].end_time - parsed.events[0].start_time == timedelta(minutes=30)

    def test_code_fence_stripped(self) -> None:
        """A ```json fence around the document is ignored."""
        raw = "```json\n" + _make_raw([_make_event()]) + "\n```"

        assert len(validate_response(raw).events) == 1

    def test_optional_fields(self) -> None:
        """Recurrence, location and description are carried; 'null' strings dropped."""
        event = _make_event(recurrence="FREQ=WEEKLY;BYDAY=MO", location="Room 4", description="null")

        parsed = validate_response(_make_raw([event])).events[0]

        assert parsed.recurrence_rule == "FREQ=WEEKLY;BYDAY=MO"
        assert parsed.location == "Room 4"
        assert parsed.description is None


# ---------------------------------------------------------------------------
# Field-level repair
# ---------------------------------------------------------------------------


class TestFieldRepair:
    """Field drift is repaired, never rejected."""

    @pytest.mark.parametrize(
        ("raw_value", "expected"),
        [(1.7, 1.0), (-0.3, 0.0), (0.42, 0.42), ("0.8", 0.8), ("high", 0.5), (None, 0.5), (True, 0.5)],
    )
    def test_confidence_clamped(self, raw_value: Any, expected: float) -> None:
        """Confidence is clamped into [0, 1]; non-numeric becomes 0.5."""
        event = _make_event(confidence=raw_value)

        assert validate_response(_make_raw([event])).events[0].confidence == expected

    def test_nan_confidence(self) -> None:
        """NaN confidence becomes the default."""
        assert clamp_confidence(float("nan")) == 0.5

    def test_unknown_category_defaults_to_other(self) -> None:
        """An unrecognised category becomes 'other'."""
        event = _make_event(category="party")

        assert validate_response(_make_raw([event])).events[0].category == "other"

    def test_missing_category_defaults_to_other(self) -> None:
        """A missing category becomes 'other'."""
        event = _make_event(category=_DROP)

        assert validate_response(_make_raw([event])).events[0].category == "other"

    def test_unknown_priority_defaults_to_medium(self) -> None:
        """An unrecognised priority becomes 'medium'."""
        event = _make_event(priority="critical")

        assert validate_response(_make_raw([event])).events[0].priority == "medium"

    def test_missing_end_defaults_to_one_hour(self) -> None:
        """A timed event without an end lasts one hour."""
        event = _make_event(endTime=_DROP)

        parsed = validate_response(_make_raw([event])).events[0]

        assert parsed.end_time - parsed.start_time == timedelta(hours=1)

    def test_all_day_missing_end_defaults_to_one_day(self) -> None:
        """An all-day event without an end lasts one day."""
        event = _make_event(startTime="2026-03-03", endTime=_DROP, isAllDay=True)

        parsed = validate_response(_make_raw([event])).events[0]

        assert parsed.is_all_day is True
        assert parsed.end_time - parsed.start_time == timedelta(days=1)

    def test_missing_is_all_day_defaults_false(self) -> None:
        """A missing isAllDay defaults to False."""
        event = _make_event(isAllDay=_DROP)

        assert validate_response(_make_raw([event])).events[0].is_all_day is False

    def test_message_and_suggestions_defaults(self) -> None:
        """Missing message and suggestions get defaults; non-strings are dropped."""
        raw = json.dumps({"events": [], "suggestions": ["Add a break", 42, ""]})

        parsed = validate_response(raw)

        assert parsed.message == "Events parsed successfully"
        assert parsed.suggestions == ["Add a break"]

    def test_reported_conflicts_lenient(self) -> None:
        """Model-reported conflicts with unknown values get defaults."""
        raw = _make_raw(
            [],
            conflicts=[
                {"type": "double_booked", "severity": "extreme", "description": "Clash"},
                "not-an-object",
            ],
        )

        conflicts = validate_response(raw).conflicts

        assert len(conflicts) == 1
        assert conflicts[0].type == "overlap"
        assert conflicts[0].severity == "medium"
        assert conflicts[0].description == "Clash"


# ---------------------------------------------------------------------------
# Batch-level rejection
# ---------------------------------------------------------------------------


class TestBatchRejection:
    """Structural problems reject the whole batch and name the field."""

    def test_invalid_json(self) -> None:
        """Non-JSON output is rejected."""
        with pytest.raises(SchemaValidationError, match="Invalid JSON") as exc_info:
            validate_response("not json at all")

        assert exc_info.value.raw_response == "not json at all"

    def test_empty_output(self) -> None:
        """Blank output is rejected."""
        with pytest.raises(SchemaValidationError):
            validate_response("   ")

    def test_top_level_array(self) -> None:
        """A bare JSON array is rejected."""
        with pytest.raises(SchemaValidationError):
            validate_response("[]")

    def test_missing_events_array(self) -> None:
        """A document without 'events' is rejected naming that field."""
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(json.dumps({"message": "hi"}))

        assert exc_info.value.field == "events"

    def test_events_optional_when_not_required(self) -> None:
        """Analysis output without 'events' passes and keeps its own lists."""
        raw = json.dumps(
            {
                "optimizations": [{"title": "Batch meetings"}, "not an object"],
                "resolutions": [{"solution": "Move lunch"}],
                "message": "ok",
            }
        )

        parsed = validate_response(raw, require_events=False)

        assert parsed.events == []
        assert parsed.optimizations == [{"title": "Batch meetings"}]
        assert parsed.resolutions == [{"solution": "Move lunch"}]
        assert parsed.insights == []

    def test_malformed_events_rejected_even_when_optional(self) -> None:
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(json.dumps({"events": "none"}), require_events=False)

        assert exc_info.value.field == "events"

    def test_unparsable_start(self) -> None:
        """An unparsable start in the second event names events[1].startTime."""
        events = [_make_event(), _make_event(startTime="next tuesday-ish")]

        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(_make_raw(events))

        assert exc_info.value.field == "events[1].startTime"

    def test_missing_start(self) -> None:
        """A missing start is a batch failure."""
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(_make_raw([_make_event(startTime=_DROP)]))

        assert exc_info.value.field == "events[0].startTime"

    def test_missing_title(self) -> None:
        """A blank title is a batch failure naming the title field."""
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(_make_raw([_make_event(title="  ")]))

        assert exc_info.value.field == "events[0].title"

    def test_end_before_start(self) -> None:
        """An end before the start names the end field."""
        event = _make_event(endTime="2026-03-03T13:00:00")

        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(_make_raw([event]))

        assert exc_info.value.field == "events[0].endTime"

    def test_non_boolean_all_day(self) -> None:
        """isAllDay must be a real boolean."""
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_response(_make_raw([_make_event(isAllDay="yes")]))

        assert exc_info.value.field == "events[0].isAllDay"


class TestResolveTimezone:
    """IANA name resolution."""

    def test_valid_zone(self) -> None:
        assert resolve_timezone("Asia/Tokyo") == ZoneInfo("Asia/Tokyo")

    def test_unknown_zone_falls_back_to_utc(self) -> None:
        """An unknown zone falls back to UTC instead of failing."""
        assert resolve_timezone("Mars/Olympus") == ZoneInfo("UTC")

    def test_none_is_utc(self) -> None:
        assert resolve_timezone(None) == ZoneInfo("UTC")
