"""Prompt templates and the prompt formatter.

Each :class:`PromptTemplate` is static configuration: a system prompt and
a user prompt containing ``{placeholder}`` tokens, plus the model and
sampling parameters to use.  :func:`format_template` binds a template to a
:class:`PromptContext`; it is a pure function and never raises.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any

from timeblocker.exceptions import TemplateNotFoundError
from timeblocker.models.events import ExistingEvent

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class PromptTemplate:
    """A named prompt configuration.

    Attributes:
        name: Unique registry key.
        description: One-line description.
        system_prompt: System prompt text with placeholders.
        user_prompt_template: User prompt text with placeholders.
        model: Target model identifier.
        temperature: Sampling temperature.
        max_tokens: Maximum output tokens.
        json_mode: Whether the completion must be a JSON document.
        events_required: Whether a JSON completion must carry an
            ``events`` array.  Analysis templates answer with
            optimizations or resolutions instead.
    """

    name: str
    description: str
    system_prompt: str
    user_prompt_template: str
    model: str = DEFAULT_MODEL
    temperature: float = 0.3
    max_tokens: int = 2000
    json_mode: bool = True
    events_required: bool = True


@dataclass(frozen=True)
class WorkingHours:
    start: str = "09:00"
    end: str = "17:00"


@dataclass
class PromptContext:
    """Context bound into a template's placeholders.

    Every field is optional; missing values serialise to an empty string,
    ``[]`` or ``{}``.

    Attributes:
        user_input: The raw user utterance.
        timezone: IANA timezone name.
        current_date: "Now" for resolving relative dates.
        working_hours: The user's working hours.
        existing_events: Events already on the user's calendar.
        preferences: Free-form user preferences.
        recent_events: Recently created events (chat template only).
    """

    user_input: str = ""
    timezone: str | None = None
    current_date: datetime | None = None
    working_hours: WorkingHours | None = None
    existing_events: list[ExistingEvent] = field(default_factory=list)
    preferences: Mapping[str, Any] = field(default_factory=dict)
    recent_events: list[ExistingEvent] = field(default_factory=list)


@dataclass(frozen=True)
class FormattedPrompt:
    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    max_tokens: int
    json_mode: bool = True
    events_required: bool = True


# ---------------------------------------------------------------------------
# Shared prompt fragments
# ---------------------------------------------------------------------------

_CONTEXT_BLOCK = """\
## Current Context

- User's timezone: {timezone}
- Current date and time: {currentDate}
- Working hours: {workingHours}
- Existing events: {existingEvents}
- User preferences: {preferences}
"""

_EVENT_SCHEMA = """\
{
  "events": [
    {
      "title": "Event title",
      "startTime": "ISO 8601 datetime",
      "endTime": "ISO 8601 datetime",
      "isAllDay": false,
      "recurrence": "RRULE string or null",
      "location": "location or null",
      "description": "description or null",
      "confidence": 0.0,
      "category": "work|personal|meeting|break|focus|other",
      "priority": "low|medium|high|urgent"
    }
  ],
  "message": "Human-friendly confirmation message",
  "suggestions": ["helpful suggestions"],
  "conflicts": [
    {
      "type": "overlap|same_time|insufficient_break|travel_time",
      "description": "conflict description",
      "severity": "low|medium|high"
    }
  ]
}"""


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

CALENDAR_PARSING_TEMPLATE = PromptTemplate(
    name="calendar_parsing",
    description="Parse natural language into structured calendar events",
    system_prompt=(
        "You are an AI assistant that turns natural-language requests into "
        "calendar events for a time-blocking calendar.\n\n"
        + _CONTEXT_BLOCK
        + """
## Output Format

Respond with a single JSON object with exactly this structure:

"""
        + _EVENT_SCHEMA
        + """

## Rules

- Always provide both startTime and endTime. Default duration is 1 hour
  when none is given.
- Write datetimes in the user's timezone as ISO 8601 strings.
- Resolve relative dates ("today", "tomorrow", "next Monday") against the
  current date and time above. Use the current year if none is mentioned.
- Parse recurrence patterns ("every weekday", "each Friday") into RRULE.
- Confidence is a number between 0.0 and 1.0 reflecting how clearly the
  request specified the event.
- Choose category and priority from the listed values only.
- Mention overlaps with existing events in "conflicts".
- If the request contains no event, return an empty "events" array and
  explain why in "message".
"""
    ),
    user_prompt_template='Parse this calendar request (timezone: {timezone}): "{userInput}"',
    temperature=0.3,
    max_tokens=2000,
)

CALENDAR_OPTIMIZATION_TEMPLATE = PromptTemplate(
    name="calendar_optimization",
    description="Optimize a calendar schedule for productivity",
    system_prompt=(
        "You are a calendar optimization expert. Analyse the user's schedule "
        "and recommend changes for better time management.\n\n"
        + _CONTEXT_BLOCK
        + """
## Output Format

{
  "optimizations": [
    {
      "type": "time_blocking|energy_optimization|break_scheduling|conflict_resolution",
      "title": "Optimization title",
      "description": "Detailed description",
      "impact": "high|medium|low",
      "effort": "high|medium|low"
    }
  ],
  "insights": [
    {"type": "productivity_pattern|energy_analysis|time_utilization",
     "title": "Insight title", "recommendation": "Actionable recommendation"}
  ],
  "message": "Summary of optimizations and insights"
}

Focus on deep-work blocks, energy-based scheduling, breaks, conflict
resolution and work-life balance.
"""
    ),
    user_prompt_template="Optimize this calendar schedule: {userInput}",
    temperature=0.4,
    max_tokens=2500,
    events_required=False,
)

MEETING_SCHEDULING_TEMPLATE = PromptTemplate(
    name="meeting_scheduling",
    description="Schedule meetings with sensible timing and duration",
    system_prompt=(
        "You are a meeting scheduling assistant. Propose meeting times, "
        "durations and locations that fit the user's calendar.\n\n"
        + _CONTEXT_BLOCK
        + """
## Output Format

Respond with JSON using the same structure as calendar parsing:

"""
        + _EVENT_SCHEMA
        + """

Leave buffer time between meetings, respect working hours and keep
meetings no longer than their agenda needs.
"""
    ),
    user_prompt_template="Schedule this meeting: {userInput}",
    temperature=0.3,
    max_tokens=2000,
)

TIME_BLOCKING_TEMPLATE = PromptTemplate(
    name="time_blocking",
    description="Create focused time blocks for deep work",
    system_prompt=(
        "You are a time blocking expert. Turn the user's goals into focused "
        "blocks on their calendar.\n\n"
        + _CONTEXT_BLOCK
        + """
## Output Format

Respond with JSON using the calendar event structure below. Use category
"focus" for deep work and "break" for breaks.

"""
        + _EVENT_SCHEMA
        + """

Put deep work in peak-energy hours, administrative work in low-energy
periods, and schedule regular breaks.
"""
    ),
    user_prompt_template="Create time blocks for: {userInput}",
    temperature=0.4,
    max_tokens=2500,
)

CONFLICT_RESOLUTION_TEMPLATE = PromptTemplate(
    name="conflict_resolution",
    description="Resolve calendar conflicts and scheduling issues",
    system_prompt=(
        "You are a calendar conflict resolution expert. Help the user "
        "resolve scheduling conflicts.\n\n"
        + _CONTEXT_BLOCK
        + """
## Output Format

{
  "conflicts": [
    {"type": "overlap|same_time|insufficient_break|travel_time",
     "description": "Conflict description", "severity": "high|medium|low"}
  ],
  "resolutions": [
    {"solution": "Proposed solution", "reasoning": "Why it works",
     "alternatives": ["alternative"]}
  ],
  "message": "Conflict resolution summary"
}

Consider event priorities, travel time between locations, preparation
time and work-life balance.
"""
    ),
    user_prompt_template="Resolve these calendar conflicts: {userInput}",
    temperature=0.3,
    max_tokens=2000,
    events_required=False,
)

CHAT_CONVERSATION_TEMPLATE = PromptTemplate(
    name="chat_conversation",
    description="General conversation about calendar and productivity",
    system_prompt="""\
You are a helpful assistant for calendar management and productivity.
You help with creating and managing events, time blocking, meeting
coordination, task prioritisation and energy management.

## Current Context

- User's timezone: {timezone}
- Current date and time: {currentDate}
- Working hours: {workingHours}
- Recent events: {recentEvents}
- User preferences: {preferences}

Be conversational, supportive and practical. Give specific advice the
user can act on. If they ask about events, offer to create or adjust
them.
""",
    user_prompt_template="{userInput}",
    temperature=0.7,
    max_tokens=1500,
    json_mode=False,
)

PROMPT_TEMPLATES: Mapping[str, PromptTemplate] = MappingProxyType(
    {
        template.name: template
        for template in (
            CALENDAR_PARSING_TEMPLATE,
            CALENDAR_OPTIMIZATION_TEMPLATE,
            MEETING_SCHEDULING_TEMPLATE,
            TIME_BLOCKING_TEMPLATE,
            CONFLICT_RESOLUTION_TEMPLATE,
            CHAT_CONVERSATION_TEMPLATE,
        )
    }
)


# ---------------------------------------------------------------------------
# Registry lookups
# ---------------------------------------------------------------------------


def get_template(name: str) -> PromptTemplate | None:
    return PROMPT_TEMPLATES.get(name)


def require_template(name: str) -> PromptTemplate:
    """Return the template registered under *name*.

    Raises:
        TemplateNotFoundError: If no such template exists.
    """
    template = PROMPT_TEMPLATES.get(name)
    if template is None:
        raise TemplateNotFoundError(name)
    return template


def get_template_names() -> list[str]:
    return list(PROMPT_TEMPLATES)


def get_all_templates() -> list[PromptTemplate]:
    return list(PROMPT_TEMPLATES.values())


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


def _json_default(value: object) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _to_json(value: object) -> str:
    return json.dumps(value, default=_json_default, separators=(",", ":"))


def _serialize_events(events: list[ExistingEvent]) -> str:
    return _to_json(
        [
            {
                "title": event.title,
                "startTime": event.start_time,
                "endTime": event.end_time,
            }
            for event in events
        ]
    )


def _context_values(context: PromptContext) -> dict[str, str]:
    working_hours = (
        {"start": context.working_hours.start, "end": context.working_hours.end}
        if context.working_hours is not None
        else {}
    )
    return {
        "timezone": context.timezone or "",
        "currentDate": context.current_date.isoformat() if context.current_date else "",
        "workingHours": _to_json(working_hours),
        "existingEvents": _serialize_events(context.existing_events),
        "preferences": _to_json(dict(context.preferences)),
        "recentEvents": _serialize_events(context.recent_events),
        "userInput": context.user_input,
    }


def _substitute(text: str, values: Mapping[str, str]) -> str:
    # Unknown placeholders are left verbatim.
    return _PLACEHOLDER_RE.sub(
        lambda match: values.get(match.group(1), match.group(0)), text
    )


def format_template(template: PromptTemplate, context: PromptContext) -> FormattedPrompt:
    """Bind *template* to *context*.

    Every ``{name}`` placeholder with a matching context field is replaced
    by that field's serialised form, in both the system and user prompt.
    Placeholders without a matching field stay as they are.

    Args:
        template: The template to format.
        context: Values for the placeholders.

    Returns:
        A :class:`FormattedPrompt` carrying the template's model settings.
    """
    values = _context_values(context)

    system_prompt = _substitute(template.system_prompt, values)
    user_prompt = _substitute(template.user_prompt_template, values)

    unresolved = set(_PLACEHOLDER_RE.findall(system_prompt + user_prompt)) - set(values)
    if unresolved:
        logger.debug(
            "Template %r left placeholders unresolved: %s",
            template.name,
            ", ".join(sorted(unresolved)),
        )

    return FormattedPrompt(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model=template.model,
        temperature=template.temperature,
        max_tokens=template.max_tokens,
        json_mode=template.json_mode,
        events_required=template.events_required,
    )
