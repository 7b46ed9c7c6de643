"""Pipeline orchestrator for the utterance-to-schedule workflow.

Wires the components together for one request::

    EventExtractor -> ConflictDetector -> ConversationStore -> TokenTracker

:meth:`SchedulingPipeline.run` returns a :class:`SchedulingResult`;
:meth:`SchedulingPipeline.stream` yields ``chunk`` frames as the model
produces text, then exactly one ``complete`` or ``error`` frame.

Each logical request writes at most one usage record and at most one
conversation message, and only after the model output has been fully
received and validated.  A cancelled stream writes nothing.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any

from timeblocker.conflicts import ConflictDetector
from timeblocker.conversation import ConversationStore
from timeblocker.exceptions import (
    ConversationNotFoundError,
    ErrorInfo,
    SchedulingError,
    StreamCancelledError,
)
from timeblocker.extractor import DEFAULT_TEMPLATE, EventExtractor, ExtractionResponse
from timeblocker.llm import ChatMessage
from timeblocker.models.conversation import MessageMetadata
from timeblocker.models.events import CandidateEvent, Conflict, ExistingEvent, ReportedConflict
from timeblocker.models.usage import LimitStatus, TokenUsageRecord
from timeblocker.prompts import PromptContext, WorkingHours
from timeblocker.usage import TokenTracker
from timeblocker.validator import resolve_timezone

logger = logging.getLogger(__name__)

# Earlier thread messages sent to the model with a follow-up request.
HISTORY_LIMIT = 10


# ---------------------------------------------------------------------------
# Request / result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class SchedulingRequest:
    """One user utterance plus everything the caller already resolved.

    Attributes:
        utterance: Free-text user input.
        user_id: Id of the requesting user (usage is attributed to it).
        timezone: IANA timezone; the pipeline default is used when omitted.
        template_name: Prompt template name.
        session_id: Conversation session to append the reply to.  When
            ``None`` nothing is written to the conversation store.
        thread_id: Thread within *session_id*; a new thread is created
            when omitted.  The thread's last :data:`HISTORY_LIMIT`
            messages are sent to the model as conversation history.
        existing_events: Events already on the user's calendar.
        preferences: Free-form user preferences for the prompt.
        working_hours: The user's working hours.
        request_id: Id of this logical request; generated when omitted.
    """

    utterance: str
    user_id: str
    timezone: str | None = None
    template_name: str = DEFAULT_TEMPLATE
    session_id: str | None = None
    thread_id: str | None = None
    existing_events: list[ExistingEvent] = field(default_factory=list)
    preferences: Mapping[str, Any] = field(default_factory=dict)
    working_hours: WorkingHours | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class SchedulingResult:
    """Aggregated result of one pipeline run.

    Attributes:
        request_id: Id of the logical request.
        events: Candidate events extracted from the utterance.
        message: Confirmation message from the model.
        suggestions: Scheduling suggestions from the model.
        conflicts: Conflicts detected among candidates and existing events.
        reported_conflicts: Conflicts the model reported itself.
        optimizations: Proposed schedule changes (optimization template).
        insights: Observations accompanying ``optimizations``.
        resolutions: Proposed fixes (conflict resolution template).
        usage: The single usage record charged for this request.
        limits: Quota status after charging this request.
        session_id: Session the reply was stored in, if any.
        thread_id: Thread the reply was stored in, if any.
        message_id: Id of the stored assistant message, if any.
        duration_seconds: Wall-clock time for the run.
    """

    request_id: str
    events: list[CandidateEvent] = field(default_factory=list)
    message: str = ""
    suggestions: list[str] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    reported_conflicts: list[ReportedConflict] = field(default_factory=list)
    optimizations: list[dict[str, Any]] = field(default_factory=list)
    insights: list[dict[str, Any]] = field(default_factory=list)
    resolutions: list[dict[str, Any]] = field(default_factory=list)
    usage: TokenUsageRecord | None = None
    limits: LimitStatus | None = None
    session_id: str | None = None
    thread_id: str | None = None
    message_id: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe ``{events, message, suggestions, conflicts, ...}`` payload."""
        payload: dict[str, Any] = {
            "requestId": self.request_id,
            "events": [_event_payload(e) for e in self.events],
            "message": self.message,
            "suggestions": list(self.suggestions),
            "conflicts": [_conflict_payload(c) for c in self.conflicts],
        }
        for key in ("optimizations", "insights", "resolutions"):
            items = getattr(self, key)
            if items:
                payload[key] = [dict(item) for item in items]
        if self.usage is not None:
            payload["usage"] = {
                "promptTokens": self.usage.prompt_tokens,
                "completionTokens": self.usage.completion_tokens,
                "totalTokens": self.usage.total_tokens,
                "cost": self.usage.cost,
                "model": self.usage.model,
            }
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
            payload["threadId"] = self.thread_id
            payload["messageId"] = self.message_id
        return payload


def _event_payload(event: CandidateEvent) -> dict[str, Any]:
    return {
        "title": event.title,
        "startTime": event.start_time.isoformat(),
        "endTime": event.end_time.isoformat(),
        "isAllDay": event.is_all_day,
        "recurrenceRule": event.recurrence_rule,
        "location": event.location,
        "description": event.description,
        "category": event.category,
        "priority": event.priority,
        "confidence": event.confidence,
    }


def _conflict_payload(conflict: Conflict) -> dict[str, Any]:
    return {
        "type": conflict.type,
        "severity": conflict.severity,
        "description": conflict.description,
        "minutes": conflict.minutes,
        "eventA": conflict.event_a.title,
        "eventB": conflict.event_b.title,
    }


def encode_sse(frame: Mapping[str, Any]) -> str:
    """Render *frame* as one ``text/event-stream`` message."""
    return f"data: {json.dumps(frame, separators=(',', ':'))}\n\n"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SchedulingPipeline:
    """Runs utterances through extraction, conflict detection and bookkeeping.

    The store and tracker are shared, thread-safe state; the pipeline
    itself holds no per-request state, so one instance serves concurrent
    requests.

    Args:
        extractor: Event extractor (owns the completion client).
        detector: Conflict detector.
        store: Conversation store replies are appended to.
        tracker: Token tracker usage is charged to.
        default_timezone: Timezone for requests that omit one.
    """

    def __init__(
        self,
        extractor: EventExtractor,
        detector: ConflictDetector,
        store: ConversationStore,
        tracker: TokenTracker,
        default_timezone: str = "UTC",
    ) -> None:
        self._extractor = extractor
        self._detector = detector
        self._store = store
        self._tracker = tracker
        self._default_timezone = default_timezone

    def run(self, request: SchedulingRequest) -> SchedulingResult:
        """Process one request end to end.

        Stages:

        1. **Resolve** -- check the session/thread ids and the user's
           quota (advisory; an exceeded quota is logged, not enforced).
        2. **Extract** -- format the prompt, call the model, validate.
        3. **Detect** -- find conflicts among candidates and existing events.
        4. **Record** -- append one assistant message, then charge one
           usage record.

        Raises:
            ConversationNotFoundError: Unknown session or thread id.
            SchedulingError: Any extraction failure (template, model or
                validation); nothing is recorded in that case.
        """
        started = time.monotonic()
        tz_name = request.timezone or self._default_timezone
        self._check_conversation(request)
        self._check_quota(request.user_id)

        logger.info("Request %s: extracting events", request.request_id)
        extraction = self._extractor.extract(
            request.utterance,
            self._context(request, tz_name),
            request.template_name,
            history=self._history(request),
        )
        result = self._finish(request, tz_name, extraction)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Request %s complete in %.2fs: %d event(s), %d conflict(s)",
            request.request_id,
            result.duration_seconds,
            len(result.events),
            len(result.conflicts),
        )
        return result

    def run_safe(self, request: SchedulingRequest) -> SchedulingResult | ErrorInfo:
        """Like :meth:`run` but returns an :class:`ErrorInfo` on failure."""
        try:
            return self.run(request)
        except SchedulingError as exc:
            logger.error("Request %s failed: %s", request.request_id, exc)
            return ErrorInfo.from_exception(exc)

    def stream(self, request: SchedulingRequest) -> Iterator[dict[str, Any]]:
        """Process one request, yielding frames as text arrives.

        Frames:

        - ``{"type": "chunk", "requestId", "delta", "text", "tokens"}``
          for each piece of model output.
        - ``{"type": "complete", "requestId", "result"}`` once, after the
          output has been validated and recorded.
        - ``{"type": "error", "requestId", "error"}`` instead of
          ``complete`` when the request fails.

        Closing the returned generator early cancels the model stream
        and records nothing.
        """
        tz_name = request.timezone or self._default_timezone
        try:
            self._check_conversation(request)
            self._check_quota(request.user_id)
            pending = self._extractor.stream(
                request.utterance,
                self._context(request, tz_name),
                request.template_name,
                history=self._history(request),
            )
        except SchedulingError as exc:
            yield _error_frame(request.request_id, exc)
            return

        with pending.completion as completion:
            try:
                for chunk in completion:
                    if chunk.is_final:
                        break
                    yield {
                        "type": "chunk",
                        "requestId": request.request_id,
                        "delta": chunk.delta_text,
                        "text": chunk.text_so_far,
                        "tokens": chunk.usage_so_far.total_tokens,
                    }
                if not completion.completed:
                    raise StreamCancelledError()
                result = self._finish(request, tz_name, pending.finish())
            except SchedulingError as exc:
                logger.error("Streaming request %s failed: %s", request.request_id, exc)
                yield _error_frame(request.request_id, exc)
                return

        yield {"type": "complete", "requestId": request.request_id, "result": result.to_dict()}

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _check_conversation(self, request: SchedulingRequest) -> None:
        if request.session_id is None:
            return
        if self._store.get_session(request.session_id) is None:
            raise ConversationNotFoundError("session", request.session_id)
        if request.thread_id is not None:
            thread = self._store.get_thread(request.thread_id)
            if thread is None or thread.session_id != request.session_id:
                raise ConversationNotFoundError("thread", request.thread_id)

    def _check_quota(self, user_id: str) -> LimitStatus:
        status = self._tracker.check_limits(user_id)
        if status.exceeded:
            logger.warning("User %s is over quota; continuing (advisory)", user_id)
        return status

    def _context(self, request: SchedulingRequest, tz_name: str) -> PromptContext:
        tz = resolve_timezone(tz_name)
        return PromptContext(
            user_input=request.utterance,
            timezone=tz_name,
            working_hours=request.working_hours,
            existing_events=_localize(request.existing_events, tz),
            preferences=request.preferences,
        )

    def _history(self, request: SchedulingRequest) -> list[ChatMessage]:
        if request.thread_id is None:
            return []
        thread = self._store.get_thread(request.thread_id)
        if thread is None:
            return []
        return [
            ChatMessage(role=m.role, content=m.content)
            for m in thread.messages[-HISTORY_LIMIT:]
        ]

    def _finish(
        self,
        request: SchedulingRequest,
        tz_name: str,
        extraction: ExtractionResponse,
    ) -> SchedulingResult:
        existing = _localize(request.existing_events, resolve_timezone(tz_name))
        conflicts = self._detector.detect_conflicts([*extraction.events, *existing])
        counts = extraction.usage

        result = SchedulingResult(
            request_id=request.request_id,
            events=list(extraction.events),
            message=extraction.message,
            suggestions=list(extraction.suggestions),
            conflicts=conflicts,
            reported_conflicts=list(extraction.conflicts),
            optimizations=list(extraction.optimizations),
            insights=list(extraction.insights),
            resolutions=list(extraction.resolutions),
        )
        cost = self._tracker.estimate_cost(
            counts.prompt_tokens, counts.completion_tokens, extraction.model
        )
        self._persist(request, extraction, conflicts, cost, result)

        result.usage = self._tracker.track_usage(
            counts.prompt_tokens,
            counts.completion_tokens,
            extraction.model,
            request.request_id,
            user_id=request.user_id,
        )
        result.limits = self._tracker.check_limits(request.user_id)
        return result

    def _persist(
        self,
        request: SchedulingRequest,
        extraction: ExtractionResponse,
        conflicts: list[Conflict],
        cost: float,
        result: SchedulingResult,
    ) -> None:
        if request.session_id is None:
            return

        thread_id = request.thread_id
        if thread_id is None:
            thread = self._store.create_thread(request.session_id)
            if thread is None:
                raise ConversationNotFoundError("session", request.session_id)
            thread_id = thread.id

        message = self._store.create_message(
            "assistant",
            extraction.message,
            MessageMetadata(
                parsed_events=list(extraction.events),
                confidence=extraction.average_confidence,
                suggestions=list(extraction.suggestions),
                conflicts=conflicts,
                tokens=extraction.usage.total_tokens,
                cost=cost,
            ),
        )
        if self._store.add_message_to_thread(thread_id, message) is None:
            self._store.delete_message(message.id)
            raise ConversationNotFoundError("thread", thread_id)

        result.session_id = request.session_id
        result.thread_id = thread_id
        result.message_id = message.id
        logger.debug("Stored reply %s in thread %s", message.id, thread_id)


def _localize(events: Sequence[ExistingEvent], tz: tzinfo) -> list[ExistingEvent]:
    """Attach *tz* to naive datetimes so they compare with candidates."""
    localized: list[ExistingEvent] = []
    for event in events:
        updates: dict[str, Any] = {}
        if event.start_time.tzinfo is None:
            updates["start_time"] = event.start_time.replace(tzinfo=tz)
        if event.end_time.tzinfo is None:
            updates["end_time"] = event.end_time.replace(tzinfo=tz)
        localized.append(event.model_copy(update=updates) if updates else event)
    return localized


def _error_frame(request_id: str, exc: SchedulingError) -> dict[str, Any]:
    return {
        "type": "error",
        "requestId": request_id,
        "error": ErrorInfo.from_exception(exc).to_dict(),
    }
