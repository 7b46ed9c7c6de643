"""Event extraction: utterance in, validated candidate events out.

Orchestrates the three lower layers for a single utterance::

    require_template -> format_template -> CompletionClient.complete
                     -> validate_response

The extractor does not record usage or touch conversation state; it
returns the token counts of the successful completion so the caller can
charge them exactly once.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from timeblocker.llm import (
    ChatMessage,
    CompletionClient,
    CompletionResult,
    CompletionStream,
    ModelConfig,
)
from timeblocker.models.events import CandidateEvent, ReportedConflict
from timeblocker.models.usage import TokenCounts
from timeblocker.prompts import (
    FormattedPrompt,
    PromptContext,
    WorkingHours,
    format_template,
    require_template,
)
from timeblocker.validator import resolve_timezone, validate_response

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "calendar_parsing"


@dataclass(frozen=True)
class ExtractionResponse:
    """Structured result of one extraction.

    Attributes:
        events: Candidate events, in the order the model listed them.
        message: Human-friendly confirmation from the model.
        suggestions: Scheduling suggestions from the model.
        conflicts: Conflicts the model reported itself (advisory; the
            pipeline computes authoritative conflicts separately).
        optimizations: Proposed schedule changes (optimization template).
        insights: Observations accompanying ``optimizations``.
        resolutions: Proposed fixes (conflict resolution template).
        usage: Token counts of the successful completion.
        model: Model that produced the completion.
        attempts: Completion attempts made, retries included.
    """

    events: list[CandidateEvent] = field(default_factory=list)
    message: str = ""
    suggestions: list[str] = field(default_factory=list)
    conflicts: list[ReportedConflict] = field(default_factory=list)
    optimizations: list[dict[str, Any]] = field(default_factory=list)
    insights: list[dict[str, Any]] = field(default_factory=list)
    resolutions: list[dict[str, Any]] = field(default_factory=list)
    usage: TokenCounts = field(default_factory=TokenCounts)
    model: str = ""
    attempts: int = 1

    @property
    def average_confidence(self) -> float | None:
        if not self.events:
            return None
        return sum(e.confidence for e in self.events) / len(self.events)


class EventExtractor:
    """Turns one utterance into candidate events via the model.

    Args:
        client: Completion client used for the model call.
        default_timezone: Timezone used when the context carries none.
        model_override: If set, replaces every template's model.
        clock: Returns "now"; used when the context has no current date.
    """

    def __init__(
        self,
        client: CompletionClient,
        default_timezone: str = "UTC",
        model_override: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._default_timezone = default_timezone
        self._model_override = model_override
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_prompt(
        self,
        utterance: str,
        context: PromptContext | None = None,
        template_name: str = DEFAULT_TEMPLATE,
    ) -> tuple[FormattedPrompt, str]:
        """Resolve the template and bind the context.

        Missing timezone, current date and working hours are filled in
        before formatting.

        Returns:
            The formatted prompt and the effective timezone name.

        Raises:
            TemplateNotFoundError: If *template_name* is not registered.
        """
        template = require_template(template_name)
        context = context or PromptContext()

        tz_name = context.timezone or self._default_timezone
        tz = resolve_timezone(tz_name)
        bound = dataclasses.replace(
            context,
            user_input=utterance,
            timezone=tz_name,
            current_date=context.current_date or self._clock().astimezone(tz),
            working_hours=context.working_hours or WorkingHours(),
        )
        prompt = format_template(template, bound)
        logger.debug("System prompt:\n%s", prompt.system_prompt)
        logger.debug("User prompt:\n%s", prompt.user_prompt)
        return prompt, tz_name

    def extract(
        self,
        utterance: str,
        context: PromptContext | None = None,
        template_name: str = DEFAULT_TEMPLATE,
        history: Sequence[ChatMessage] = (),
    ) -> ExtractionResponse:
        """Extract candidate events from *utterance*.

        Templates that do not request JSON (``chat_conversation``) skip
        validation; the completion text becomes the response message.

        Args:
            utterance: Free-text user input.
            context: Prompt context (timezone, existing events, ...).
            template_name: Registered prompt template to use.
            history: Earlier turns of the conversation, oldest first.
                They are sent between the system prompt and the new
                user prompt.

        Returns:
            An :class:`ExtractionResponse`.  Event datetimes are in the
            context's timezone.

        Raises:
            TemplateNotFoundError: Unknown *template_name*.
            ModelError: The completion failed (after retries).
            SchemaValidationError: The model output was rejected.
        """
        prompt, tz_name = self.build_prompt(utterance, context, template_name)
        logger.info("Extracting events with template %r (tz=%s)", template_name, tz_name)

        result = self._client.complete(_messages(prompt, history), self._config(prompt))
        return _to_response(result, tz_name, prompt)

    def stream(
        self,
        utterance: str,
        context: PromptContext | None = None,
        template_name: str = DEFAULT_TEMPLATE,
        history: Sequence[ChatMessage] = (),
    ) -> ExtractionStream:
        """Open a streaming completion for *utterance*.

        Nothing is sent until the returned stream is first iterated.

        Raises:
            TemplateNotFoundError: Unknown *template_name*.
        """
        prompt, tz_name = self.build_prompt(utterance, context, template_name)
        logger.info("Streaming extraction with template %r (tz=%s)", template_name, tz_name)
        return ExtractionStream(
            completion=self._client.stream(_messages(prompt, history), self._config(prompt)),
            timezone=tz_name,
            prompt=prompt,
        )

    def _config(self, prompt: FormattedPrompt) -> ModelConfig:
        return ModelConfig(
            model=self._model_override or prompt.model,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            json_mode=prompt.json_mode,
        )


@dataclass
class ExtractionStream:
    """A streaming extraction in progress.

    Iterate :attr:`completion` for text deltas, then call :meth:`finish`
    after the final chunk to validate the full text.
    """

    completion: CompletionStream
    timezone: str
    prompt: FormattedPrompt

    def finish(self) -> ExtractionResponse:
        """Validate the completed stream's text.

        Raises:
            RuntimeError: If the stream has not delivered its final chunk.
            SchemaValidationError: The model output was rejected.
        """
        return _to_response(self.completion.result(), self.timezone, self.prompt)

    def cancel(self) -> None:
        self.completion.cancel()


def _messages(prompt: FormattedPrompt, history: Sequence[ChatMessage]) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=prompt.system_prompt),
        *history,
        ChatMessage(role="user", content=prompt.user_prompt),
    ]


def _to_response(
    result: CompletionResult, tz_name: str, prompt: FormattedPrompt
) -> ExtractionResponse:
    if not prompt.json_mode:
        return ExtractionResponse(
            message=result.text.strip(),
            usage=result.usage,
            model=result.model,
            attempts=result.attempts,
        )

    parsed = validate_response(result.text, tz_name, require_events=prompt.events_required)
    logger.info(
        "Extraction complete: %d event(s), %d reported conflict(s)",
        len(parsed.events),
        len(parsed.conflicts),
    )
    return ExtractionResponse(
        events=list(parsed.events),
        message=parsed.message,
        suggestions=list(parsed.suggestions),
        conflicts=list(parsed.conflicts),
        optimizations=list(parsed.optimizations),
        insights=list(parsed.insights),
        resolutions=list(parsed.resolutions),
        usage=result.usage,
        model=result.model,
        attempts=result.attempts,
    )
