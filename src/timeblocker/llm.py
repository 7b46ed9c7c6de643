"""Gemini completion client.

Wraps the ``google-genai`` SDK behind a small interface used by the rest
of the pipeline:

- :meth:`CompletionClient.complete` -- one completion, retried on
  transient failures (see :mod:`timeblocker.retry`).
- :meth:`CompletionClient.stream` -- an incremental, cancellable,
  single-pass :class:`CompletionStream`.

Retries are private to this module: callers see one result (or one
error) per logical request, and token usage is reported only for the
attempt that succeeded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from google import genai
from google.genai import types as genai_types

from timeblocker.exceptions import EmptyCompletionError
from timeblocker.models.usage import TokenCounts
from timeblocker.prompts import DEFAULT_MODEL
from timeblocker.retry import DEFAULT_MAX_ATTEMPTS, classify_error, with_retry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

ChatRole = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: ChatRole
    content: str


@dataclass(frozen=True)
class ModelConfig:
    """Sampling configuration for one request.

    Attributes:
        model: Model identifier.
        temperature: Sampling temperature.
        max_tokens: Maximum output tokens.
        json_mode: Request ``application/json`` output.
    """

    model: str = DEFAULT_MODEL
    temperature: float = 0.3
    max_tokens: int = 2000
    json_mode: bool = False


@dataclass(frozen=True)
class CompletionResult:
    """A successful completion.

    Attributes:
        text: The assistant output (never empty).
        model: Model that produced the output.
        usage: Token counts of the successful attempt only.
        finish_reason: Finish reason reported by the endpoint, if any.
        attempts: Number of attempts made (``1`` when no retry was needed).
    """

    text: str
    model: str
    usage: TokenCounts = field(default_factory=TokenCounts)
    finish_reason: str | None = None
    attempts: int = 1


@dataclass(frozen=True)
class StreamChunk:
    """One element of a :class:`CompletionStream`.

    Attributes:
        delta_text: Text added by this chunk (empty on the final chunk).
        is_final: ``True`` only for the terminal chunk.
        usage_so_far: Latest token counts reported by the endpoint.
        text_so_far: All text received so far.
    """

    delta_text: str
    is_final: bool
    usage_so_far: TokenCounts
    text_so_far: str = ""


# ---------------------------------------------------------------------------
# SDK response helpers
# ---------------------------------------------------------------------------


def _usage_from_response(response: Any) -> TokenCounts | None:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None
    return TokenCounts(
        prompt_tokens=getattr(usage, "prompt_token_count", 0) or 0,
        completion_tokens=getattr(usage, "candidates_token_count", 0) or 0,
    )


def _finish_reason(response: Any) -> str | None:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    reason = getattr(candidates[0], "finish_reason", None)
    if reason is None:
        return None
    return getattr(reason, "name", None) or str(reason)


def _response_text(response: Any) -> str:
    # ``response.text`` raises or returns None for blocked/empty candidates.
    try:
        return response.text or ""
    except (ValueError, AttributeError):
        return ""


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class CompletionStream:
    """A lazy, finite, single-pass sequence of :class:`StreamChunk`.

    Iterating yields one chunk per text delta followed by exactly one
    chunk with ``is_final=True``.  Once exhausted or cancelled the stream
    yields nothing further; it cannot be restarted.

    :meth:`cancel` (also called by :meth:`close` and on ``with``-block
    exit) closes the underlying SDK iterator, which releases the HTTP
    connection, and stops delivery immediately.

    Raises during iteration:
        EmptyCompletionError: The stream finished without any text.
        ModelError: A transport or API failure after the stream opened.
    """

    def __init__(
        self,
        opener: Callable[[], tuple[Iterator[Any], Any]],
        model: str,
    ) -> None:
        self._opener = opener
        self._model = model
        self._source: Iterator[Any] | None = None
        self._first: Any = None
        self._cancelled = threading.Event()
        self._done = False
        self._completed = False
        self._text_parts: list[str] = []
        self._usage = TokenCounts()
        self._finish_reason: str | None = None
        self._generator = self._run()

    # -- iterator protocol ------------------------------------------------

    def __iter__(self) -> CompletionStream:
        return self

    def __next__(self) -> StreamChunk:
        if self._cancelled.is_set() or self._done:
            raise StopIteration
        return next(self._generator)

    def __enter__(self) -> CompletionStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    # -- public state -----------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def usage(self) -> TokenCounts:
        return self._usage

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def completed(self) -> bool:
        return self._completed

    def result(self) -> CompletionResult:
        """Return the completed result; valid only after the final chunk."""
        if not self._completed:
            raise RuntimeError("Stream has not completed")
        return CompletionResult(
            text=self.text,
            model=self._model,
            usage=self._usage,
            finish_reason=self._finish_reason,
        )

    def cancel(self) -> None:
        """Stop the stream and close the underlying transport.

        Cancelling a stream that already delivered its final chunk only
        releases the transport.
        """
        if not self._done and not self._cancelled.is_set():
            self._cancelled.set()
            logger.info("Completion stream cancelled after %d chars", len(self.text))
        self._done = True
        self._close_source()
        try:
            self._generator.close()
        except ValueError:
            # Generator is running on another thread; it checks the
            # cancelled flag before yielding again.
            pass

    close = cancel

    # -- internals --------------------------------------------------------

    def _close_source(self) -> None:
        close = getattr(self._source, "close", None)
        if callable(close):
            try:
                close()
            except Exception:
                logger.debug("Error while closing completion stream", exc_info=True)

    def _absorb(self, chunk: Any) -> str:
        usage = _usage_from_response(chunk)
        if usage is not None:
            self._usage = usage
        reason = _finish_reason(chunk)
        if reason is not None:
            self._finish_reason = reason
        delta = _response_text(chunk)
        if delta:
            self._text_parts.append(delta)
        return delta

    def _run(self) -> Iterator[StreamChunk]:
        self._source, self._first = self._opener()
        pending = [self._first] if self._first is not None else []

        try:
            while True:
                if pending:
                    raw = pending.pop()
                else:
                    try:
                        raw = next(self._source)
                    except StopIteration:
                        break
                if self._cancelled.is_set():
                    return
                delta = self._absorb(raw)
                if delta:
                    yield StreamChunk(
                        delta_text=delta,
                        is_final=False,
                        usage_so_far=self._usage,
                        text_so_far=self.text,
                    )
        except GeneratorExit:
            raise
        except EmptyCompletionError:
            self._done = True
            raise
        except Exception as exc:
            self._done = True
            raise classify_error(exc) from exc

        self._done = True
        if not self.text.strip():
            raise EmptyCompletionError("Model stream finished without any content")
        self._completed = True

        logger.info(
            "Completion stream finished: %d chars, %d tokens",
            len(self.text),
            self._usage.total_tokens,
        )
        yield StreamChunk(
            delta_text="",
            is_final=True,
            usage_so_far=self._usage,
            text_so_far=self.text,
        )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CompletionClient:
    """Client for Gemini completions with bounded retries and a timeout.

    Args:
        api_key: Gemini API key.
        timeout_seconds: Per-call timeout; exceeding it counts as a
            transient failure.
        max_attempts: Total attempts for transient failures.
        base_delay: Initial backoff delay in seconds.
        sleep: Sleep function used between retries (replaceable in tests).
    """

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = genai.Client(
            api_key=api_key,
            http_options=genai_types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._attempt_counter = threading.local()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def complete(
        self,
        messages: list[ChatMessage],
        config: ModelConfig | None = None,
    ) -> CompletionResult:
        """Request a single completion.

        Args:
            messages: Conversation so far.  ``system`` messages become the
                system instruction.
            config: Model and sampling settings.

        Returns:
            A :class:`CompletionResult` for the successful attempt.

        Raises:
            TransientModelError: Transient failures exhausted all attempts.
            ModelAuthOrRequestError: The request was rejected outright.
            EmptyCompletionError: The model returned no content.
        """
        config = config or ModelConfig()
        system_instruction, contents = _to_contents(messages)
        generation_config = _generation_config(config, system_instruction)

        logger.debug("Requesting completion from %s (%d message(s))", config.model, len(contents))

        self._attempt_counter.value = 0
        response = self._generate(config.model, contents, generation_config)
        attempts = self._attempt_counter.value

        text = _response_text(response)
        if not text.strip():
            logger.error("Model %s returned an empty completion", config.model)
            raise EmptyCompletionError()

        usage = _usage_from_response(response) or TokenCounts()
        logger.debug("Raw completion (attempt %d):\n%s", attempts, text)
        logger.info(
            "Completion from %s: %d prompt + %d completion tokens",
            config.model,
            usage.prompt_tokens,
            usage.completion_tokens,
        )
        return CompletionResult(
            text=text,
            model=config.model,
            usage=usage,
            finish_reason=_finish_reason(response),
            attempts=attempts,
        )

    def stream(
        self,
        messages: list[ChatMessage],
        config: ModelConfig | None = None,
    ) -> CompletionStream:
        """Open a streaming completion.

        The request is sent lazily, when the first chunk is requested.
        Transient failures while opening the stream are retried; once the
        first chunk has been received, errors are raised to the caller.

        Returns:
            A fresh :class:`CompletionStream`.
        """
        config = config or ModelConfig()
        system_instruction, contents = _to_contents(messages)
        generation_config = _generation_config(config, system_instruction)

        def opener() -> tuple[Iterator[Any], Any]:
            return self._open_stream(config.model, contents, generation_config)

        return CompletionStream(opener, model=config.model)

    def health_check(self) -> dict[str, Any]:
        """Probe the endpoint by listing models.

        Returns:
            ``{"healthy": bool, "latency_ms": float, "error": str | None}``.
        """
        started = time.monotonic()
        try:
            self._list_models()
        except Exception as exc:
            logger.error("Model endpoint health check failed: %s", exc)
            return {"healthy": False, "latency_ms": 0.0, "error": str(exc)}
        latency_ms = (time.monotonic() - started) * 1000
        return {"healthy": True, "latency_ms": latency_ms, "error": None}

    # ------------------------------------------------------------------
    # Retried SDK calls
    # ------------------------------------------------------------------

    @with_retry()
    def _generate(
        self,
        model: str,
        contents: list[genai_types.Content],
        config: genai_types.GenerateContentConfig,
    ) -> Any:
        self._attempt_counter.value = getattr(self._attempt_counter, "value", 0) + 1
        return self._client.models.generate_content(
            model=model,
            contents=contents,
            config=config,
        )

    @with_retry()
    def _open_stream(
        self,
        model: str,
        contents: list[genai_types.Content],
        config: genai_types.GenerateContentConfig,
    ) -> tuple[Iterator[Any], Any]:
        source = iter(
            self._client.models.generate_content_stream(
                model=model,
                contents=contents,
                config=config,
            )
        )
        # The SDK sends the request on first iteration; pulling the first
        # chunk here keeps connection failures inside the retry loop.
        try:
            first = next(source)
        except StopIteration:
            first = None
        return source, first

    @with_retry()
    def _list_models(self) -> list[Any]:
        return list(self._client.models.list())


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def _to_contents(
    messages: list[ChatMessage],
) -> tuple[str | None, list[genai_types.Content]]:
    system_parts = [m.content for m in messages if m.role == "system"]
    contents = [
        genai_types.Content(
            role="model" if m.role == "assistant" else "user",
            parts=[genai_types.Part(text=m.content)],
        )
        for m in messages
        if m.role != "system"
    ]
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return system_instruction, contents


def _generation_config(
    config: ModelConfig,
    system_instruction: str | None,
) -> genai_types.GenerateContentConfig:
    return genai_types.GenerateContentConfig(
        system_instruction=system_instruction,
        temperature=config.temperature,
        max_output_tokens=config.max_tokens,
        response_mime_type="application/json" if config.json_mode else None,
    )
