"""Unit tests for CompletionClient and CompletionStream.

All tests use mocks -- no real Gemini API calls are made.  ``genai.Client``
is patched at construction time and the SDK responses are plain
namespaces carrying ``text``, ``usage_metadata`` and ``candidates``.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from google.genai import errors as genai_errors

from timeblocker.exceptions import (
    EmptyCompletionError,
    ModelAuthOrRequestError,
    TransientModelError,
)
from timeblocker.llm import ChatMessage, CompletionClient, ModelConfig

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_response(
    text: str | None,
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
    finish_reason: str | None = "STOP",
) -> SimpleNamespace:
    """Build an object shaped like a ``GenerateContentResponse``."""
    candidates = []
    if finish_reason is not None:
        candidates = [SimpleNamespace(finish_reason=SimpleNamespace(name=finish_reason))]
    return SimpleNamespace(
        text=text,
        usage_metadata=SimpleNamespace(
            prompt_token_count=prompt_tokens,
            candidates_token_count=completion_tokens,
        ),
        candidates=candidates,
    )


def _api_error(code: int) -> genai_errors.APIError:
    return genai_errors.APIError(
        code=code,
        response_json={"error": {"code": code, "message": f"HTTP {code}", "status": "ERROR"}},
    )


class _Source:
    """Iterator standing in for the SDK stream; records ``close()``."""

    def __init__(self, chunks: list[Any]) -> None:
        self._chunks = iter(chunks)
        self.closed = False

    def __iter__(self) -> _Source:
        return self

    def __next__(self) -> Any:
        if self.closed:
            raise StopIteration
        return next(self._chunks)

    def close(self) -> None:
        self.closed = True


def _make_client(max_attempts: int = 3) -> tuple[CompletionClient, list[float]]:
    """Create a ``CompletionClient`` with a mocked ``genai.Client``.

    Returns the client and the list that records retry sleeps.
    """
    sleeps: list[float] = []
    with patch("timeblocker.llm.genai.Client"):
        client = CompletionClient(
            api_key="fake-key",
            max_attempts=max_attempts,
            sleep=sleeps.append,
        )
    return client, sleeps


_MESSAGES = [
    ChatMessage(role="system", content="You are a scheduler."),
    ChatMessage(role="user", content="Lunch tomorrow at noon"),
]


# ---------------------------------------------------------------------------
# complete()
# ---------------------------------------------------------------------------


class TestComplete:
    """Single completions."""

    def test_returns_text_and_usage(self) -> None:
        """A successful call returns the text, usage and finish reason."""
        client, _ = _make_client()
        client._client.models.generate_content = MagicMock(
            return_value=_make_response('{"events": []}', 120, 30)
        )

        result = client.complete(_MESSAGES, ModelConfig(model="gemini-2.0-flash"))

        assert result.text == '{"events": []}'
        assert result.model == "gemini-2.0-flash"
        assert result.usage.prompt_tokens == 120
        assert result.usage.completion_tokens == 30
        assert result.usage.total_tokens == 150
        assert result.finish_reason == "STOP"
        assert result.attempts == 1

    def test_system_message_becomes_instruction(self) -> None:
        """System messages go to system_instruction; others become contents."""
        client, _ = _make_client()
        client._client.models.generate_content = MagicMock(return_value=_make_response("ok"))
        messages = [
            *_MESSAGES,
            ChatMessage(role="assistant", content="Sure."),
        ]

        client.complete(messages, ModelConfig(json_mode=True, temperature=0.2, max_tokens=99))

        kwargs = client._client.models.generate_content.call_args.kwargs
        config = kwargs["config"]
        assert config.system_instruction == "You are a scheduler."
        assert config.temperature == 0.2
        assert config.max_output_tokens == 99
        assert config.response_mime_type == "application/json"
        assert [c.role for c in kwargs["contents"]] == ["user", "model"]
        assert kwargs["contents"][0].parts[0].text == "Lunch tomorrow at noon"

    def test_transient_twice_then_success(self) -> None:
        """Two 503s are retried; the result reports three attempts and only final usage."""
        client, sleeps = _make_client()
        client._client.models.generate_content = MagicMock(
            side_effect=[_api_error(503), _api_error(503), _make_response("ok", 7, 3)]
        )

        result = client.complete(_MESSAGES)

        assert result.text == "ok"
        assert result.attempts == 3
        assert result.usage.total_tokens == 10
        assert sleeps == [1.0, 2.0]

    def test_transient_exhausted(self) -> None:
        """Three timeouts raise TransientModelError."""
        client, _ = _make_client()
        client._client.models.generate_content = MagicMock(side_effect=TimeoutError("slow"))

        with pytest.raises(TransientModelError):
            client.complete(_MESSAGES)

        assert client._client.models.generate_content.call_count == 3

    def test_auth_error_fails_immediately(self) -> None:
        """A 403 is not retried."""
        client, sleeps = _make_client()
        client._client.models.generate_content = MagicMock(side_effect=_api_error(403))

        with pytest.raises(ModelAuthOrRequestError) as exc_info:
            client.complete(_MESSAGES)

        assert exc_info.value.status_code == 403
        assert client._client.models.generate_content.call_count == 1
        assert sleeps == []

    @pytest.mark.parametrize("text", [None, "", "   \n"])
    def test_empty_completion_is_error(self, text: str | None) -> None:
        """Blank output raises EmptyCompletionError instead of succeeding."""
        client, _ = _make_client()
        client._client.models.generate_content = MagicMock(return_value=_make_response(text))

        with pytest.raises(EmptyCompletionError):
            client.complete(_MESSAGES)

    def test_missing_usage_metadata_defaults_to_zero(self) -> None:
        """Responses without usage metadata report zero tokens."""
        client, _ = _make_client()
        response = SimpleNamespace(text="ok", usage_metadata=None, candidates=[])
        client._client.models.generate_content = MagicMock(return_value=response)

        result = client.complete(_MESSAGES)

        assert result.usage.total_tokens == 0
        assert result.finish_reason is None


# ---------------------------------------------------------------------------
# stream()
# ---------------------------------------------------------------------------


class TestStream:
    """Streaming completions."""

    def test_chunks_then_final(self) -> None:
        """Each delta is a chunk; the last chunk is final and carries the full text."""
        client, _ = _make_client()
        source = _Source(
            [
                _make_response('{"events"', 10, 1, None),
                _make_response(": []}", 10, 4, "STOP"),
            ]
        )
        client._client.models.generate_content_stream = MagicMock(return_value=source)

        chunks = list(client.stream(_MESSAGES))

        assert [c.delta_text for c in chunks] == ['{"events"', ": []}", ""]
        assert [c.is_final for c in chunks] == [False, False, True]
        assert chunks[-1].text_so_far == '{"events": []}'
        assert chunks[-1].usage_so_far.total_tokens == 14

    def test_request_sent_lazily(self) -> None:
        """Creating a stream does not call the SDK."""
        client, _ = _make_client()
        client._client.models.generate_content_stream = MagicMock()

        client.stream(_MESSAGES)

        client._client.models.generate_content_stream.assert_not_called()

    def test_result_after_completion(self) -> None:
        """result() is available once the final chunk has been delivered."""
        client, _ = _make_client()
        client._client.models.generate_content_stream = MagicMock(
            return_value=_Source([_make_response("hello", 3, 2)])
        )

        with client.stream(_MESSAGES) as stream:
            list(stream)

        result = stream.result()
        assert result.text == "hello"
        assert result.usage.total_tokens == 5
        assert stream.completed is True
        assert stream.cancelled is False

    def test_not_restartable(self) -> None:
        """Iterating an exhausted stream again yields nothing."""
        client, _ = _make_client()
        client._client.models.generate_content_stream = MagicMock(
            return_value=_Source([_make_response("hello")])
        )
        stream = client.stream(_MESSAGES)
        list(stream)

        assert list(stream) == []
        assert client._client.models.generate_content_stream.call_count == 1

    def test_cancel_closes_transport_and_stops(self) -> None:
        """After cancel() the source is closed and no further chunks arrive."""
        client, _ = _make_client()
        source = _Source([_make_response(part) for part in ("a", "b", "c")])
        client._client.models.generate_content_stream = MagicMock(return_value=source)
        stream = client.stream(_MESSAGES)

        first = next(stream)
        stream.cancel()

        assert first.delta_text == "a"
        assert source.closed is True
        assert stream.cancelled is True
        assert list(stream) == []
        with pytest.raises(RuntimeError):
            stream.result()

    def test_transient_error_on_open_retried(self) -> None:
        """Failures before the first chunk are retried."""
        client, sleeps = _make_client()
        client._client.models.generate_content_stream = MagicMock(
            side_effect=[_api_error(429), _Source([_make_response("ok")])]
        )

        chunks = list(client.stream(_MESSAGES))

        assert chunks[-1].is_final is True
        assert sleeps == [1.0]

    def test_error_mid_stream_is_classified(self) -> None:
        """A transport error after the first chunk surfaces as TransientModelError."""

        def _broken() -> Any:
            yield _make_response("partial")
            raise ConnectionResetError("reset")

        client, _ = _make_client()
        client._client.models.generate_content_stream = MagicMock(return_value=_broken())
        stream = client.stream(_MESSAGES)

        assert next(stream).delta_text == "partial"
        with pytest.raises(TransientModelError):
            next(stream)
        assert stream.completed is False

    @pytest.mark.parametrize("texts", [[""], ["  ", "\n"]])
    def test_blank_stream_is_error(self, texts: list[str]) -> None:
        """A stream with no text, or only whitespace, raises EmptyCompletionError."""
        client, _ = _make_client()
        client._client.models.generate_content_stream = MagicMock(
            return_value=_Source([_make_response(text) for text in texts])
        )
        stream = client.stream(_MESSAGES)

        with pytest.raises(EmptyCompletionError):
            list(stream)
        assert stream.completed is False


# ---------------------------------------------------------------------------
# health_check()
# ---------------------------------------------------------------------------


class TestHealthCheck:
    """CompletionClient.health_check()."""

    def test_healthy(self) -> None:
        """Listing models succeeds -> healthy."""
        client, _ = _make_client()
        client._client.models.list = MagicMock(return_value=[])

        status = client.health_check()

        assert status["healthy"] is True
        assert status["error"] is None

    def test_unhealthy(self) -> None:
        """An auth failure reports unhealthy with the error text."""
        client, _ = _make_client()
        client._client.models.list = MagicMock(side_effect=_api_error(401))

        status = client.health_check()

        assert status["healthy"] is False
        assert status["error"]
