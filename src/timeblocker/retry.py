"""Error classification and retry policy for model-completion calls.

Maps ``google-genai`` and transport exceptions onto the pipeline's
:class:`~timeblocker.exceptions.ModelError` hierarchy and provides a
``@with_retry`` decorator that retries transient failures with
exponential backoff.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from google.genai import errors as genai_errors

from timeblocker.exceptions import (
    ModelAuthOrRequestError,
    ModelError,
    TransientModelError,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds

_RETRYABLE_STATUS = frozenset({408, 429})


def is_retryable_status(status: int | None) -> bool:
    if status is None:
        return False
    return status in _RETRYABLE_STATUS or status >= 500


def classify_error(error: BaseException) -> ModelError:
    """Map a raw exception to the matching :class:`ModelError` subclass.

    - ``APIError`` with status 408, 429 or 5xx -> :class:`TransientModelError`
    - any other ``APIError`` -> :class:`ModelAuthOrRequestError`
    - timeouts and network errors -> :class:`TransientModelError`
    - anything else -> :class:`ModelAuthOrRequestError`

    Args:
        error: The exception raised by the SDK or transport.

    Returns:
        A :class:`ModelError` ready to be raised ``from`` *error*.
    """
    if isinstance(error, ModelError):
        return error

    if isinstance(error, genai_errors.APIError):
        status = getattr(error, "code", None)
        if is_retryable_status(status):
            return TransientModelError(str(error), status_code=status)
        return ModelAuthOrRequestError(str(error), status_code=status)

    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return TransientModelError(f"Model request timed out: {error}", status_code=408)

    if isinstance(error, (httpx.TransportError, OSError)):
        return TransientModelError(f"Network error: {error}")

    return ModelAuthOrRequestError(f"Model request failed: {error}")


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Delay before retry number *attempt* (0-based), doubling each time."""
    return min(base_delay * (2**attempt), max_delay)


def with_retry(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> Callable[[F], F]:
    """Decorator that retries model calls on transient failures.

    Retry policy:
    - **Transient** (timeout, 408, 429, 5xx, network): exponential
      backoff, at most *max_attempts* calls in total.
    - **Non-transient** (auth failures, invalid requests, anything else):
      raised immediately as :class:`ModelAuthOrRequestError`.

    The decorated function must be a method.  When the instance defines
    ``_max_attempts``, ``_base_delay`` or ``_sleep`` those override the
    decorator defaults, so clients can be configured per instance and
    tests can replace the sleep function.

    Args:
        max_attempts: Total attempt ceiling (first call included).
        base_delay: Initial backoff delay in seconds.
        max_delay: Upper bound for a single backoff delay.

    Returns:
        A decorator that wraps the target method with retry logic.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            attempts = getattr(self, "_max_attempts", max_attempts)
            delay_base = getattr(self, "_base_delay", base_delay)
            sleep = getattr(self, "_sleep", time.sleep)

            for attempt in range(attempts):
                try:
                    return func(self, *args, **kwargs)
                except Exception as exc:
                    model_error = classify_error(exc)

                    if not isinstance(model_error, TransientModelError):
                        logger.error("Model request rejected: %s", exc)
                        if model_error is exc:
                            raise
                        raise model_error from exc

                    if attempt + 1 >= attempts:
                        logger.error(
                            "Model request failed after %d attempt(s): %s",
                            attempts,
                            exc,
                        )
                        if model_error is exc:
                            raise
                        raise model_error from exc

                    delay = backoff_delay(attempt, delay_base, max_delay)
                    logger.warning(
                        "Transient model error, retrying in %.1fs (attempt %d/%d): %s",
                        delay,
                        attempt + 1,
                        attempts,
                        exc,
                    )
                    sleep(delay)

            raise TransientModelError("Retry loop exhausted unexpectedly")  # pragma: no cover

        return wrapper  # type: ignore[return-value]

    return decorator
