"""Exception hierarchy for the scheduling pipeline.

Exception hierarchy::

    SchedulingError                 (base; carries an ErrorKind)
    +-- TemplateNotFoundError       (unknown prompt template name)
    +-- SchemaValidationError       (model output rejected as a batch)
    +-- ConversationNotFoundError   (pipeline given an unknown session/thread)
    +-- ModelError                  (base for completion failures)
        +-- TransientModelError     (timeout, 429, 5xx, network)
        +-- ModelAuthOrRequestError (auth failures, invalid requests)
        +-- EmptyCompletionError    (model returned no content)
        +-- StreamCancelledError    (caller cancelled a stream)

Unknown session/thread/message ids are not exceptions inside the
conversation store, which returns ``None`` or an empty result instead;
the pipeline turns them into :class:`ConversationNotFoundError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """What the caller should do about a failure."""

    RETRYABLE = "retryable"
    INVALID_INPUT = "invalid_input"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class SchedulingError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        kind: The :class:`ErrorKind` used to build user-visible errors.
        code: Stable machine-readable error code.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "scheduling_error"


class TemplateNotFoundError(SchedulingError):
    """Raised when a prompt template name is not registered.

    Attributes:
        template_name: The name that was looked up.
    """

    kind = ErrorKind.INVALID_INPUT
    code = "template_not_found"

    def __init__(self, template_name: str) -> None:
        super().__init__(f"Unknown prompt template: {template_name!r}")
        self.template_name = template_name


class SchemaValidationError(SchedulingError):
    """Raised when model output fails validation as a whole batch.

    Field-level drift (out-of-range confidence, unknown category) is
    repaired by the validator and never raises; this error covers a
    missing ``events`` array, invalid JSON, or an unparsable required
    field.

    Attributes:
        field: Path of the offending field (e.g. ``"events[1].startTime"``),
            or ``None`` when the whole document is unusable.
        raw_response: The raw model output that was rejected.
    """

    kind = ErrorKind.INVALID_INPUT
    code = "schema_validation_failed"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        raw_response: str = "",
    ) -> None:
        super().__init__(message)
        self.field = field
        self.raw_response = raw_response


class ConversationNotFoundError(SchedulingError):
    """Raised when a request names a session or thread that does not exist.

    Attributes:
        what: ``"session"`` or ``"thread"``.
        identifier: The unknown id.
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(self, what: str, identifier: str) -> None:
        super().__init__(f"{what.capitalize()} {identifier!r} not found")
        self.what = what
        self.identifier = identifier
        self.code = f"{what}_not_found"


class ModelError(SchedulingError):
    """Base exception for model-completion failures.

    Attributes:
        status_code: HTTP status from the model endpoint, or ``None`` if
            the error did not come from an HTTP response.
    """

    code = "model_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientModelError(ModelError):
    """Timeout, rate limit, 5xx or network failure.

    Retried inside the completion client; surfaced only once the attempt
    ceiling is exhausted.
    """

    kind = ErrorKind.RETRYABLE
    code = "model_unavailable"


class ModelAuthOrRequestError(ModelError):
    """Non-retryable rejection (bad credentials, invalid request)."""

    kind = ErrorKind.INVALID_REQUEST
    code = "model_request_rejected"


class EmptyCompletionError(ModelError):
    """The model produced no assistant content."""

    kind = ErrorKind.RETRYABLE
    code = "empty_completion"

    def __init__(self, message: str = "Model returned an empty completion") -> None:
        super().__init__(message)


class StreamCancelledError(ModelError):
    """A streaming completion was cancelled by the caller."""

    kind = ErrorKind.CANCELLED
    code = "stream_cancelled"

    def __init__(self, message: str = "Completion stream was cancelled") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ErrorInfo:
    """Structured, user-visible description of a failure.

    Lets a caller choose between retrying, asking the user to fix their
    input, or reporting that something is unavailable, without inspecting
    exception types.
    """

    kind: ErrorKind
    code: str
    message: str
    field: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE

    @classmethod
    def from_exception(cls, exc: Exception) -> ErrorInfo:
        if isinstance(exc, SchedulingError):
            return cls(
                kind=exc.kind,
                code=exc.code,
                message=str(exc),
                field=getattr(exc, "field", None),
            )
        return cls(kind=ErrorKind.INTERNAL, code="internal_error", message=str(exc))

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.field is not None:
            payload["field"] = self.field
        return payload
