"""timeblocker-ai: natural-language scheduling.

Turns free-text requests into validated calendar events, detects
scheduling conflicts, and keeps conversation and token-usage state.
"""

from __future__ import annotations

from timeblocker.conflicts import ConflictDetector, detect_conflicts
from timeblocker.conversation import ConversationStore
from timeblocker.exceptions import (
    ErrorInfo,
    ErrorKind,
    ModelError,
    SchedulingError,
    SchemaValidationError,
    TemplateNotFoundError,
)
from timeblocker.extractor import EventExtractor, ExtractionResponse
from timeblocker.models.events import CandidateEvent, Conflict, ExistingEvent
from timeblocker.pipeline import SchedulingPipeline, SchedulingRequest, SchedulingResult
from timeblocker.prompts import PromptContext, format_template, get_template_names
from timeblocker.usage import TokenTracker
from timeblocker.validator import validate_response

__version__ = "0.1.0"

__all__ = [
    "CandidateEvent",
    "Conflict",
    "ConflictDetector",
    "ConversationStore",
    "ErrorInfo",
    "ErrorKind",
    "EventExtractor",
    "ExistingEvent",
    "ExtractionResponse",
    "ModelError",
    "PromptContext",
    "SchedulingError",
    "SchedulingPipeline",
    "SchedulingRequest",
    "SchedulingResult",
    "SchemaValidationError",
    "TemplateNotFoundError",
    "TokenTracker",
    "detect_conflicts",
    "format_template",
    "get_template_names",
    "validate_response",
]
