"""Data models for timeblocker."""

from __future__ import annotations

from timeblocker.models.conversation import (
    Message,
    MessageMetadata,
    Session,
    SessionExport,
    SessionStats,
    Thread,
)
from timeblocker.models.events import (
    CandidateEvent,
    Conflict,
    ExistingEvent,
    ParsedResponse,
    ReportedConflict,
)
from timeblocker.models.usage import (
    LimitStatus,
    TokenCounts,
    TokenUsageRecord,
    UsageStats,
)

__all__ = [
    "CandidateEvent",
    "Conflict",
    "ExistingEvent",
    "LimitStatus",
    "Message",
    "MessageMetadata",
    "ParsedResponse",
    "ReportedConflict",
    "Session",
    "SessionExport",
    "SessionStats",
    "Thread",
    "TokenCounts",
    "TokenUsageRecord",
    "UsageStats",
]
