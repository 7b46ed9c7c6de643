"""Pydantic models for conversation sessions, threads and messages.

Threads form a tree through ``parent_id`` only; there are no object
back-references, so a session exports to plain JSON and imports back
unchanged.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from timeblocker.models.events import CandidateEvent, Conflict, UtcDatetime

Role = Literal["user", "assistant"]
ThreadPriority = Literal["low", "medium", "high"]


class MessageMetadata(BaseModel):
    """Pipeline output attached to a message.

    Attributes:
        parsed_events: Candidate events extracted for this message.
        confidence: Mean confidence of ``parsed_events``.
        suggestions: Model suggestions.
        conflicts: Conflicts detected for ``parsed_events``.
        tokens: Total tokens charged for producing this message.
        cost: Cost in USD charged for producing this message.
    """

    parsed_events: list[CandidateEvent] = Field(default_factory=list)
    confidence: float | None = None
    suggestions: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    tokens: int | None = None
    cost: float | None = None


class Message(BaseModel):
    """A single chat message."""

    id: str
    role: Role
    content: str
    created_at: UtcDatetime
    metadata: MessageMetadata | None = None


class ThreadMetadata(BaseModel):
    title: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: ThreadPriority = "medium"


class Thread(BaseModel):
    """An ordered sequence of messages inside a session.

    Attributes:
        id: Generated thread id.
        session_id: Owning session.
        parent_id: Parent thread id for reply chains, or ``None`` for a
            root thread.
        messages: Messages in append order.
        created_at: Creation time.
        updated_at: Advanced on every append, update or delete.
        is_collapsed: UI collapse flag.
        metadata: Tags, priority and optional title.
    """

    id: str
    session_id: str
    parent_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime
    is_collapsed: bool = False
    metadata: ThreadMetadata = Field(default_factory=ThreadMetadata)


class SessionMetadata(BaseModel):
    tags: list[str] = Field(default_factory=list)
    priority: ThreadPriority = "medium"
    category: str | None = None
    summary: str | None = None


class Session(BaseModel):
    """A conversation session owned by one user.

    ``message_count`` always equals the number of messages across the
    session's threads; the store maintains it under the session lock.
    """

    id: str
    user_id: str
    title: str = "New Chat"
    created_at: UtcDatetime
    updated_at: UtcDatetime
    last_message_at: UtcDatetime
    message_count: int = 0
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


class SessionExport(BaseModel):
    """A session with its threads and messages, ready for JSON transport.

    ``messages`` lists every message in thread order (threads oldest
    first) and duplicates the content of ``threads[*].messages``; it is
    kept for consumers that only want a flat transcript.
    """

    session: Session
    threads: list[Thread] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)


class SessionStats(BaseModel):
    total_messages: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    events_created: int = 0
    average_confidence: float = 0.0
