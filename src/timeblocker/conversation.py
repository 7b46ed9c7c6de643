"""In-process store for conversation sessions, threads and messages.

Sessions own threads; threads own an ordered list of messages and may
point at a parent thread to form reply chains.  The store keeps
``Session.message_count`` equal to the live number of messages across
the session's threads at all times.

Concurrency: a registry lock guards the id maps, and each session has
its own lock guarding its threads' message lists and counters.  When
both are needed the session lock is taken first.  Appends to different
sessions never contend on anything but the brief registry lookups.

Every read returns a deep copy, so callers can never mutate stored
state behind the store's back.  Unknown ids are not errors: lookups
return ``None`` (or an empty list) and mutations return ``None`` or
``False``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from timeblocker.models.conversation import (
    Message,
    MessageMetadata,
    Role,
    Session,
    SessionExport,
    SessionMetadata,
    SessionStats,
    Thread,
    ThreadMetadata,
)

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class ConversationStore:
    """Thread-safe store of sessions, threads and messages.

    Args:
        clock: Returns the current time; must be timezone-aware.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._session_locks: dict[str, threading.RLock] = {}
        self._threads: dict[str, Thread] = {}
        # message id -> owning thread id
        self._message_index: dict[str, str] = {}
        # messages created but not yet appended to a thread
        self._detached: dict[str, Message] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        title: str | None = None,
        metadata: SessionMetadata | None = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            id=_new_id("session"),
            user_id=user_id,
            title=title or "New Chat",
            created_at=now,
            updated_at=now,
            last_message_at=now,
            metadata=metadata or SessionMetadata(),
        )
        with self._lock:
            self._sessions[session.id] = session
            self._session_locks[session.id] = threading.RLock()
        logger.debug("Created session %s for user %s", session.id, user_id)
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def get_sessions_by_user(self, user_id: str) -> list[Session]:
        """Sessions owned by *user_id*, most recently active first."""
        with self._lock:
            sessions = [s.model_copy(deep=True) for s in self._sessions.values() if s.user_id == user_id]
        sessions.sort(key=lambda s: s.last_message_at, reverse=True)
        return sessions

    def update_session(
        self,
        session_id: str,
        title: str | None = None,
        metadata: SessionMetadata | None = None,
    ) -> Session | None:
        """Change a session's title or metadata.

        Counters and timestamps other than ``updated_at`` are owned by
        the store and cannot be set here.
        """
        lock = self._session_lock(session_id)
        if lock is None:
            return None
        with lock, self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if title is not None:
                session.title = title
            if metadata is not None:
                session.metadata = metadata.model_copy(deep=True)
            session.updated_at = self._advance(session.updated_at)
            return session.model_copy(deep=True)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and all of its threads and messages."""
        lock = self._session_lock(session_id)
        if lock is None:
            return False
        with lock, self._lock:
            if session_id not in self._sessions:
                return False
            thread_ids = [t.id for t in self._threads.values() if t.session_id == session_id]
            for thread_id in thread_ids:
                self._drop_thread(thread_id)
            del self._sessions[session_id]
            self._session_locks.pop(session_id, None)
        logger.info("Deleted session %s (%d thread(s))", session_id, len(thread_ids))
        return True

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(
        self,
        session_id: str,
        parent_id: str | None = None,
        metadata: ThreadMetadata | None = None,
    ) -> Thread | None:
        """Create a thread in *session_id*, optionally under *parent_id*.

        Returns:
            The new thread, or ``None`` if the session does not exist or
            the parent thread is unknown or belongs to another session.
        """
        lock = self._session_lock(session_id)
        if lock is None:
            return None
        with lock, self._lock:
            if session_id not in self._sessions:
                return None
            if parent_id is not None:
                parent = self._threads.get(parent_id)
                if parent is None or parent.session_id != session_id:
                    logger.warning(
                        "Cannot create thread in %s: unknown parent %s", session_id, parent_id
                    )
                    return None
            now = self._clock()
            thread = Thread(
                id=_new_id("thread"),
                session_id=session_id,
                parent_id=parent_id,
                created_at=now,
                updated_at=now,
                metadata=metadata or ThreadMetadata(),
            )
            self._threads[thread.id] = thread
            return thread.model_copy(deep=True)

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._lock:
            thread = self._threads.get(thread_id)
            return thread.model_copy(deep=True) if thread else None

    def get_threads_by_session(self, session_id: str) -> list[Thread]:
        """Threads of a session, most recently updated first."""
        threads = self._session_threads(session_id)
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return threads

    def get_child_threads(self, thread_id: str) -> list[Thread]:
        with self._lock:
            return [
                t.model_copy(deep=True) for t in self._threads.values() if t.parent_id == thread_id
            ]

    def update_thread(
        self,
        thread_id: str,
        is_collapsed: bool | None = None,
        metadata: ThreadMetadata | None = None,
    ) -> Thread | None:
        lock = self._thread_session_lock(thread_id)
        if lock is None:
            return None
        with lock, self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                return None
            if is_collapsed is not None:
                thread.is_collapsed = is_collapsed
            if metadata is not None:
                thread.metadata = metadata.model_copy(deep=True)
            thread.updated_at = self._advance(thread.updated_at)
            return thread.model_copy(deep=True)

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread and its own messages.

        Reply threads are kept and move up to the deleted thread's
        parent.  The owning session's message count drops by the number
        of messages removed.
        """
        lock = self._thread_session_lock(thread_id)
        if lock is None:
            return False
        with lock, self._lock:
            if thread_id not in self._threads:
                return False
            self._drop_thread(thread_id)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        role: Role,
        content: str,
        metadata: MessageMetadata | None = None,
    ) -> Message:
        """Create a message that is not yet part of any thread.

        The message becomes visible to session-scoped queries once it is
        passed to :meth:`add_message_to_thread`.
        """
        message = Message(
            id=_new_id("msg"),
            role=role,
            content=content,
            created_at=self._clock(),
            metadata=metadata,
        )
        with self._lock:
            self._detached[message.id] = message
        return message.model_copy(deep=True)

    def add_message_to_thread(self, thread_id: str, message: Message) -> Thread | None:
        """Append *message* to a thread.

        In one atomic step: the message is appended, the thread's
        ``updated_at`` advances, and the session's ``message_count`` and
        ``last_message_at`` are updated.

        Returns:
            A copy of the updated thread, or ``None`` if the thread does
            not exist.
        """
        lock = self._thread_session_lock(thread_id)
        if lock is None:
            return None
        with lock, self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                return None
            session = self._sessions.get(thread.session_id)

            stored = message.model_copy(deep=True)
            if stored.id in self._message_index:
                raise ValueError(f"Message {stored.id!r} is already in a thread")
            self._detached.pop(stored.id, None)

            thread.messages.append(stored)
            self._message_index[stored.id] = thread.id
            thread.updated_at = self._advance(thread.updated_at)

            if session is not None:
                session.message_count += 1
                session.last_message_at = self._advance(session.last_message_at)
                session.updated_at = self._advance(session.updated_at)
            return thread.model_copy(deep=True)

    def get_message(self, message_id: str) -> Message | None:
        with self._lock:
            found = self._find_message(message_id)
            return found.model_copy(deep=True) if found else None

    def update_message(
        self,
        message_id: str,
        content: str | None = None,
        metadata: MessageMetadata | None = None,
    ) -> Message | None:
        """Replace a message's content and/or metadata."""
        lock = self._message_session_lock(message_id)
        if lock is None:
            with self._lock:
                message = self._detached.get(message_id)
                if message is None:
                    return None
                _apply_message_update(message, content, metadata)
                return message.model_copy(deep=True)

        with lock, self._lock:
            message = self._find_message(message_id)
            if message is None:
                return None
            _apply_message_update(message, content, metadata)
            thread = self._threads[self._message_index[message_id]]
            thread.updated_at = self._advance(thread.updated_at)
            return message.model_copy(deep=True)

    def delete_message(self, message_id: str) -> bool:
        lock = self._message_session_lock(message_id)
        if lock is None:
            with self._lock:
                return self._detached.pop(message_id, None) is not None

        with lock, self._lock:
            thread_id = self._message_index.pop(message_id, None)
            if thread_id is None:
                return False
            thread = self._threads[thread_id]
            thread.messages = [m for m in thread.messages if m.id != message_id]
            thread.updated_at = self._advance(thread.updated_at)
            session = self._sessions.get(thread.session_id)
            if session is not None:
                session.message_count -= 1
                session.updated_at = self._advance(session.updated_at)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search_messages(self, query: str, session_id: str | None = None) -> list[Message]:
        """Case-insensitive search over content and parsed event titles."""
        needle = query.casefold()
        return [
            m
            for m in self._scoped_messages(session_id)
            if needle in m.content.casefold()
            or (
                m.metadata is not None
                and any(needle in e.title.casefold() for e in m.metadata.parsed_events)
            )
        ]

    def get_messages_by_date_range(
        self,
        start: datetime,
        end: datetime,
        session_id: str | None = None,
    ) -> list[Message]:
        """Messages created within ``[start, end]`` inclusive."""
        return [m for m in self._scoped_messages(session_id) if start <= m.created_at <= end]

    def get_messages_with_events(self, session_id: str | None = None) -> list[Message]:
        return [
            m
            for m in self._scoped_messages(session_id)
            if m.metadata is not None and m.metadata.parsed_events
        ]

    def get_session_stats(self, session_id: str) -> SessionStats:
        """Aggregate counters over a session's messages.

        ``average_confidence`` averages only messages that carry a
        confidence value.
        """
        messages = self._scoped_messages(session_id)
        total_tokens = 0
        total_cost = 0.0
        events_created = 0
        confidences: list[float] = []
        for message in messages:
            meta = message.metadata
            if meta is None:
                continue
            total_tokens += meta.tokens or 0
            total_cost += meta.cost or 0.0
            events_created += len(meta.parsed_events)
            if meta.confidence is not None:
                confidences.append(meta.confidence)

        return SessionStats(
            total_messages=len(messages),
            total_tokens=total_tokens,
            total_cost=total_cost,
            events_created=events_created,
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        )

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_session(self, session_id: str) -> dict[str, Any] | None:
        """Export a session as a JSON-safe dict.

        Threads are listed in creation order with their messages in
        append order; :meth:`import_session` restores exactly this.
        """
        lock = self._session_lock(session_id)
        if lock is None:
            return None
        with lock, self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            threads = [t for t in self._threads.values() if t.session_id == session_id]
            export = SessionExport(
                session=session,
                threads=threads,
                messages=[m for t in threads for m in t.messages],
            )
            return export.model_dump(mode="json")

    def import_session(self, data: dict[str, Any] | SessionExport) -> Session:
        """Load an exported session, replacing any session with the same id.

        ``message_count`` is recomputed from the imported threads.  The
        flat ``messages`` list in the export is informational and ignored.

        Raises:
            pydantic.ValidationError: If *data* is not a valid export.
            ValueError: If a thread belongs to another session or a message
                id is already stored elsewhere.
        """
        export = data if isinstance(data, SessionExport) else SessionExport.model_validate(data)
        export = export.model_copy(deep=True)
        session = export.session

        for thread in export.threads:
            if thread.session_id != session.id:
                raise ValueError(
                    f"Thread {thread.id!r} belongs to session {thread.session_id!r}, "
                    f"not {session.id!r}"
                )

        with self._lock:
            existing_lock = self._session_locks.get(session.id)
        lock = existing_lock or threading.RLock()

        with lock, self._lock:
            if session.id in self._sessions:
                for thread_id in [t.id for t in self._threads.values() if t.session_id == session.id]:
                    self._drop_thread(thread_id)

            for thread in export.threads:
                for message in thread.messages:
                    if message.id in self._message_index:
                        raise ValueError(f"Message {message.id!r} is already stored")

            session.message_count = sum(len(t.messages) for t in export.threads)
            self._sessions[session.id] = session
            self._session_locks[session.id] = lock
            for thread in export.threads:
                self._threads[thread.id] = thread
                for message in thread.messages:
                    self._message_index[message.id] = thread.id
                    self._detached.pop(message.id, None)

        logger.info(
            "Imported session %s (%d thread(s), %d message(s))",
            session.id,
            len(export.threads),
            session.message_count,
        )
        return session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_old_data(self, days_to_keep: int = 30) -> int:
        """Delete sessions idle for more than *days_to_keep* days.

        Detached messages older than the cutoff are dropped too.

        Returns:
            Number of sessions deleted.
        """
        cutoff = self._clock() - timedelta(days=days_to_keep)
        with self._lock:
            stale = [s.id for s in self._sessions.values() if s.last_message_at < cutoff]
            for message_id in [m.id for m in self._detached.values() if m.created_at < cutoff]:
                del self._detached[message_id]

        deleted = sum(1 for session_id in stale if self.delete_session(session_id))
        if deleted:
            logger.info("Cleaned up %d session(s) idle since %s", deleted, cutoff.isoformat())
        return deleted

    def clear_all_data(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._session_locks.clear()
            self._threads.clear()
            self._message_index.clear()
            self._detached.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _advance(self, previous: datetime) -> datetime:
        """Current time, nudged forward so it is strictly after *previous*."""
        now = self._clock()
        return now if now > previous else previous + _TICK

    def _session_lock(self, session_id: str) -> threading.RLock | None:
        with self._lock:
            return self._session_locks.get(session_id)

    def _thread_session_lock(self, thread_id: str) -> threading.RLock | None:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                return None
            return self._session_locks.get(thread.session_id)

    def _message_session_lock(self, message_id: str) -> threading.RLock | None:
        with self._lock:
            thread_id = self._message_index.get(message_id)
        if thread_id is None:
            return None
        return self._thread_session_lock(thread_id)

    def _find_message(self, message_id: str) -> Message | None:
        thread_id = self._message_index.get(message_id)
        if thread_id is None:
            return self._detached.get(message_id)
        for message in self._threads[thread_id].messages:
            if message.id == message_id:
                return message
        return None

    def _drop_thread(self, thread_id: str) -> None:
        """Remove one thread and its messages; caller holds both locks."""
        thread = self._threads.pop(thread_id, None)
        if thread is None:
            return
        for child in self._threads.values():
            if child.parent_id == thread_id:
                child.parent_id = thread.parent_id
        for message in thread.messages:
            self._message_index.pop(message.id, None)
        session = self._sessions.get(thread.session_id)
        if session is not None and thread.messages:
            session.message_count -= len(thread.messages)
            session.updated_at = self._advance(session.updated_at)

    def _session_threads(self, session_id: str) -> list[Thread]:
        with self._lock:
            return [
                t.model_copy(deep=True) for t in self._threads.values() if t.session_id == session_id
            ]

    def _scoped_messages(self, session_id: str | None) -> list[Message]:
        with self._lock:
            if session_id is None:
                threads: Iterable[Thread] = list(self._threads.values())
            else:
                threads = [t for t in self._threads.values() if t.session_id == session_id]
            return [m.model_copy(deep=True) for t in threads for m in t.messages]


def _apply_message_update(
    message: Message,
    content: str | None,
    metadata: MessageMetadata | None,
) -> None:
    if content is not None:
        message.content = content
    if metadata is not None:
        message.metadata = metadata.model_copy(deep=True)
