"""
Event Log — Pipeline & Chat Decision Trail

A queryable, append-only record of what the pipeline decided and why:
stage started / degraded / completed / failed, retries scheduled, chat turns
answered with or without context. Every entry is also mirrored to the
standard `logging` tree, so nothing is lost when the log is not queried.

The log is a port, injected into the stages, the orchestrator and the chat
service. Two implementations:

  RingBufferEventLog   — bounded in-process deque (max entries + age retention)
  AuditTrailEventLog   — append-only rows in audit_logs (SQLAlchemy)

Usage::

    await event_log.record(
        EventLevel.WARN, EventCategory.EXTRACTION, "extraction.ocr_failed",
        "OCR failed; continuing without text",
        org_id=org_id, document_id=doc_id, error=exc,
    )
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventLevel(str, Enum):
    DEBUG = "debug"
    INFO  = "info"
    WARN  = "warn"
    ERROR = "error"


_STDLIB_LEVEL = {
    EventLevel.DEBUG: logging.DEBUG,
    EventLevel.INFO:  logging.INFO,
    EventLevel.WARN:  logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}


class EventCategory(str, Enum):
    INTAKE     = "intake"
    EXTRACTION = "extraction"
    EMBEDDING  = "embedding"
    PIPELINE   = "pipeline"
    CHAT       = "chat"
    SYSTEM     = "system"


@dataclass(frozen=True)
class EventError:
    name:    str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "EventError":
        return cls(name=type(exc).__name__, message=str(exc))


@dataclass(frozen=True)
class EventEntry:
    level:       EventLevel
    category:    EventCategory
    action:      str
    message:     str
    timestamp:   datetime
    id:          UUID = field(default_factory=uuid4)
    org_id:      Optional[UUID] = None
    user_id:     Optional[UUID] = None
    document_id: Optional[UUID] = None
    job_id:      Optional[UUID] = None
    duration_ms: Optional[float] = None
    metadata:    dict[str, Any] = field(default_factory=dict)
    error:       Optional[EventError] = None


@dataclass
class EventFilters:
    level:       Optional[EventLevel]    = None
    category:    Optional[EventCategory] = None
    org_id:      Optional[UUID]          = None
    document_id: Optional[UUID]          = None
    job_id:      Optional[UUID]          = None
    since:       Optional[datetime]      = None
    until:       Optional[datetime]      = None
    limit:       int = 100
    offset:      int = 0

    def matches(self, entry: EventEntry) -> bool:
        return (
            (self.level is None or entry.level == self.level)
            and (self.category is None or entry.category == self.category)
            and (self.org_id is None or entry.org_id == self.org_id)
            and (self.document_id is None or entry.document_id == self.document_id)
            and (self.job_id is None or entry.job_id == self.job_id)
            and (self.since is None or entry.timestamp >= self.since)
            and (self.until is None or entry.timestamp <= self.until)
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class EventLog(ABC):

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    async def record(
        self,
        level:       EventLevel,
        category:    EventCategory,
        action:      str,
        message:     str,
        *,
        org_id:      Optional[UUID] = None,
        user_id:     Optional[UUID] = None,
        document_id: Optional[UUID] = None,
        job_id:      Optional[UUID] = None,
        duration_ms: Optional[float] = None,
        metadata:    Optional[dict[str, Any]] = None,
        error:       Optional[BaseException] = None,
    ) -> EventEntry:
        entry = EventEntry(
            level=level,
            category=category,
            action=action,
            message=message,
            timestamp=self._clock(),
            org_id=org_id,
            user_id=user_id,
            document_id=document_id,
            job_id=job_id,
            duration_ms=duration_ms,
            metadata=dict(metadata or {}),
            error=EventError.from_exception(error) if error is not None else None,
        )
        logger.log(
            _STDLIB_LEVEL[level],
            "%s | %s org=%s doc=%s job=%s%s",
            action, message, org_id, document_id, job_id,
            f" error={entry.error.name}: {entry.error.message}" if entry.error else "",
        )
        await self._append(entry)
        return entry

    @abstractmethod
    async def _append(self, entry: EventEntry) -> None:
        ...

    @abstractmethod
    async def query(self, filters: Optional[EventFilters] = None) -> list[EventEntry]:
        """Newest first."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop entries older than the retention window; returns how many."""


# ---------------------------------------------------------------------------
# In-process ring buffer
# ---------------------------------------------------------------------------

class RingBufferEventLog(EventLog):
    """
    Bounded deque. When full, the oldest entry is evicted on append.
    Entries older than `retention_days` are dropped by purge_expired() and
    are never returned by query().
    """

    def __init__(
        self,
        max_entries:    int = 10_000,
        retention_days: int = 30,
        clock:          Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(clock)
        self._entries: deque[EventEntry] = deque(maxlen=max_entries)
        self._retention = timedelta(days=retention_days)
        self._evicted = 0

    async def _append(self, entry: EventEntry) -> None:
        if len(self._entries) == self._entries.maxlen:
            self._evicted += 1
        self._entries.append(entry)

    async def query(self, filters: Optional[EventFilters] = None) -> list[EventEntry]:
        filters = filters or EventFilters()
        cutoff = self._clock() - self._retention
        hits = [
            e for e in reversed(self._entries)
            if e.timestamp >= cutoff and filters.matches(e)
        ]
        return hits[filters.offset : filters.offset + filters.limit]

    async def purge_expired(self) -> int:
        cutoff = self._clock() - self._retention
        before = len(self._entries)
        # Appends are time-ordered, so expired entries sit at the left end
        while self._entries and self._entries[0].timestamp < cutoff:
            self._entries.popleft()
        purged = before - len(self._entries)
        if purged:
            logger.info("Event log purge | removed=%d remaining=%d", purged, len(self._entries))
        return purged

    def stats(self) -> dict[str, Any]:
        by_level    = Counter(e.level.value for e in self._entries)
        by_category = Counter(e.category.value for e in self._entries)
        return {
            "size":        len(self._entries),
            "capacity":    self._entries.maxlen,
            "evicted":     self._evicted,
            "by_level":    dict(by_level),
            "by_category": dict(by_category),
            "oldest":      self._entries[0].timestamp if self._entries else None,
        }


# ---------------------------------------------------------------------------
# audit_logs sink
# ---------------------------------------------------------------------------

class AuditTrailEventLog(EventLog):
    """Persists entries as audit_logs rows. Write failures are logged, not raised."""

    def __init__(
        self,
        session_factory,
        retention_days: int = 30,
        clock:          Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(clock)
        self._sessions  = session_factory
        self._retention = timedelta(days=retention_days)

    async def _append(self, entry: EventEntry) -> None:
        from docintel.models.documents import AuditLog

        resource = (
            f"job:{entry.job_id}" if entry.job_id
            else f"document:{entry.document_id}" if entry.document_id
            else None
        )
        metadata = {
            **entry.metadata,
            "event_id":    str(entry.id),
            "document_id": str(entry.document_id) if entry.document_id else None,
            "job_id":      str(entry.job_id) if entry.job_id else None,
            "duration_ms": entry.duration_ms,
        }
        if entry.error:
            metadata["error"] = {"name": entry.error.name, "message": entry.error.message}

        try:
            async with self._sessions() as session, session.begin():
                session.add(AuditLog(
                    org_id=entry.org_id,
                    user_id=entry.user_id,
                    level=entry.level.value,
                    category=entry.category.value,
                    action=entry.action,
                    resource=resource,
                    message=entry.message,
                    doc_metadata=metadata,
                    success=entry.level is not EventLevel.ERROR,
                    created_at=entry.timestamp,
                ))
        except Exception as exc:
            # The audit sink must never break the operation being audited
            logger.error("Audit log write failed | action=%s error=%s", entry.action, exc)

    async def query(self, filters: Optional[EventFilters] = None) -> list[EventEntry]:
        from sqlalchemy import select

        from docintel.models.documents import AuditLog

        filters = filters or EventFilters()
        stmt = select(AuditLog).where(AuditLog.created_at >= self._clock() - self._retention)
        if filters.level is not None:
            stmt = stmt.where(AuditLog.level == filters.level.value)
        if filters.category is not None:
            stmt = stmt.where(AuditLog.category == filters.category.value)
        if filters.org_id is not None:
            stmt = stmt.where(AuditLog.org_id == filters.org_id)
        if filters.job_id is not None:
            stmt = stmt.where(AuditLog.resource == f"job:{filters.job_id}")
        if filters.since is not None:
            stmt = stmt.where(AuditLog.created_at >= filters.since)
        if filters.until is not None:
            stmt = stmt.where(AuditLog.created_at <= filters.until)
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())

        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()

        entries = [self._to_entry(r) for r in rows]
        if filters.document_id is not None:
            entries = [e for e in entries if e.document_id == filters.document_id]
        return entries[filters.offset : filters.offset + filters.limit]

    async def purge_expired(self) -> int:
        from sqlalchemy import delete

        from docintel.models.documents import AuditLog

        async with self._sessions() as session, session.begin():
            result = await session.execute(
                delete(AuditLog).where(AuditLog.created_at < self._clock() - self._retention)
            )
        return result.rowcount

    @staticmethod
    def _to_entry(row) -> EventEntry:
        meta = dict(row.doc_metadata or {})
        err  = meta.pop("error", None)
        doc  = meta.pop("document_id", None)
        job  = meta.pop("job_id", None)
        event_id = meta.pop("event_id", None)
        duration = meta.pop("duration_ms", None)
        return EventEntry(
            id=UUID(event_id) if event_id else uuid4(),
            level=EventLevel(row.level),
            category=EventCategory(row.category),
            action=row.action,
            message=row.message,
            timestamp=row.created_at,
            org_id=row.org_id,
            user_id=row.user_id,
            document_id=UUID(doc) if doc else None,
            job_id=UUID(job) if job else None,
            duration_ms=duration,
            metadata=meta,
            error=EventError(**err) if err else None,
        )
