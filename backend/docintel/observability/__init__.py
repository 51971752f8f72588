"""
Observability Package — Event Log

Provides:
  EventLog            — injected port for pipeline / chat decision events
  RingBufferEventLog  — bounded in-process implementation with retention
  AuditTrailEventLog  — persistent implementation over audit_logs

Usage::

    from docintel.observability import EventCategory, EventLevel, RingBufferEventLog

    events = RingBufferEventLog(max_entries=10_000, retention_days=30)
    await events.record(EventLevel.INFO, EventCategory.PIPELINE, "job.succeeded", "done")
"""

from docintel.observability.event_log import (
    AuditTrailEventLog,
    EventCategory,
    EventEntry,
    EventFilters,
    EventLevel,
    EventLog,
    RingBufferEventLog,
)
from docintel.observability.tracing import TracingConfig, traced

__all__ = [
    "AuditTrailEventLog",
    "EventCategory",
    "EventEntry",
    "EventFilters",
    "EventLevel",
    "EventLog",
    "RingBufferEventLog",
    "TracingConfig",
    "traced",
]
