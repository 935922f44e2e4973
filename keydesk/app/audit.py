"""Structured audit events for state-changing and denied operations."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("keydesk.audit")


class AuditEvent(BaseModel):
    """Single audit record: what happened, who did it, and to what."""

    event: str
    actor: Optional[str] = None
    subject: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AuditSink(Protocol):
    """Destination for audit events."""

    def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Sink forwarding audit events to the ``keydesk.audit`` logger."""

    def record(self, event: AuditEvent) -> None:
        logger.info(
            "[AUDIT] %s actor=%s subject=%s detail=%s at=%s",
            event.event,
            event.actor,
            event.subject,
            event.detail,
            event.occurred_at.isoformat(),
        )


def emit_audit(
    sink: Optional[AuditSink],
    event: str,
    *,
    actor: Optional[str] = None,
    subject: Optional[str] = None,
    **detail: Any,
) -> None:
    """Record an audit event without ever raising into the caller."""

    if sink is None:
        return
    try:
        sink.record(AuditEvent(event=event, actor=actor, subject=subject, detail=detail))
    except Exception:
        logger.exception("Failed to record audit event %s", event)


__all__ = ["AuditEvent", "AuditSink", "LoggingAuditSink", "emit_audit"]
