"""
Audit events emitted by the exchange engine.

Delivery is fire-and-forget: a failing sink is logged and counted, never
retried, and never fails the operation that produced the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from config.monitoring import ExchangeMonitoring

from .utils import normalize_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    organization_id: int | None
    user_id: int | None
    entity_type: str
    entity_id: int | None
    details: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": normalize_payload(self.details),
            "occurred_at": self.occurred_at.isoformat(),
        }


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to a dedicated logger as structured records."""

    def __init__(self, audit_logger: logging.Logger | None = None) -> None:
        self.logger = audit_logger or logging.getLogger("registry_app.audit")

    def emit(self, event: AuditEvent) -> None:
        self.logger.info("Audit event %s", event.action, extra={"audit_event": event.as_dict()})


def emit_safely(sink: AuditSink | None, event: AuditEvent) -> bool:
    """Deliver ``event`` once; report but swallow sink failures."""
    if sink is None:
        return False
    try:
        sink.emit(event)
    except Exception:
        ExchangeMonitoring.record_audit_failure(action=event.action)
        logger.warning(
            "Audit sink failed to record %s",
            event.action,
            exc_info=True,
            extra={"audit_action": event.action, "audit_entity_id": event.entity_id},
        )
        return False
    return True
