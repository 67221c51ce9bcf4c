"""Bridge from the domain event bus to the audit logger."""

from typing import Optional

from ..events import EventBus, SecurityEvent
from .logger import AuditLogger
from .models import AuditEvent


class AuditEventListener:
    """
    Translates every domain event into exactly one audit record.

    Usage:
        listener = AuditEventListener(audit_logger)
        listener.attach(bus)
    """

    def __init__(self, audit_logger: AuditLogger):
        self.audit_logger = audit_logger

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self)

    def detach(self, bus: EventBus) -> None:
        bus.unsubscribe(self)

    def __call__(self, event: SecurityEvent) -> Optional[AuditEvent]:
        return self.audit_logger.log(
            event.event_name(),
            event.details(),
            user_id=event.user_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            resource=getattr(event, "resource", None),
            action=getattr(event, "action", None),
            severity=event.severity,
            category=event.category,
            success=event.success,
            error_message=getattr(event, "error_message", None),
        )
