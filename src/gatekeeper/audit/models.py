"""
Audit data models.

AuditEvent is the immutable record written by the AuditLogger. Its
dictionary form uses camelCase keys, which is also the on-disk JSONL format
and the JSON export format.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(str, Enum):
    AUTH = "auth"
    USER = "user"
    API = "api"
    SYSTEM = "system"
    SECURITY = "security"
    DATA = "data"


# Export order of AuditEvent.to_dict()
EVENT_FIELDS = (
    "id", "timestamp", "event", "userId", "sessionId", "ipAddress", "userAgent",
    "resource", "action", "details", "severity", "category", "success", "errorMessage",
)


@dataclass(frozen=True)
class AuditEvent:
    """
    Append-only record of a security-relevant occurrence.

    Attributes:
        id: Unique event id
        timestamp: When the event was logged (UTC)
        event: Event name, e.g. "auth.login"
        severity: low / medium / high / critical
        category: auth / user / api / system / security / data
        success: Whether the recorded operation succeeded
        details: Arbitrary event-specific data
        user_id: Acting user
        session_id: Caller session
        ip_address: Client IP address
        user_agent: Client user agent
        resource: Resource acted upon
        action: Action performed
        error_message: Failure description
    """
    id: str
    timestamp: datetime
    event: str
    severity: Severity
    category: Category
    success: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event": self.event,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "resource": self.resource,
            "action": self.action,
            "details": self.details,
            "severity": self.severity.value,
            "category": self.category.value,
            "success": self.success,
            "errorMessage": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            id=data["id"],
            timestamp=timestamp,
            event=data["event"],
            severity=Severity(data.get("severity", "low")),
            category=Category(data.get("category", "system")),
            success=bool(data.get("success", True)),
            details=data.get("details") or {},
            user_id=data.get("userId"),
            session_id=data.get("sessionId"),
            ip_address=data.get("ipAddress"),
            user_agent=data.get("userAgent"),
            resource=data.get("resource"),
            action=data.get("action"),
            error_message=data.get("errorMessage"),
        )


@dataclass
class AuditQuery:
    """Search filter. All criteria are optional and combined with AND."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    user_id: Optional[str] = None
    event: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    success: Optional[bool] = None
    ip_address: Optional[str] = None
    limit: int = 100
    offset: int = 0

    def matches(self, event: AuditEvent) -> bool:
        if self.start_time is not None and event.timestamp < self.start_time:
            return False
        if self.end_time is not None and event.timestamp > self.end_time:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.event is not None and self.event not in event.event:
            return False
        if self.category is not None and event.category.value != _value(self.category):
            return False
        if self.severity is not None and event.severity.value != _value(self.severity):
            return False
        if self.success is not None and event.success != self.success:
            return False
        if self.ip_address is not None and event.ip_address != self.ip_address:
            return False
        return True


@dataclass
class AuditStatistics:
    """Aggregates over a set of audit events."""
    total_events: int
    events_by_category: Dict[str, int]
    events_by_severity: Dict[str, int]
    top_users: List[Tuple[str, int]]
    top_ip_addresses: List[Tuple[str, int]]
    failure_rate: float
    time_range: Tuple[datetime, datetime]


def _value(v: Any) -> str:
    return v.value if isinstance(v, Enum) else str(v)
