"""
Typed domain events and an in-process event bus.

Services publish one frozen event per security-relevant occurrence; listeners
(the audit bridge first among them) subscribe to the bus and are invoked
synchronously on the publishing thread.
"""

import re
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type

from loguru import logger


_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


def _camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


@dataclass(frozen=True, kw_only=True)
class SecurityEvent:
    """
    Base class for domain events.

    Class attributes:
        name: Audit event name (e.g. "auth.login")
        category: Audit category; None lets the audit logger infer it
        severity: Audit severity; None lets the audit logger infer it
        success: Whether the event records a successful operation
    """
    name: ClassVar[str] = "system.event"
    category: ClassVar[Optional[str]] = None
    severity: ClassVar[Optional[str]] = None
    success: ClassVar[bool] = True

    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    _envelope: ClassVar[Tuple[str, ...]] = (
        "user_id", "ip_address", "user_agent", "session_id", "timestamp",
        "resource", "action", "error_message",
    )

    def event_name(self) -> str:
        return self.name

    def details(self) -> Dict[str, Any]:
        """Event-specific fields, camelCased, for the audit record's detail map."""
        out = {}
        for f in fields(self):
            if f.name in self._envelope:
                continue
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[_camel(f.name)] = value
        return out


# ============================================================================
# Authentication
# ============================================================================

@dataclass(frozen=True, kw_only=True)
class LoginSucceeded(SecurityEvent):
    name: ClassVar[str] = "auth.login"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "low"

    username: str


@dataclass(frozen=True, kw_only=True)
class LoginFailed(SecurityEvent):
    name: ClassVar[str] = "auth.login_failed"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "medium"
    success: ClassVar[bool] = False

    username: str
    reason: str
    failed_attempts: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class UserLocked(SecurityEvent):
    name: ClassVar[str] = "user.locked"
    category: ClassVar[Optional[str]] = "security"
    severity: ClassVar[Optional[str]] = "high"

    username: str
    failed_attempts: int
    locked_until: datetime


@dataclass(frozen=True, kw_only=True)
class ApiKeyAuthenticated(SecurityEvent):
    name: ClassVar[str] = "auth.api_key"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "low"

    api_key_id: str
    api_key_name: str


@dataclass(frozen=True, kw_only=True)
class ApiKeyAuthFailed(SecurityEvent):
    name: ClassVar[str] = "auth.api_key_failed"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "medium"
    success: ClassVar[bool] = False

    reason: str
    api_key_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TokenRefreshed(SecurityEvent):
    name: ClassVar[str] = "auth.token_refresh"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "low"


@dataclass(frozen=True, kw_only=True)
class TokenRefreshFailed(SecurityEvent):
    name: ClassVar[str] = "auth.token_refresh_failed"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "medium"
    success: ClassVar[bool] = False

    reason: str
    error_message: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class LoggedOut(SecurityEvent):
    name: ClassVar[str] = "auth.logout"
    category: ClassVar[Optional[str]] = "auth"
    severity: ClassVar[Optional[str]] = "low"

    token_revoked: bool = False


# ============================================================================
# Management
# ============================================================================

@dataclass(frozen=True, kw_only=True)
class UserCreated(SecurityEvent):
    name: ClassVar[str] = "user.created"
    category: ClassVar[Optional[str]] = "user"

    username: str
    roles: Tuple[str, ...] = ()
    created_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class UserUpdated(SecurityEvent):
    name: ClassVar[str] = "user.updated"
    category: ClassVar[Optional[str]] = "user"

    changed_fields: Tuple[str, ...]
    updated_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class UserDeleted(SecurityEvent):
    name: ClassVar[str] = "user.deleted"
    category: ClassVar[Optional[str]] = "user"
    severity: ClassVar[Optional[str]] = "medium"

    username: str
    revoked_api_keys: int = 0
    deleted_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ApiKeyCreated(SecurityEvent):
    name: ClassVar[str] = "api_key.created"
    category: ClassVar[Optional[str]] = "api"

    api_key_id: str
    api_key_name: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class ApiKeyRevoked(SecurityEvent):
    name: ClassVar[str] = "api_key.revoked"
    category: ClassVar[Optional[str]] = "api"
    severity: ClassVar[Optional[str]] = "medium"

    api_key_id: str
    revoked_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class RoleCreated(SecurityEvent):
    name: ClassVar[str] = "role.created"
    category: ClassVar[Optional[str]] = "security"

    role_id: str
    role_name: str


@dataclass(frozen=True, kw_only=True)
class RoleUpdated(SecurityEvent):
    name: ClassVar[str] = "role.updated"
    category: ClassVar[Optional[str]] = "security"

    role_id: str
    changed_fields: Tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class RoleDeleted(SecurityEvent):
    name: ClassVar[str] = "role.deleted"
    category: ClassVar[Optional[str]] = "security"
    severity: ClassVar[Optional[str]] = "medium"

    role_id: str


@dataclass(frozen=True, kw_only=True)
class RoleAssigned(SecurityEvent):
    name: ClassVar[str] = "role.assigned"
    category: ClassVar[Optional[str]] = "security"

    role_id: str
    assigned_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class RoleRevoked(SecurityEvent):
    name: ClassVar[str] = "role.revoked"
    category: ClassVar[Optional[str]] = "security"

    role_id: str
    revoked_by: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class PolicyChanged(SecurityEvent):
    """Emitted as security.policy_added / _updated / _removed."""
    category: ClassVar[Optional[str]] = "security"
    severity: ClassVar[Optional[str]] = "medium"

    policy_id: str
    change: str

    def event_name(self) -> str:
        return f"security.policy_{self.change}"


# ============================================================================
# Authorization
# ============================================================================

@dataclass(frozen=True, kw_only=True)
class AccessGranted(SecurityEvent):
    category: ClassVar[Optional[str]] = "data"
    severity: ClassVar[Optional[str]] = "low"

    resource: str
    action: str

    def event_name(self) -> str:
        return f"data.{self.action}"


@dataclass(frozen=True, kw_only=True)
class AccessDenied(SecurityEvent):
    name: ClassVar[str] = "security.access_denied"
    category: ClassVar[Optional[str]] = "security"
    severity: ClassVar[Optional[str]] = "medium"
    success: ClassVar[bool] = False

    resource: str
    action: str
    reason: str
    denied_by: Optional[str] = None


# ============================================================================
# Bus
# ============================================================================

Listener = Callable[[SecurityEvent], None]


class EventBus:
    """
    Synchronous in-process publish/subscribe.

    A listener that raises is logged and skipped; it never affects the
    publisher or the other listeners.
    """

    def __init__(self):
        self._listeners: List[Tuple[Optional[Type[SecurityEvent]], Listener]] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: Listener, event_type: Optional[Type[SecurityEvent]] = None) -> None:
        """
        Register a listener.

        Args:
            listener: Callable receiving each matching event
            event_type: Only deliver instances of this type (None for all events)
        """
        with self._lock:
            self._listeners.append((event_type, listener))

    def unsubscribe(self, listener: Listener) -> bool:
        with self._lock:
            before = len(self._listeners)
            self._listeners = [(t, fn) for t, fn in self._listeners if fn is not listener]
            return len(self._listeners) != before

    def publish(self, event: SecurityEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for event_type, listener in listeners:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Event listener failed on {event.event_name()}: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
