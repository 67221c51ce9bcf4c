"""
Identity and authorization data models.

Data classes for users, roles, permissions, API keys, tokens, request
contexts and policy rules.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Operator(str, Enum):
    """Comparison operators usable in permission and policy conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class ConditionType(str, Enum):
    """Where a policy condition reads its value from."""
    USER = "user"
    ROLE = "role"
    TIME = "time"
    IP = "ip"
    RESOURCE = "resource"
    CUSTOM = "custom"


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


WILDCARD = "*"


@dataclass
class PermissionCondition:
    """
    Predicate on caller-supplied resource data.

    Attributes:
        field: Dotted path into the resource data (e.g. "owner.id")
        operator: Comparison operator
        value: Expected value
    """
    field: str
    operator: Operator
    value: Any

    def __post_init__(self):
        self.operator = Operator(self.operator)


@dataclass
class Permission:
    """
    (resource, action) grant.

    Attributes:
        permission_id: Unique permission identifier
        name: Permission name (e.g., "user:read")
        resource: Resource identifier; "*" or a "prefix*" pattern allowed
        action: Action name or "*"
        conditions: Conditions that must all hold against resource data
        description: Human-readable description
    """
    permission_id: str
    name: str
    resource: str
    action: str
    conditions: List[PermissionCondition] = field(default_factory=list)
    description: str = ""

    @property
    def key(self) -> str:
        """Flattened "resource:action" form carried in access tokens."""
        return f"{self.resource}:{self.action}"


@dataclass
class Role:
    """
    Named bundle of permissions.

    Attributes:
        role_id: Unique role identifier (e.g., "admin", "user")
        name: Role name used by role conditions
        description: Human-readable description
        permissions: Granted permissions
        is_system: System roles are immutable seed data
        created_at: Creation timestamp
    """
    role_id: str
    name: str
    description: str = ""
    permissions: List[Permission] = field(default_factory=list)
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    """
    User account.

    Attributes:
        user_id: Unique user identifier
        username: Unique username
        email: Unique email address
        password_hash: Bcrypt hashed password
        roles: Roles held by reference from the role registry
        is_active: False once the user is deactivated
        failed_login_attempts: Consecutive failed logins since the last success
        locked_until: End of the current lockout window, if any
        last_login: Last successful login
        created_at: Account creation timestamp
        updated_at: Last modification timestamp
        metadata: Free-form attributes
    """
    user_id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    roles: List[Role] = field(default_factory=list)
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    @property
    def id(self) -> str:
        # Lets policy conditions use "${user.id}"
        return self.user_id


@dataclass
class ApiKey:
    """
    Long-lived credential. Only the SHA-256 hash of the raw key is stored.

    Attributes:
        api_key_id: Unique key identifier
        name: Display name
        key_hash: Hex SHA-256 of the raw key
        user_id: Owning user
        permissions: Scope of the key, independent of the owner's roles
        is_active: False once revoked
        expires_at: Expiry timestamp
        last_used: Last successful authentication
        usage_count: Successful authentications so far
        rate_limit_per_hour: Optional cap on authentications per sliding hour
        created_at: Creation timestamp
    """
    api_key_id: str
    name: str
    key_hash: str = field(repr=False)
    user_id: str
    permissions: List[Permission] = field(default_factory=list)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    usage_count: int = 0
    rate_limit_per_hour: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or utcnow())


@dataclass
class AuthToken:
    """
    Token pair returned by authentication and refresh.

    Attributes:
        access_token: Signed JWT
        refresh_token: Opaque single-use refresh token
        expires_in: Access token lifetime in seconds
        token_type: Always "Bearer"
        scope: Flattened permission strings granted by the access token
    """
    access_token: str
    refresh_token: str = field(repr=False)
    expires_in: int
    token_type: str = "Bearer"
    scope: List[str] = field(default_factory=list)


@dataclass
class RequestMeta:
    """Caller-supplied request attributes (all optional)."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class AuthContext:
    """
    Per-request identity. The sole input to authorization; never persisted.

    Attributes:
        user: Resolved user
        token: Access token the request was authenticated with
        api_key: API key the request was authenticated with
        session_id: Caller session id
        ip_address: Client IP address
        user_agent: Client user agent
        timestamp: When the context was assembled
    """
    user: User
    token: Optional[str] = field(default=None, repr=False)
    api_key: Optional[ApiKey] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Server-side state of an issued refresh token (keyed by its hash)."""
    user_id: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    """One password authentication attempt, kept for anomaly queries."""
    username: str
    ip_address: str
    success: bool
    timestamp: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class SecurityMetrics:
    """Point-in-time aggregate counts. Never used for decisions."""
    total_users: int
    active_users: int
    locked_users: int
    total_api_keys: int
    active_api_keys: int
    login_attempts_last_24h: int
    failed_logins_last_24h: int
    suspicious_activities: int


# ============================================================================
# Policy models
# ============================================================================

@dataclass
class PolicyCondition:
    """
    Typed predicate evaluated against the AuthContext or resource data.

    Attributes:
        type: Value source (user, role, time, ip, resource, custom)
        field: Dotted path or custom field name
        operator: Comparison operator
        value: Expected value; "${user.<path>}" placeholders are substituted
        description: Human-readable description
    """
    type: ConditionType
    field: str
    operator: Operator
    value: Any
    description: str = ""

    def __post_init__(self):
        self.type = ConditionType(self.type)
        self.operator = Operator(self.operator)


@dataclass
class PolicyRule:
    """
    Declarative allow/deny rule independent of role membership.

    Attributes:
        policy_id: Unique policy identifier
        name: Policy name (shown in denial reasons)
        resource: Resource pattern
        action: Action or "*"
        effect: allow or deny
        conditions: Conditions that must all hold
        priority: Higher evaluates first
        is_active: Inactive policies are ignored
        description: Human-readable description
    """
    policy_id: str
    name: str
    resource: str
    action: str
    effect: Effect
    conditions: List[PolicyCondition] = field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    description: str = ""

    def __post_init__(self):
        self.effect = Effect(self.effect)

    def as_permission(self) -> Permission:
        """Represent a matching allow policy in PermissionResult.matched_permissions."""
        return Permission(
            permission_id=self.policy_id,
            name=self.name,
            resource=self.resource,
            action=self.action,
            description=self.description,
        )


@dataclass
class AccessPattern:
    """
    Rolling access statistics for one (user, resource, action).

    Attributes:
        user_id: Accessing user
        resource: Requested resource
        action: Requested action
        frequency: Number of checks seen
        last_access: Time of the latest check
        avg_time_between_access: Smoothed interval between checks, in seconds
        suspicious: frequency > 100 with a sub-second average interval
    """
    user_id: str
    resource: str
    action: str
    frequency: int
    last_access: datetime
    avg_time_between_access: float = 0.0
    suspicious: bool = False


@dataclass
class PermissionResult:
    """Verbose authorization outcome."""
    allowed: bool
    reason: str
    matched_permissions: List[Permission] = field(default_factory=list)
    denied_by: Optional[str] = None
