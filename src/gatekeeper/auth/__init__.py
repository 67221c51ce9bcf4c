"""
Authentication and authorization for gatekeeper.

Password and API key authentication with lockout, JWT access tokens with
rotating refresh tokens, RBAC plus policy-based authorization.
"""

from .models import (
    AccessPattern,
    ApiKey,
    AuthContext,
    AuthToken,
    ConditionType,
    Effect,
    LoginAttempt,
    Operator,
    Permission,
    PermissionCondition,
    PermissionResult,
    PolicyCondition,
    PolicyRule,
    RequestMeta,
    Role,
    SecurityMetrics,
    User,
)
from .store import IdentityStore
from .jwt_handler import AccessClaims, JWTHandler
from .encryption import DataCipher
from .permissions import PermissionGuard, matches_permission, require_permission
from .identity import IdentityManager
from .providers import AuthProvider, LocalAuthProvider, MFAProvider

__all__ = [
    # Models
    "AccessPattern",
    "ApiKey",
    "AuthContext",
    "AuthToken",
    "ConditionType",
    "Effect",
    "LoginAttempt",
    "Operator",
    "Permission",
    "PermissionCondition",
    "PermissionResult",
    "PolicyCondition",
    "PolicyRule",
    "RequestMeta",
    "Role",
    "SecurityMetrics",
    "User",
    # Storage and tokens
    "IdentityStore",
    "JWTHandler",
    "AccessClaims",
    "DataCipher",
    # Authorization
    "PermissionGuard",
    "matches_permission",
    "require_permission",
    # Identity
    "IdentityManager",
    "AuthProvider",
    "MFAProvider",
    "LocalAuthProvider",
]
