"""
Security error taxonomy.

Every failure that a caller is expected to handle is a subclass of
SecurityError with a stable ``code`` string. Authentication failures that
must not reveal which check failed (unknown user vs. wrong password) share
InvalidCredentialsError.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class SecurityError(Exception):
    """
    Base class for all gatekeeper errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable message
        details: Extra context (never contains secrets)
    """

    code = "SECURITY_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


# ============================================================================
# Authentication
# ============================================================================

class InvalidCredentialsError(SecurityError):
    code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class AccountInactiveError(SecurityError):
    code = "ACCOUNT_INACTIVE"

    def __init__(self, message: str = "Account is inactive"):
        super().__init__(message)


class AccountLockedError(SecurityError):
    """Raised while an account's lockout window is still open."""

    code = "ACCOUNT_LOCKED"

    def __init__(self, locked_until: Optional[datetime] = None):
        super().__init__(
            "Account is temporarily locked",
            {"locked_until": locked_until.isoformat() if locked_until else None},
        )
        self.locked_until = locked_until


class InvalidApiKeyError(SecurityError):
    code = "INVALID_API_KEY"

    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message)


class ApiKeyExpiredError(SecurityError):
    code = "API_KEY_EXPIRED"

    def __init__(self, message: str = "API key expired"):
        super().__init__(message)


class ApiKeyRateLimitedError(SecurityError):
    code = "API_KEY_RATE_LIMITED"

    def __init__(self, limit: int):
        super().__init__(f"API key exceeded {limit} requests per hour", {"limit": limit})
        self.limit = limit


class UserInactiveError(SecurityError):
    code = "USER_INACTIVE"

    def __init__(self, message: str = "User associated with API key is not active"):
        super().__init__(message)


class InvalidRefreshTokenError(SecurityError):
    code = "INVALID_REFRESH_TOKEN"

    def __init__(self, message: str = "Invalid or expired refresh token"):
        super().__init__(message)


# ============================================================================
# Management
# ============================================================================

class UserNotFoundError(SecurityError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}", {"user_id": user_id})


class DuplicateUsernameError(SecurityError):
    code = "DUPLICATE_USERNAME"

    def __init__(self, username: str):
        super().__init__("Username already exists", {"username": username})


class DuplicateEmailError(SecurityError):
    code = "DUPLICATE_EMAIL"

    def __init__(self):
        super().__init__("Email already exists")


class ApiKeyNotFoundError(SecurityError):
    code = "API_KEY_NOT_FOUND"

    def __init__(self, api_key_id: str):
        super().__init__(f"API key not found: {api_key_id}", {"api_key_id": api_key_id})


class RoleNotFoundError(SecurityError):
    code = "ROLE_NOT_FOUND"

    def __init__(self, role_id: str):
        super().__init__(f"Role not found: {role_id}", {"role_id": role_id})


class DuplicateRoleError(SecurityError):
    code = "DUPLICATE_ROLE"

    def __init__(self, role_id: str):
        super().__init__(f"Role already exists: {role_id}", {"role_id": role_id})


class SystemRoleImmutableError(SecurityError):
    code = "SYSTEM_ROLE_IMMUTABLE"

    def __init__(self, role_id: str):
        super().__init__(f"System role cannot be modified: {role_id}", {"role_id": role_id})


class PolicyNotFoundError(SecurityError):
    code = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        super().__init__(f"Policy not found: {policy_id}", {"policy_id": policy_id})


# ============================================================================
# Authorization
# ============================================================================

class PermissionDeniedError(SecurityError):
    """
    Raised when a user attempts an action they don't have permission for.

    Attributes:
        user_id: The user who was denied
        resource: Requested resource
        action: Requested action
        reason: Reason string from the permission guard
        denied_by: Id of the deny policy, if a policy denied the request
    """

    code = "PERMISSION_DENIED"

    def __init__(
        self,
        user_id: str,
        resource: str,
        action: str,
        reason: str,
        denied_by: Optional[str] = None,
    ):
        self.user_id = user_id
        self.resource = resource
        self.action = action
        self.reason = reason
        self.denied_by = denied_by

        message = f"User {user_id} denied {action} on {resource}: {reason}"
        if denied_by:
            message += f" (policy: {denied_by})"

        super().__init__(message, {"denied_by": denied_by})


# ============================================================================
# Audit
# ============================================================================

class StorageUnavailableError(SecurityError):
    code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str = "Audit storage unavailable"):
        super().__init__(message)


class UnsupportedExportFormatError(SecurityError):
    code = "UNSUPPORTED_EXPORT_FORMAT"

    def __init__(self, export_format: str):
        super().__init__(f"Unsupported export format: {export_format}", {"format": export_format})


class DecryptionError(SecurityError):
    code = "DECRYPTION_FAILED"

    def __init__(self, message: str = "Ciphertext is invalid or was tampered with"):
        super().__init__(message)
