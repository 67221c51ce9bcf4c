"""
Pluggable credential sources.

AuthProvider and MFAProvider are the capability interfaces external identity
providers (OAuth, LDAP, SAML, TOTP) implement. LocalAuthProvider is the
username/password implementation backed by IdentityManager.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..errors import InvalidCredentialsError
from .identity import IdentityManager
from .models import AuthContext, AuthToken, RequestMeta, User


@runtime_checkable
class AuthProvider(Protocol):
    """Credential source producing gatekeeper tokens and contexts."""

    def authenticate(self, credentials: Dict[str, Any]) -> AuthToken: ...

    def validate_token(self, token: str) -> Optional[AuthContext]: ...

    def refresh_token(self, token: str) -> AuthToken: ...

    def logout(self, token: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@runtime_checkable
class MFAProvider(Protocol):
    """Second-factor provider, consumed by transport-layer middleware."""

    def generate_secret(self, user: User) -> str: ...

    def verify_token(self, user: User, token: str) -> bool: ...

    def generate_backup_codes(self, user: User) -> List[str]: ...

    def verify_backup_code(self, user: User, code: str) -> bool: ...


class LocalAuthProvider:
    """
    Username/password provider.

    Credentials are a mapping with ``username`` and ``password`` plus the
    optional request attributes ``ip_address``, ``user_agent`` and
    ``session_id``.
    """

    def __init__(self, identity: IdentityManager):
        self.identity = identity

    def authenticate(self, credentials: Dict[str, Any]) -> AuthToken:
        """
        Raises:
            InvalidCredentialsError: If username or password is missing, or
                on any failure IdentityManager.authenticate reports
        """
        username = credentials.get("username")
        password = credentials.get("password")
        if not username or not password:
            raise InvalidCredentialsError("Username and password are required")

        meta = RequestMeta(
            ip_address=credentials.get("ip_address"),
            user_agent=credentials.get("user_agent"),
            session_id=credentials.get("session_id"),
        )
        return self.identity.authenticate(username, password, meta)

    def validate_token(self, token: str) -> Optional[AuthContext]:
        return self.identity.validate_token(token)

    def refresh_token(self, token: str) -> AuthToken:
        return self.identity.refresh_auth_token(token)

    def logout(self, token: str) -> None:
        self.identity.logout(token)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.identity.get_user(user_id)
