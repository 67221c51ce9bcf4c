"""
Identity manager.

Owns user, role, API key and token state. Verifies credentials, runs the
account lockout state machine, issues and rotates tokens, and delegates
authorization decisions to the PermissionGuard. Every security-relevant
outcome is published on the event bus.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..config import GatekeeperConfig
from ..errors import (
    AccountInactiveError,
    AccountLockedError,
    ApiKeyExpiredError,
    ApiKeyRateLimitedError,
    InvalidApiKeyError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    PermissionDeniedError,
    RoleNotFoundError,
    SystemRoleImmutableError,
    UserInactiveError,
    UserNotFoundError,
)
from ..events import (
    AccessDenied,
    AccessGranted,
    ApiKeyAuthenticated,
    ApiKeyAuthFailed,
    ApiKeyCreated,
    ApiKeyRevoked,
    EventBus,
    LoggedOut,
    LoginFailed,
    LoginSucceeded,
    RoleAssigned,
    RoleCreated,
    RoleDeleted,
    RoleRevoked,
    RoleUpdated,
    TokenRefreshed,
    TokenRefreshFailed,
    UserCreated,
    UserDeleted,
    UserLocked,
    UserUpdated,
)
from .encryption import DataCipher
from .jwt_handler import JWTHandler
from .models import (
    ApiKey,
    AuthContext,
    AuthToken,
    LoginAttempt,
    Permission,
    PermissionResult,
    RefreshTokenRecord,
    RequestMeta,
    Role,
    SecurityMetrics,
    User,
    utcnow,
)
from .permissions import PermissionGuard
from .policies import USER_ROLE_ID, system_roles
from .store import IdentityStore, hash_password, hash_secret, verify_password


# Fields update_user() accepts
UPDATABLE_USER_FIELDS = ("username", "email", "password", "is_active", "metadata")

# Failed logins per IP within 24h that count as suspicious activity
SUSPICIOUS_FAILED_LOGINS_PER_IP = 10


def _meta(request_meta: Optional[RequestMeta]) -> Dict[str, Optional[str]]:
    meta = request_meta or RequestMeta()
    return {
        "ip_address": meta.ip_address,
        "user_agent": meta.user_agent,
        "session_id": meta.session_id,
    }


class IdentityManager:
    """
    User authentication and identity lifecycle manager.

    Combines the identity store, JWT handling and the permission guard to
    provide:
    - Password and API key authentication with account lockout
    - Access/refresh token issuance, rotation and revocation
    - User, role and API key management
    - Authorization with audit events
    """

    def __init__(
        self,
        jwt_secret: Optional[str] = None,
        store: Optional[IdentityStore] = None,
        guard: Optional[PermissionGuard] = None,
        events: Optional[EventBus] = None,
        cipher: Optional[DataCipher] = None,
        jwt_algorithm: str = "HS256",
        access_token_expire_minutes: int = 60,
        refresh_token_expire_days: int = 7,
        bcrypt_rounds: int = 12,
        max_failed_login_attempts: int = 5,
        lockout_duration_minutes: int = 30,
        api_key_expiration_days: int = 365,
        api_key_prefix: str = "gk_",
        login_attempt_retention_days: int = 7,
    ):
        """
        Initialize manager.

        Args:
            jwt_secret: Secret for signing access tokens (random when omitted)
            store: Identity tables (a fresh store when omitted)
            guard: Permission guard used for authorization
            events: Bus receiving domain events
            cipher: Cipher behind encrypt()/decrypt()
            jwt_algorithm: JWT signing algorithm
            access_token_expire_minutes: Access token lifetime
            refresh_token_expire_days: Refresh token lifetime
            bcrypt_rounds: Password hashing cost factor
            max_failed_login_attempts: Consecutive failures that lock an account
            lockout_duration_minutes: Length of a lockout
            api_key_expiration_days: Default API key lifetime
            api_key_prefix: Prefix of generated raw API keys
            login_attempt_retention_days: Login attempts older than this are pruned
        """
        self.store = store or IdentityStore()
        self.events = events or EventBus()
        self.guard = guard or PermissionGuard(events=self.events)
        self.cipher = cipher or DataCipher()
        self.jwt = JWTHandler(
            jwt_secret or secrets.token_urlsafe(64),
            algorithm=jwt_algorithm,
            expire_minutes=access_token_expire_minutes,
        )

        self.refresh_token_lifetime = timedelta(days=refresh_token_expire_days)
        self.bcrypt_rounds = bcrypt_rounds
        self.max_failed_login_attempts = max_failed_login_attempts
        self.lockout_duration = timedelta(minutes=lockout_duration_minutes)
        self.api_key_lifetime = timedelta(days=api_key_expiration_days)
        self.api_key_prefix = api_key_prefix
        self.login_attempt_retention = timedelta(days=login_attempt_retention_days)

        for role in system_roles():
            if self.store.get_role(role.role_id) is None:
                self.store.add_role(role)

    @classmethod
    def from_config(
        cls,
        config: GatekeeperConfig,
        guard: Optional[PermissionGuard] = None,
        events: Optional[EventBus] = None,
        store: Optional[IdentityStore] = None,
    ) -> "IdentityManager":
        return cls(
            jwt_secret=config.tokens.jwt_secret,
            store=store or IdentityStore(config.maintenance.max_login_attempts_kept),
            guard=guard,
            events=events,
            jwt_algorithm=config.tokens.algorithm,
            access_token_expire_minutes=config.tokens.access_token_expire_minutes,
            refresh_token_expire_days=config.tokens.refresh_token_expire_days,
            bcrypt_rounds=config.passwords.bcrypt_rounds,
            max_failed_login_attempts=config.lockout.max_failed_login_attempts,
            lockout_duration_minutes=config.lockout.lockout_duration_minutes,
            api_key_expiration_days=config.api_keys.default_expiration_days,
            api_key_prefix=config.api_keys.key_prefix,
            login_attempt_retention_days=config.maintenance.login_attempt_retention_days,
        )

    # ========================================================================
    # Authentication
    # ========================================================================

    def authenticate(self, username: str, password: str, request_meta: Optional[RequestMeta] = None) -> AuthToken:
        """
        Authenticate with username and password.

        Args:
            username: Username
            password: Plain text password
            request_meta: Caller IP, user agent and session

        Returns:
            Fresh access/refresh token pair

        Raises:
            InvalidCredentialsError: Unknown user or wrong password
            AccountInactiveError: User is deactivated
            AccountLockedError: Lockout window still open
        """
        meta = _meta(request_meta)

        user = self.store.get_user_by_username(username)
        if user is None:
            self._login_failed(username, "invalid_credentials", meta)
            logger.warning(f"Login failed: user '{username}' not found")
            raise InvalidCredentialsError()

        if not user.is_active:
            self._login_failed(username, "account_inactive", meta, user_id=user.user_id)
            logger.warning(f"Login failed: user '{username}' is inactive")
            raise AccountInactiveError()

        if user.is_locked():
            self._login_failed(username, "account_locked", meta, user_id=user.user_id)
            logger.warning(f"Login failed: user '{username}' is locked until {user.locked_until.isoformat()}")
            raise AccountLockedError(user.locked_until)

        if not verify_password(password, user.password_hash):
            attempts, locked_until = self.store.record_failed_login(
                user.user_id, self.max_failed_login_attempts, self.lockout_duration
            )
            self._login_failed(username, "invalid_credentials", meta, user_id=user.user_id, failed_attempts=attempts)
            logger.warning(f"Login failed: invalid password for '{username}' ({attempts} consecutive)")

            if locked_until is not None:
                self.events.publish(UserLocked(
                    user_id=user.user_id,
                    username=username,
                    failed_attempts=attempts,
                    locked_until=locked_until,
                    **meta,
                ))
                logger.warning(f"Account locked: {username} until {locked_until.isoformat()}")

            raise InvalidCredentialsError()

        user = self.store.record_successful_login(user.user_id)
        token = self._issue_tokens(user)

        self.store.record_login_attempt(LoginAttempt(
            username=username,
            ip_address=meta["ip_address"] or "unknown",
            success=True,
            user_agent=meta["user_agent"],
        ))
        self.events.publish(LoginSucceeded(user_id=user.user_id, username=username, **meta))
        logger.info(f"User logged in: {username}")
        return token

    def _login_failed(
        self,
        username: str,
        reason: str,
        meta: Dict[str, Optional[str]],
        user_id: Optional[str] = None,
        failed_attempts: Optional[int] = None,
    ) -> None:
        self.store.record_login_attempt(LoginAttempt(
            username=username,
            ip_address=meta["ip_address"] or "unknown",
            success=False,
            user_agent=meta["user_agent"],
            failure_reason=reason,
        ))
        self.events.publish(LoginFailed(
            user_id=user_id,
            username=username,
            reason=reason,
            failed_attempts=failed_attempts,
            **meta,
        ))

    def authenticate_with_api_key(self, raw_key: str, request_meta: Optional[RequestMeta] = None) -> AuthContext:
        """
        Authenticate with a raw API key.

        Returns:
            AuthContext carrying the key and its own permission scope

        Raises:
            InvalidApiKeyError: Unknown or revoked key
            ApiKeyExpiredError: Key past its expiry
            UserInactiveError: Owning user deactivated or gone
            ApiKeyRateLimitedError: Key over its hourly limit
        """
        meta = _meta(request_meta)

        api_key = self.store.get_api_key_by_hash(hash_secret(raw_key))
        if api_key is None or not api_key.is_active:
            self._api_key_failed("invalid_api_key", meta, api_key)
            raise InvalidApiKeyError()

        if api_key.is_expired():
            self._api_key_failed("api_key_expired", meta, api_key)
            raise ApiKeyExpiredError()

        user = self.store.get_user_by_id(api_key.user_id)
        if user is None or not user.is_active:
            self._api_key_failed("user_inactive", meta, api_key)
            raise UserInactiveError()

        try:
            api_key = self.store.record_api_key_use(api_key.api_key_id)
        except ApiKeyRateLimitedError:
            self._api_key_failed("rate_limited", meta, api_key)
            raise

        self.events.publish(ApiKeyAuthenticated(
            user_id=user.user_id,
            api_key_id=api_key.api_key_id,
            api_key_name=api_key.name,
            **meta,
        ))
        logger.debug(f"API key authenticated: {api_key.name} ({api_key.api_key_id}) for {user.username}")

        return AuthContext(user=user, api_key=api_key, **meta)

    def _api_key_failed(self, reason: str, meta: Dict[str, Optional[str]], api_key: Optional[ApiKey]) -> None:
        logger.warning(f"API key authentication failed: {reason}")
        self.events.publish(ApiKeyAuthFailed(
            user_id=api_key.user_id if api_key else None,
            api_key_id=api_key.api_key_id if api_key else None,
            reason=reason,
            **meta,
        ))

    def refresh_auth_token(self, refresh_token: str, request_meta: Optional[RequestMeta] = None) -> AuthToken:
        """
        Exchange a refresh token for a new token pair.

        The presented token is deleted before the new pair exists, so of any
        number of concurrent callers exactly one succeeds.

        Raises:
            InvalidRefreshTokenError: Unknown, consumed or expired token, or the
                user is no longer active
        """
        meta = _meta(request_meta)

        record = self.store.consume_refresh_token(refresh_token)
        if record is None:
            self._refresh_failed("unknown_token", meta)
            raise InvalidRefreshTokenError()

        if record.expires_at <= utcnow():
            self._refresh_failed("expired", meta, record.user_id)
            raise InvalidRefreshTokenError()

        user = self.store.get_user_by_id(record.user_id)
        if user is None or not user.is_active:
            self._refresh_failed("user_inactive", meta, record.user_id)
            raise InvalidRefreshTokenError()

        token = self._issue_tokens(user)
        self.events.publish(TokenRefreshed(user_id=user.user_id, **meta))
        logger.debug(f"Token pair rotated for user {user.username}")
        return token

    def _refresh_failed(self, reason: str, meta: Dict[str, Optional[str]], user_id: Optional[str] = None) -> None:
        logger.warning(f"Token refresh failed: {reason}")
        self.events.publish(TokenRefreshFailed(user_id=user_id, reason=reason, **meta))

    def logout(
        self,
        token: str,
        refresh_token: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> bool:
        """
        Logout by revoking the access token. Best effort: never raises.

        Args:
            token: JWT access token
            refresh_token: Refresh token to discard along with it
            request_meta: Caller IP, user agent and session

        Returns:
            True if a valid access token was revoked
        """
        payload = self.jwt.verify_token(token)
        revoked = False
        if payload is not None:
            self.store.revoke_jti(payload.jti, payload.exp)
            revoked = True

        if refresh_token:
            self.store.consume_refresh_token(refresh_token)

        user_id = payload.user_id if payload else None
        self.events.publish(LoggedOut(user_id=user_id, token_revoked=revoked, **_meta(request_meta)))
        if payload is not None:
            logger.info(f"User logged out: {payload.username}")
        return revoked

    def validate_token(self, token: str, request_meta: Optional[RequestMeta] = None) -> Optional[AuthContext]:
        """
        Resolve an access token to an AuthContext.

        Returns:
            AuthContext, or None if the token is invalid, expired, revoked,
            or its user is no longer active
        """
        payload = self.jwt.verify_token(token)
        if payload is None:
            return None

        if self.store.is_jti_revoked(payload.jti):
            logger.debug(f"Rejected revoked token for {payload.username}")
            return None

        user = self.store.get_user_by_id(payload.user_id)
        if user is None or not user.is_active:
            logger.warning(f"Token presented for inactive user {payload.username}")
            return None

        return AuthContext(user=user, token=token, **_meta(request_meta))

    def _issue_tokens(self, user: User) -> AuthToken:
        roles = user.role_names
        scope = self._flatten_permissions(user.roles)

        access_token = self.jwt.create_access_token(
            user_id=user.user_id,
            username=user.username,
            roles=roles,
            permissions=scope,
        )

        refresh_token = secrets.token_urlsafe(48)
        self.store.store_refresh_token(
            refresh_token,
            RefreshTokenRecord(user_id=user.user_id, expires_at=utcnow() + self.refresh_token_lifetime),
        )

        return AuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.jwt.expires_in_seconds,
            scope=scope,
        )

    @staticmethod
    def _flatten_permissions(roles: Iterable[Role]) -> List[str]:
        seen: Dict[str, None] = {}
        for role in roles:
            for permission in role.permissions:
                seen.setdefault(permission.key, None)
        return list(seen)

    # ========================================================================
    # User Management
    # ========================================================================

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> User:
        """
        Create new user with hashed password.

        Args:
            username: Unique username
            email: Unique email
            password: Plain text password (will be hashed)
            roles: Role ids to assign (default: the "user" role)
            metadata: Free-form attributes
            created_by: Acting user id, for the audit trail
            request_meta: Caller IP, user agent and session

        Returns:
            Created User

        Raises:
            ValueError: On an empty username, email or password
            RoleNotFoundError: If a role id is unknown
            DuplicateUsernameError: If the username is taken
            DuplicateEmailError: If the email is taken
        """
        if not username or not email or not password:
            raise ValueError("username, email and password are required")

        role_objects = [self._require_role(role_id) for role_id in (roles or [USER_ROLE_ID])]

        user = User(
            user_id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=hash_password(password, self.bcrypt_rounds),
            roles=role_objects,
            metadata=dict(metadata or {}),
        )
        self.store.add_user(user)

        self.events.publish(UserCreated(
            user_id=user.user_id,
            username=username,
            roles=tuple(user.role_names),
            created_by=created_by,
            **_meta(request_meta),
        ))
        logger.info(f"User created: {username} ({user.user_id}) with roles: {user.role_names}")
        return user

    def update_user(
        self,
        user_id: str,
        updated_by: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None,
        **changes: Any,
    ) -> User:
        """
        Update user fields.

        Args:
            user_id: User to update
            updated_by: Acting user id, for the audit trail
            request_meta: Caller IP, user agent and session
            **changes: Any of username, email, password, is_active, metadata

        Raises:
            ValueError: On unknown fields
            UserNotFoundError: If the user does not exist
            DuplicateUsernameError: If the new username is taken
            DuplicateEmailError: If the new email is taken
        """
        unknown = set(changes) - set(UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")

        fields = dict(changes)
        if "password" in fields:
            fields["password_hash"] = hash_password(fields.pop("password"), self.bcrypt_rounds)
        if "metadata" in fields:
            fields["metadata"] = dict(fields["metadata"] or {})

        user = self.store.update_user(user_id, **fields)
        if "is_active" in fields:
            self.guard.clear_permission_cache()

        self.events.publish(UserUpdated(
            user_id=user_id,
            changed_fields=tuple(sorted(changes)),
            updated_by=updated_by,
            **_meta(request_meta),
        ))
        logger.info(f"User updated: {user.username} ({', '.join(sorted(changes))})")
        return user

    def delete_user(
        self,
        user_id: str,
        deleted_by: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> User:
        """
        Soft delete: deactivate the user and revoke their credentials.

        API keys are deactivated but kept for audit; outstanding refresh
        tokens are discarded.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self.store.update_user(user_id, is_active=False)
        revoked_keys = self.store.revoke_user_api_keys(user_id)
        self.store.discard_user_refresh_tokens(user_id)
        self.guard.clear_permission_cache()

        self.events.publish(UserDeleted(
            user_id=user_id,
            username=user.username,
            revoked_api_keys=len(revoked_keys),
            deleted_by=deleted_by,
            **_meta(request_meta),
        ))
        logger.info(f"User deactivated: {user.username} ({len(revoked_keys)} API keys revoked)")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user_by_id(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.store.get_user_by_username(username)

    def list_users(self, include_inactive: bool = True) -> List[User]:
        users = self.store.list_users()
        if not include_inactive:
            users = [u for u in users if u.is_active]
        return users

    # ========================================================================
    # API Keys
    # ========================================================================

    def create_api_key(
        self,
        user_id: str,
        name: str,
        permissions: Optional[List[Permission]] = None,
        expires_in_days: Optional[int] = None,
        rate_limit_per_hour: Optional[int] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> Tuple[str, ApiKey]:
        """
        Create an API key.

        Only the SHA-256 hash of the key is stored; the raw key is returned
        here and never again.

        Returns:
            (raw_key, api_key) tuple

        Raises:
            UserNotFoundError: If the owner does not exist
            UserInactiveError: If the owner is deactivated
        """
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.is_active:
            raise UserInactiveError("Cannot create API key for inactive user")

        raw_key = f"{self.api_key_prefix}{secrets.token_hex(32)}"
        lifetime = timedelta(days=expires_in_days) if expires_in_days is not None else self.api_key_lifetime

        api_key = ApiKey(
            api_key_id=str(uuid.uuid4()),
            name=name,
            key_hash=hash_secret(raw_key),
            user_id=user_id,
            permissions=list(permissions or []),
            expires_at=utcnow() + lifetime,
            rate_limit_per_hour=rate_limit_per_hour,
        )
        self.store.add_api_key(api_key)

        self.events.publish(ApiKeyCreated(
            user_id=user_id,
            api_key_id=api_key.api_key_id,
            api_key_name=name,
            expires_at=api_key.expires_at,
            **_meta(request_meta),
        ))
        logger.info(f"API key created: {name} ({api_key.api_key_id}) for {user.username}")
        return raw_key, api_key

    def revoke_api_key(
        self,
        api_key_id: str,
        revoked_by: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> ApiKey:
        """
        Deactivate an API key; the record is kept for audit.

        Raises:
            ApiKeyNotFoundError: If the key does not exist
        """
        api_key = self.store.revoke_api_key(api_key_id)
        self.guard.clear_permission_cache()

        self.events.publish(ApiKeyRevoked(
            user_id=api_key.user_id,
            api_key_id=api_key_id,
            revoked_by=revoked_by,
            **_meta(request_meta),
        ))
        logger.info(f"API key revoked: {api_key.name} ({api_key_id})")
        return api_key

    def list_api_keys(self, user_id: Optional[str] = None) -> List[ApiKey]:
        return self.store.list_api_keys(user_id)

    # ========================================================================
    # Roles
    # ========================================================================

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    def _require_mutable_role(self, role_id: str) -> Role:
        role = self._require_role(role_id)
        if role.is_system:
            raise SystemRoleImmutableError(role_id)
        return role

    def create_role(
        self,
        role_id: str,
        name: str,
        permissions: Optional[List[Permission]] = None,
        description: str = "",
    ) -> Role:
        """
        Create a custom role.

        Raises:
            DuplicateRoleError: If the role id exists
        """
        role = Role(role_id=role_id, name=name, description=description, permissions=list(permissions or []))
        self.store.add_role(role)
        self.events.publish(RoleCreated(role_id=role_id, role_name=name))
        logger.info(f"Role created: {name} ({role_id})")
        return role

    def update_role(
        self,
        role_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[List[Permission]] = None,
    ) -> Role:
        """
        Update a custom role in place; every user holding it sees the change.

        Raises:
            RoleNotFoundError: If the role does not exist
            SystemRoleImmutableError: For system roles
        """
        self._require_mutable_role(role_id)

        changes = {
            key: value for key, value in
            (("name", name), ("description", description), ("permissions", permissions))
            if value is not None
        }

        def mutate(role: Role) -> None:
            for key, value in changes.items():
                setattr(role, key, list(value) if key == "permissions" else value)

        role = self.store.update_role(role_id, mutate)
        self.guard.clear_permission_cache()

        self.events.publish(RoleUpdated(role_id=role_id, changed_fields=tuple(sorted(changes))))
        logger.info(f"Role updated: {role_id} ({', '.join(sorted(changes))})")
        return role

    def delete_role(self, role_id: str) -> Role:
        """
        Delete a custom role and strip it from every user.

        Raises:
            RoleNotFoundError: If the role does not exist
            SystemRoleImmutableError: For system roles
        """
        self._require_mutable_role(role_id)
        role = self.store.delete_role(role_id)
        self.guard.clear_permission_cache()

        self.events.publish(RoleDeleted(role_id=role_id))
        logger.info(f"Role deleted: {role_id}")
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        return self.store.get_role(role_id)

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def assign_role(self, user_id: str, role_id: str, assigned_by: Optional[str] = None) -> bool:
        """
        Assign role to user.

        Returns:
            True if assigned, False if the user already had it
        """
        assigned = self.store.assign_role(user_id, role_id)
        if assigned:
            self.guard.clear_permission_cache()
            self.events.publish(RoleAssigned(user_id=user_id, role_id=role_id, assigned_by=assigned_by))
            logger.info(f"Role {role_id} assigned to user {user_id}")
        return assigned

    def revoke_role(self, user_id: str, role_id: str, revoked_by: Optional[str] = None) -> bool:
        """
        Remove role from user.

        Returns:
            True if removed, False if the user did not have it
        """
        revoked = self.store.revoke_role(user_id, role_id)
        if revoked:
            self.guard.clear_permission_cache()
            self.events.publish(RoleRevoked(user_id=user_id, role_id=role_id, revoked_by=revoked_by))
            logger.info(f"Role {role_id} revoked from user {user_id}")
        return revoked

    # ========================================================================
    # Authorization
    # ========================================================================

    def _evaluate(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any],
    ) -> PermissionResult:
        result = self.guard.evaluate_permissions(context, resource, action, resource_data)
        self.guard.track_access(context.user.user_id, resource, action)

        envelope = {
            "user_id": context.user.user_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "session_id": context.session_id,
        }
        if result.allowed:
            self.events.publish(AccessGranted(resource=resource, action=action, **envelope))
        else:
            self.events.publish(AccessDenied(
                resource=resource,
                action=action,
                reason=result.reason,
                denied_by=result.denied_by,
                **envelope,
            ))
        return result

    def authorize(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any] = None,
    ) -> bool:
        """
        Check a permission and record the outcome on the event bus.

        Returns:
            True if allowed
        """
        return self._evaluate(context, resource, action, resource_data).allowed

    def require_permission(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any] = None,
    ) -> PermissionResult:
        """
        Require a permission, raising if not authorized.

        Raises:
            PermissionDeniedError: With the guard's reason and denying policy
        """
        result = self._evaluate(context, resource, action, resource_data)
        if not result.allowed:
            logger.warning(f"Permission denied: {context.user.username} {action} {resource}: {result.reason}")
            raise PermissionDeniedError(
                user_id=context.user.user_id,
                resource=resource,
                action=action,
                reason=result.reason,
                denied_by=result.denied_by,
            )
        return result

    def has_permission(
        self,
        user: User,
        resource: str,
        action: str,
        resource_data: Optional[Any] = None,
    ) -> bool:
        """Quiet check for a bare user (no token, key or request data)."""
        return self.guard.check_permission(AuthContext(user=user), resource, action, resource_data)

    # ========================================================================
    # Monitoring
    # ========================================================================

    def get_login_attempts(
        self,
        username: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginAttempt]:
        return self.store.get_login_attempts(username, since)

    def get_security_metrics(self) -> SecurityMetrics:
        """Point-in-time aggregate counts."""
        now = utcnow()
        users = self.store.list_users()
        api_keys = self.store.list_api_keys()
        recent = self.store.get_login_attempts(since=now - timedelta(hours=24))
        failures = [a for a in recent if not a.success]

        failures_per_ip: Dict[str, int] = {}
        for attempt in failures:
            failures_per_ip[attempt.ip_address] = failures_per_ip.get(attempt.ip_address, 0) + 1

        return SecurityMetrics(
            total_users=len(users),
            active_users=sum(1 for u in users if u.is_active),
            locked_users=sum(1 for u in users if u.is_locked(now)),
            total_api_keys=len(api_keys),
            active_api_keys=sum(1 for k in api_keys if k.is_active and not k.is_expired(now)),
            login_attempts_last_24h=len(recent),
            failed_logins_last_24h=len(failures),
            suspicious_activities=sum(
                1 for count in failures_per_ip.values() if count > SUSPICIOUS_FAILED_LOGINS_PER_IP
            ),
        )

    # ========================================================================
    # Encryption
    # ========================================================================

    def encrypt(self, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        return self.cipher.decrypt(ciphertext)

    # ========================================================================
    # Maintenance
    # ========================================================================

    def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Prune expired and stale state.

        Each table is scanned under its own lock, one at a time.

        Returns:
            Counts of removed entries per table
        """
        now = now or datetime.now(timezone.utc)

        removed = {
            "refresh_tokens": self.store.cleanup_expired_refresh_tokens(now),
            "revoked_tokens": self.store.cleanup_expired_revocations(now),
            "login_attempts": self.store.cleanup_login_attempts(now - self.login_attempt_retention),
        }
        removed.update(self.guard.prune(now))

        if any(removed.values()):
            logger.info(f"Maintenance removed: {removed}")
        return removed
