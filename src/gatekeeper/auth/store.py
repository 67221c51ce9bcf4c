"""
In-memory identity tables.

Thread-safe store for users, roles, API keys, refresh tokens, revoked access
tokens and login attempts. Every table has its own RLock so that unrelated
reads never serialize on each other. Password hashing lives here as well.
"""

import hashlib
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

import bcrypt
from loguru import logger

from ..errors import (
    ApiKeyNotFoundError,
    ApiKeyRateLimitedError,
    DuplicateEmailError,
    DuplicateRoleError,
    DuplicateUsernameError,
    RoleNotFoundError,
    UserNotFoundError,
)
from .models import ApiKey, LoginAttempt, RefreshTokenRecord, Role, User, utcnow


RATE_LIMIT_WINDOW = timedelta(hours=1)


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against a bcrypt hash.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def hash_secret(raw: str) -> str:
    """One-way hash for API keys and refresh tokens (hex SHA-256)."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdentityStore:
    """
    Thread-safe identity tables.

    Records are handed out by reference; callers that mutate a record go
    through one of the store's methods so the change happens under the
    owning table's lock.
    """

    def __init__(self, max_login_attempts_kept: int = 1000):
        """
        Initialize store.

        Args:
            max_login_attempts_kept: Capacity of the login attempt ring
        """
        self._users: Dict[str, User] = {}
        self._username_index: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        self._users_lock = threading.RLock()

        self._roles: Dict[str, Role] = {}
        # Taken before _users_lock when both are needed
        self._roles_lock = threading.RLock()

        self._api_keys: Dict[str, ApiKey] = {}
        self._api_key_hash_index: Dict[str, str] = {}
        self._api_key_usage: Dict[str, Deque[datetime]] = {}
        self._api_keys_lock = threading.RLock()

        self._refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._refresh_lock = threading.RLock()

        self._revoked_jtis: Dict[str, datetime] = {}
        self._revoked_lock = threading.RLock()

        self._login_attempts: Deque[LoginAttempt] = deque(maxlen=max_login_attempts_kept)
        self._attempts_lock = threading.RLock()

    # ========================================================================
    # User Operations
    # ========================================================================

    def add_user(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            DuplicateUsernameError: If the username is taken
            DuplicateEmailError: If the email is taken
        """
        with self._users_lock:
            if user.username in self._username_index:
                raise DuplicateUsernameError(user.username)
            if user.email.lower() in self._email_index:
                raise DuplicateEmailError()

            self._users[user.user_id] = user
            self._username_index[user.username] = user.user_id
            self._email_index[user.email.lower()] = user.user_id

        logger.debug(f"User stored: {user.username} ({user.user_id})")
        return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._users_lock:
            return self._users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._users_lock:
            user_id = self._username_index.get(username)
            return self._users.get(user_id) if user_id else None

    def list_users(self) -> List[User]:
        with self._users_lock:
            return sorted(self._users.values(), key=lambda u: u.username)

    def update_user(self, user_id: str, **fields) -> User:
        """
        Update user fields, keeping the username/email indexes consistent.

        Raises:
            UserNotFoundError: If the user does not exist
            DuplicateUsernameError: If the new username is taken
            DuplicateEmailError: If the new email is taken
        """
        with self._users_lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            username = fields.get("username")
            if username is not None and username != user.username:
                if username in self._username_index:
                    raise DuplicateUsernameError(username)
                del self._username_index[user.username]
                self._username_index[username] = user_id

            email = fields.get("email")
            if email is not None and email.lower() != user.email.lower():
                if email.lower() in self._email_index:
                    raise DuplicateEmailError()
                del self._email_index[user.email.lower()]
                self._email_index[email.lower()] = user_id

            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return user

    def record_failed_login(
        self,
        user_id: str,
        max_attempts: int,
        lockout_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Tuple[int, Optional[datetime]]:
        """
        Increment the failure counter and lock the account at the threshold.

        The increment and the threshold test are one critical section, so
        concurrent failures cannot both skip locking.

        Returns:
            (failed_login_attempts, locked_until) where locked_until is set
            only if this call locked the account
        """
        now = now or utcnow()
        with self._users_lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            user.failed_login_attempts += 1
            user.updated_at = now
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = now + lockout_duration
                return user.failed_login_attempts, user.locked_until
            return user.failed_login_attempts, None

    def record_successful_login(self, user_id: str, now: Optional[datetime] = None) -> User:
        now = now or utcnow()
        with self._users_lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login = now
            user.updated_at = now
            return user

    # ========================================================================
    # Role Operations
    # ========================================================================

    def add_role(self, role: Role) -> Role:
        with self._roles_lock:
            if role.role_id in self._roles:
                raise DuplicateRoleError(role.role_id)
            self._roles[role.role_id] = role
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._roles_lock:
            return self._roles.get(role_id)

    def list_roles(self) -> List[Role]:
        with self._roles_lock:
            return list(self._roles.values())

    def update_role(self, role_id: str, mutate: Callable[[Role], None]) -> Role:
        """
        Mutate a role in place so that every user holding it sees the change.

        Raises:
            RoleNotFoundError: If the role does not exist
        """
        with self._roles_lock:
            role = self._roles.get(role_id)
            if role is None:
                raise RoleNotFoundError(role_id)
            mutate(role)
            return role

    def delete_role(self, role_id: str) -> Role:
        """
        Remove a role from the registry and from every user holding it.

        Raises:
            RoleNotFoundError: If the role does not exist
        """
        with self._roles_lock:
            role = self._roles.pop(role_id, None)
            if role is None:
                raise RoleNotFoundError(role_id)

            with self._users_lock:
                for user in self._users.values():
                    if any(r.role_id == role_id for r in user.roles):
                        user.roles = [r for r in user.roles if r.role_id != role_id]
        return role

    def assign_role(self, user_id: str, role_id: str) -> bool:
        """
        Give a user a role.

        Returns:
            True if assigned, False if the user already held it
        """
        with self._roles_lock:
            role = self._roles.get(role_id)
            if role is None:
                raise RoleNotFoundError(role_id)

            with self._users_lock:
                user = self._users.get(user_id)
                if user is None:
                    raise UserNotFoundError(user_id)
                if any(r.role_id == role_id for r in user.roles):
                    return False
                # Copy-on-write so concurrent readers iterate a stable list
                user.roles = user.roles + [role]
                user.updated_at = utcnow()
                return True

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        """
        Remove a role from a user.

        Returns:
            True if removed, False if the user did not hold it
        """
        with self._users_lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            remaining = [r for r in user.roles if r.role_id != role_id]
            if len(remaining) == len(user.roles):
                return False
            user.roles = remaining
            user.updated_at = utcnow()
            return True

    # ========================================================================
    # API Key Operations
    # ========================================================================

    def add_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._api_keys_lock:
            self._api_keys[api_key.api_key_id] = api_key
            self._api_key_hash_index[api_key.key_hash] = api_key.api_key_id
            return api_key

    def get_api_key(self, api_key_id: str) -> Optional[ApiKey]:
        with self._api_keys_lock:
            return self._api_keys.get(api_key_id)

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._api_keys_lock:
            api_key_id = self._api_key_hash_index.get(key_hash)
            return self._api_keys.get(api_key_id) if api_key_id else None

    def list_api_keys(self, user_id: Optional[str] = None) -> List[ApiKey]:
        with self._api_keys_lock:
            keys = list(self._api_keys.values())
        if user_id is not None:
            keys = [k for k in keys if k.user_id == user_id]
        return sorted(keys, key=lambda k: k.created_at)

    def revoke_api_key(self, api_key_id: str) -> ApiKey:
        """
        Deactivate an API key. The record is kept for audit.

        Raises:
            ApiKeyNotFoundError: If the key does not exist
        """
        with self._api_keys_lock:
            api_key = self._api_keys.get(api_key_id)
            if api_key is None:
                raise ApiKeyNotFoundError(api_key_id)
            api_key.is_active = False
            self._api_key_usage.pop(api_key_id, None)
            return api_key

    def revoke_user_api_keys(self, user_id: str) -> List[ApiKey]:
        """Deactivate every active key owned by a user; returns the keys revoked."""
        with self._api_keys_lock:
            revoked = [k for k in self._api_keys.values() if k.user_id == user_id and k.is_active]
            for api_key in revoked:
                api_key.is_active = False
                self._api_key_usage.pop(api_key.api_key_id, None)
            return revoked

    def record_api_key_use(self, api_key_id: str, now: Optional[datetime] = None) -> ApiKey:
        """
        Count one authentication with a key, enforcing its per-hour limit.

        Uses a sliding one-hour window of usage timestamps.

        Raises:
            ApiKeyNotFoundError: If the key does not exist
            ApiKeyRateLimitedError: If the key is over its hourly limit
        """
        now = now or utcnow()
        with self._api_keys_lock:
            api_key = self._api_keys.get(api_key_id)
            if api_key is None:
                raise ApiKeyNotFoundError(api_key_id)

            if api_key.rate_limit_per_hour is not None:
                window = self._api_key_usage.setdefault(api_key_id, deque())
                window_start = now - RATE_LIMIT_WINDOW
                while window and window[0] <= window_start:
                    window.popleft()
                if len(window) >= api_key.rate_limit_per_hour:
                    raise ApiKeyRateLimitedError(api_key.rate_limit_per_hour)
                window.append(now)

            api_key.usage_count += 1
            api_key.last_used = now
            return api_key

    # ========================================================================
    # Refresh Token Operations
    # ========================================================================

    def store_refresh_token(self, raw_token: str, record: RefreshTokenRecord) -> None:
        with self._refresh_lock:
            self._refresh_tokens[hash_secret(raw_token)] = record

    def consume_refresh_token(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """
        Remove a refresh token and return its record.

        A single pop under the lock: of many concurrent callers presenting
        the same token, exactly one gets the record.
        """
        with self._refresh_lock:
            return self._refresh_tokens.pop(hash_secret(raw_token), None)

    def discard_user_refresh_tokens(self, user_id: str) -> int:
        with self._refresh_lock:
            doomed = [h for h, rec in self._refresh_tokens.items() if rec.user_id == user_id]
            for token_hash in doomed:
                del self._refresh_tokens[token_hash]
            return len(doomed)

    def count_refresh_tokens(self) -> int:
        with self._refresh_lock:
            return len(self._refresh_tokens)

    def cleanup_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        """
        Delete expired refresh tokens.

        Returns:
            Number of tokens deleted
        """
        now = now or utcnow()
        with self._refresh_lock:
            expired = [h for h, rec in self._refresh_tokens.items() if rec.expires_at <= now]
            for token_hash in expired:
                del self._refresh_tokens[token_hash]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired refresh tokens")
        return len(expired)

    # ========================================================================
    # Access Token Revocation
    # ========================================================================

    def revoke_jti(self, jti: str, expires_at: datetime) -> None:
        with self._revoked_lock:
            self._revoked_jtis[jti] = expires_at

    def is_jti_revoked(self, jti: str) -> bool:
        with self._revoked_lock:
            return jti in self._revoked_jtis

    def cleanup_expired_revocations(self, now: Optional[datetime] = None) -> int:
        """Forget revoked token ids whose tokens have expired anyway."""
        now = now or utcnow()
        with self._revoked_lock:
            expired = [jti for jti, exp in self._revoked_jtis.items() if exp <= now]
            for jti in expired:
                del self._revoked_jtis[jti]
        return len(expired)

    # ========================================================================
    # Login Attempts
    # ========================================================================

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._attempts_lock:
            self._login_attempts.append(attempt)

    def get_login_attempts(
        self,
        username: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginAttempt]:
        with self._attempts_lock:
            attempts = list(self._login_attempts)
        if username is not None:
            attempts = [a for a in attempts if a.username == username]
        if since is not None:
            attempts = [a for a in attempts if a.timestamp >= since]
        return attempts

    def cleanup_login_attempts(self, cutoff: datetime) -> int:
        """
        Drop login attempts older than ``cutoff``.

        Returns:
            Number of attempts dropped
        """
        with self._attempts_lock:
            before = len(self._login_attempts)
            kept = [a for a in self._login_attempts if a.timestamp >= cutoff]
            self._login_attempts.clear()
            self._login_attempts.extend(kept)
            return before - len(kept)
