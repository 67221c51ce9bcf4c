"""
Tests for IdentityManager: authentication, lockout, tokens, API keys and
user/role management.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from gatekeeper.auth import Permission
from gatekeeper.auth.models import utcnow
from gatekeeper.auth.store import hash_secret
from gatekeeper.errors import (
    AccountInactiveError,
    AccountLockedError,
    ApiKeyExpiredError,
    ApiKeyRateLimitedError,
    DecryptionError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InvalidApiKeyError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    PermissionDeniedError,
    RoleNotFoundError,
    SystemRoleImmutableError,
    UserInactiveError,
)


def _auth_events(audit):
    return [e for e in audit.recent(1000) if e.category.value == "auth"]


class TestAuthenticate:
    """Password authentication."""

    def test_success_returns_token_pair(self, identity, alice, meta):
        token = identity.authenticate("alice", "alice-password", meta)

        assert token.token_type == "Bearer"
        assert token.expires_in == 3600
        assert token.refresh_token
        assert "user.*:read" in token.scope

        context = identity.validate_token(token.access_token)
        assert context is not None
        assert context.user.user_id == alice.user_id

    def test_success_updates_last_login(self, identity, alice):
        assert alice.last_login is None
        identity.authenticate("alice", "alice-password")
        assert identity.get_user(alice.user_id).last_login is not None

    def test_unknown_user_and_wrong_password_look_the_same(self, identity, alice):
        with pytest.raises(InvalidCredentialsError) as unknown:
            identity.authenticate("mallory", "whatever")
        with pytest.raises(InvalidCredentialsError) as wrong:
            identity.authenticate("alice", "wrong")

        assert str(unknown.value) == str(wrong.value)
        assert unknown.value.code == wrong.value.code

    def test_inactive_user(self, identity, alice):
        identity.update_user(alice.user_id, is_active=False)
        with pytest.raises(AccountInactiveError):
            identity.authenticate("alice", "alice-password")

    def test_every_attempt_is_recorded(self, identity, alice, meta):
        identity.authenticate("alice", "alice-password", meta)
        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("alice", "nope", meta)

        attempts = identity.get_login_attempts("alice")
        assert [a.success for a in attempts] == [True, False]
        assert attempts[0].ip_address == "10.0.0.1"
        assert attempts[1].failure_reason == "invalid_credentials"

    def test_one_auth_audit_event_per_call(self, identity, audit, alice, meta):
        identity.authenticate("alice", "alice-password", meta)
        assert [e.event for e in _auth_events(audit)] == ["auth.login"]

        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("alice", "bad", meta)
        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("nobody", "bad", meta)

        events = _auth_events(audit)
        assert len(events) == 3
        assert sorted(e.event for e in events) == ["auth.login", "auth.login_failed", "auth.login_failed"]

    def test_audit_never_contains_password(self, identity, audit, alice):
        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("alice", "super-secret-guess")
        exported = audit.export_logs("json")
        assert "super-secret-guess" not in exported
        assert alice.password_hash not in exported


class TestLockout:
    """Account lockout state machine."""

    def test_locks_after_max_failures(self, identity, bob):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong")

        with pytest.raises(AccountLockedError) as exc_info:
            identity.authenticate("bob", "bob-password")

        assert exc_info.value.locked_until is not None
        assert identity.get_user(bob.user_id).failed_login_attempts == 5

    def test_under_threshold_stays_active(self, identity, bob):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong")

        identity.authenticate("bob", "bob-password")
        assert identity.get_user(bob.user_id).failed_login_attempts == 0

    def test_lock_emits_security_event(self, identity, audit, bob):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong")

        locked = audit.search(event="user.locked")
        assert len(locked) == 1
        assert locked[0].category.value == "security"
        assert locked[0].severity.value == "high"
        assert locked[0].details["failedAttempts"] == 5
        # Locking does not add a second auth event
        assert len(_auth_events(audit)) == 5

    def test_lock_expires(self, identity, bob):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong")

        identity.get_user(bob.user_id).locked_until = utcnow() - timedelta(seconds=1)

        identity.authenticate("bob", "bob-password")
        user = identity.get_user(bob.user_id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None

    def test_failure_after_expiry_relocks(self, identity, bob):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong")
        identity.get_user(bob.user_id).locked_until = utcnow() - timedelta(seconds=1)

        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("bob", "wrong")
        with pytest.raises(AccountLockedError):
            identity.authenticate("bob", "bob-password")

    def test_concurrent_failures_always_lock(self, identity, audit, bob):
        def attempt(_):
            try:
                identity.authenticate("bob", "wrong")
            except (InvalidCredentialsError, AccountLockedError) as e:
                return type(e)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(attempt, range(20)))

        user = identity.get_user(bob.user_id)
        assert user.is_locked()
        assert user.failed_login_attempts >= 5
        assert len(audit.search(event="user.locked")) >= 1
        with pytest.raises(AccountLockedError):
            identity.authenticate("bob", "bob-password")


class TestTokens:
    """Refresh rotation, logout and validation."""

    def test_refresh_rotates(self, identity, alice):
        first = identity.authenticate("alice", "alice-password")
        second = identity.refresh_auth_token(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert identity.validate_token(second.access_token) is not None

        with pytest.raises(InvalidRefreshTokenError):
            identity.refresh_auth_token(first.refresh_token)

    def test_unknown_refresh_token(self, identity):
        with pytest.raises(InvalidRefreshTokenError):
            identity.refresh_auth_token("not-a-token")

    def test_expired_refresh_token(self, identity, alice):
        token = identity.authenticate("alice", "alice-password")
        identity.run_maintenance(now=utcnow() + timedelta(days=8))

        with pytest.raises(InvalidRefreshTokenError):
            identity.refresh_auth_token(token.refresh_token)

    def test_expired_refresh_token_before_cleanup(self, identity, audit, alice):
        token = identity.authenticate("alice", "alice-password")
        record = identity.store._refresh_tokens[hash_secret(token.refresh_token)]
        record.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(InvalidRefreshTokenError):
            identity.refresh_auth_token(token.refresh_token)

        failed = audit.search(event="auth.token_refresh_failed")
        assert len(failed) == 1
        assert failed[0].details["reason"] == "expired"
        assert failed[0].user_id == alice.user_id
        assert identity.store.count_refresh_tokens() == 0

    def test_concurrent_refresh_single_winner(self, identity, alice):
        token = identity.authenticate("alice", "alice-password")

        def refresh(_):
            try:
                return identity.refresh_auth_token(token.refresh_token)
            except InvalidRefreshTokenError:
                return None

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(refresh, range(32)))

        assert sum(1 for r in results if r is not None) == 1

    def test_refresh_store_holds_only_hashes(self, identity, alice):
        token = identity.authenticate("alice", "alice-password")
        stored = identity.store._refresh_tokens
        assert token.refresh_token not in stored
        assert hash_secret(token.refresh_token) in stored

    def test_logout_revokes_access_token(self, identity, alice):
        token = identity.authenticate("alice", "alice-password")
        assert identity.logout(token.access_token, token.refresh_token) is True

        assert identity.validate_token(token.access_token) is None
        with pytest.raises(InvalidRefreshTokenError):
            identity.refresh_auth_token(token.refresh_token)

    def test_logout_with_garbage_token_is_not_an_error(self, identity):
        assert identity.logout("garbage") is False

    def test_validate_token_for_deleted_user(self, identity, alice):
        token = identity.authenticate("alice", "alice-password")
        identity.delete_user(alice.user_id)
        assert identity.validate_token(token.access_token) is None


class TestApiKeys:
    """API key lifecycle."""

    def test_round_trip(self, identity, alice, meta):
        raw_key, api_key = identity.create_api_key(alice.user_id, "ci")

        assert raw_key.startswith("gk_")
        assert api_key.key_hash == hash_secret(raw_key)
        assert raw_key not in repr(api_key)

        context = identity.authenticate_with_api_key(raw_key, meta)
        assert context.user.user_id == alice.user_id
        assert context.api_key.api_key_id == api_key.api_key_id
        assert context.ip_address == "10.0.0.1"
        assert api_key.usage_count == 1
        assert api_key.last_used is not None

    def test_unknown_key(self, identity):
        with pytest.raises(InvalidApiKeyError):
            identity.authenticate_with_api_key("gk_nope")

    def test_revoked_key(self, identity, alice):
        raw_key, api_key = identity.create_api_key(alice.user_id, "ci")
        identity.revoke_api_key(api_key.api_key_id)

        with pytest.raises(InvalidApiKeyError):
            identity.authenticate_with_api_key(raw_key)
        assert identity.list_api_keys(alice.user_id)[0].is_active is False

    def test_expired_key(self, identity, alice):
        raw_key, api_key = identity.create_api_key(alice.user_id, "ci")
        api_key.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(ApiKeyExpiredError):
            identity.authenticate_with_api_key(raw_key)

    def test_inactive_owner(self, identity, alice):
        raw_key, _ = identity.create_api_key(alice.user_id, "ci")
        identity.update_user(alice.user_id, is_active=False)

        with pytest.raises(UserInactiveError):
            identity.authenticate_with_api_key(raw_key)

    def test_rate_limit(self, identity, alice):
        raw_key, _ = identity.create_api_key(alice.user_id, "ci", rate_limit_per_hour=2)
        identity.authenticate_with_api_key(raw_key)
        identity.authenticate_with_api_key(raw_key)

        with pytest.raises(ApiKeyRateLimitedError):
            identity.authenticate_with_api_key(raw_key)

    def test_key_scope_is_independent_of_roles(self, identity, alice):
        scope = [Permission(permission_id="p1", name="reports:read", resource="reports", action="read")]
        raw_key, _ = identity.create_api_key(alice.user_id, "reports", permissions=scope)
        context = identity.authenticate_with_api_key(raw_key)

        assert identity.authorize(context, "reports", "read") is True
        assert identity.has_permission(alice, "reports", "read") is False

    def test_delete_user_revokes_keys(self, identity, alice):
        raw_key, _ = identity.create_api_key(alice.user_id, "ci")
        identity.delete_user(alice.user_id)

        with pytest.raises(InvalidApiKeyError):
            identity.authenticate_with_api_key(raw_key)
        assert identity.get_user(alice.user_id).is_active is False


class TestUserManagement:
    """User CRUD."""

    def test_duplicate_username(self, identity, alice):
        with pytest.raises(DuplicateUsernameError):
            identity.create_user("alice", "other@example.com", "pw")

    def test_duplicate_email(self, identity, alice):
        with pytest.raises(DuplicateEmailError):
            identity.create_user("alice2", "ALICE@example.com", "pw")

    def test_unknown_role(self, identity):
        with pytest.raises(RoleNotFoundError):
            identity.create_user("carol", "carol@example.com", "pw", roles=["nope"])

    def test_update_password(self, identity, alice):
        identity.update_user(alice.user_id, password="new-password")

        with pytest.raises(InvalidCredentialsError):
            identity.authenticate("alice", "alice-password")
        identity.authenticate("alice", "new-password")

    def test_update_rejects_unknown_fields(self, identity, alice):
        with pytest.raises(ValueError):
            identity.update_user(alice.user_id, password_hash="x")

    def test_mutations_are_audited(self, identity, audit, alice):
        identity.update_user(alice.user_id, metadata={"team": "core"})
        identity.delete_user(alice.user_id)

        names = [e.event for e in audit.search(user_id=alice.user_id)]
        assert "user.created" in names
        assert "user.updated" in names
        assert "user.deleted" in names


class TestRoles:
    """Role registry."""

    def test_system_roles_are_immutable(self, identity):
        with pytest.raises(SystemRoleImmutableError):
            identity.update_role("admin", name="root")
        with pytest.raises(SystemRoleImmutableError):
            identity.delete_role("user")

    def test_role_update_is_seen_by_holders(self, identity, alice):
        identity.create_role("editor", "editor", [
            Permission(permission_id="e1", name="docs:read", resource="docs", action="read"),
        ])
        identity.assign_role(alice.user_id, "editor")
        assert identity.has_permission(alice, "docs", "update") is False

        identity.update_role("editor", permissions=[
            Permission(permission_id="e2", name="docs:update", resource="docs", action="update"),
        ])
        assert identity.has_permission(alice, "docs", "update") is True

    def test_assign_and_revoke(self, identity, alice):
        assert identity.assign_role(alice.user_id, "admin") is True
        assert identity.assign_role(alice.user_id, "admin") is False
        assert identity.has_permission(alice, "anything", "delete") is True

        assert identity.revoke_role(alice.user_id, "admin") is True
        assert identity.has_permission(alice, "anything", "delete") is False

    def test_delete_role_strips_users(self, identity, alice):
        identity.create_role("temp", "temp")
        identity.assign_role(alice.user_id, "temp")
        identity.delete_role("temp")

        assert "temp" not in identity.get_user(alice.user_id).role_names


class TestAuthorization:
    """Authorization through the manager."""

    def test_require_permission_raises_with_reason(self, identity, alice):
        context = identity.validate_token(identity.authenticate("alice", "alice-password").access_token)

        with pytest.raises(PermissionDeniedError) as exc_info:
            identity.require_permission(context, "billing", "delete")
        assert exc_info.value.reason == "No matching permissions found"

    def test_outcomes_are_audited(self, identity, audit, alice):
        context = identity.validate_token(identity.authenticate("alice", "alice-password").access_token)
        identity.authorize(context, "user.profile", "read")
        identity.authorize(context, "billing", "delete")

        assert len(audit.search(event="data.read")) == 1
        denied = audit.search(event="security.access_denied")
        assert len(denied) == 1
        assert denied[0].success is False
        assert denied[0].resource == "billing"


class TestMetricsAndMaintenance:

    def test_security_metrics(self, identity, alice, bob, meta):
        identity.create_api_key(alice.user_id, "ci")
        identity.authenticate("alice", "alice-password", meta)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                identity.authenticate("bob", "wrong", meta)

        metrics = identity.get_security_metrics()
        assert metrics.total_users == 2
        assert metrics.active_users == 2
        assert metrics.locked_users == 1
        assert metrics.active_api_keys == 1
        assert metrics.login_attempts_last_24h == 6
        assert metrics.failed_logins_last_24h == 5
        assert metrics.suspicious_activities == 0

    def test_suspicious_ip(self, identity, bob):
        from gatekeeper.auth import RequestMeta

        attacker = RequestMeta(ip_address="203.0.113.9")
        for _ in range(11):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                identity.authenticate("bob", "wrong", attacker)

        assert identity.get_security_metrics().suspicious_activities == 1

    def test_maintenance_prunes(self, identity, alice):
        identity.authenticate("alice", "alice-password")
        removed = identity.run_maintenance(now=utcnow() + timedelta(days=30))

        assert removed["refresh_tokens"] == 1
        assert removed["login_attempts"] == 1
        assert identity.store.count_refresh_tokens() == 0


class TestEncryption:

    def test_round_trip(self, identity):
        ciphertext = identity.encrypt("sensitive")
        assert ciphertext != "sensitive"
        assert identity.decrypt(ciphertext) == "sensitive"

    def test_tampered(self, identity):
        ciphertext = identity.encrypt("sensitive")
        tampered = ciphertext[:-4] + ("AAAA" if not ciphertext.endswith("AAAA") else "BBBB")
        with pytest.raises(DecryptionError):
            identity.decrypt(tampered)
