"""
Tests for PermissionGuard evaluation, caching and access-pattern tracking.
"""

from datetime import timedelta

import pytest

from gatekeeper.auth import (
    ApiKey,
    AuthContext,
    ConditionType,
    Effect,
    Operator,
    Permission,
    PermissionCondition,
    PermissionGuard,
    PolicyCondition,
    PolicyRule,
    Role,
    User,
    matches_permission,
    require_permission,
)
from gatekeeper.auth.models import utcnow
from gatekeeper.auth.policies import system_roles
from gatekeeper.errors import PermissionDeniedError, PolicyNotFoundError
from gatekeeper.events import EventBus, PolicyChanged


def _user(*roles, user_id="u-alice", username="alice"):
    return User(user_id=user_id, username=username, email=f"{username}@example.com",
                password_hash="x", roles=list(roles))


def _role(role_id, *permissions):
    return Role(role_id=role_id, name=role_id, permissions=list(permissions))


def _perm(resource, action, *conditions, permission_id=None):
    return Permission(
        permission_id=permission_id or f"{resource}:{action}",
        name=f"{resource}:{action}",
        resource=resource,
        action=action,
        conditions=list(conditions),
    )


@pytest.fixture
def user_role():
    return {r.role_id: r for r in system_roles()}["user"]


@pytest.fixture
def admin_role():
    return {r.role_id: r for r in system_roles()}["admin"]


class TestMatching:
    """Resource/action pattern matching."""

    def test_exact(self):
        assert matches_permission("project", "read", "project", "read")
        assert not matches_permission("project", "read", "project", "write")

    def test_full_wildcard(self):
        assert matches_permission("*", "*", "anything", "delete")

    def test_resource_wildcard(self):
        assert matches_permission("*", "read", "project", "read")
        assert not matches_permission("*", "read", "project", "write")

    def test_action_wildcard(self):
        assert matches_permission("project", "*", "project", "delete")
        assert not matches_permission("project", "*", "team", "delete")

    def test_prefix_requires_exact_action(self):
        assert matches_permission("user.*", "read", "user.profile", "read")
        assert not matches_permission("user.*", "read", "user.profile", "write")
        assert not matches_permission("user.*", "read", "project", "read")


class TestScenarios:
    """End-to-end evaluation scenarios."""

    def test_alice_reads_but_cannot_delete_profile(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))

        assert guard.check_permission(context, "user.profile", "read") is True

        result = guard.evaluate_permissions(context, "user.profile", "delete")
        assert result.allowed is False
        assert result.reason == "No matching permissions found"

    def test_grant_reports_matched_permissions(self, user_role):
        guard = PermissionGuard()
        result = guard.evaluate_permissions(AuthContext(user=_user(user_role)), "user.profile", "read")

        assert result.allowed is True
        assert result.reason == "Permission granted"
        assert [p.permission_id for p in result.matched_permissions] == ["read_own"]

    def test_admin_role_allows_everything(self, admin_role):
        guard = PermissionGuard()
        assert guard.check_permission(AuthContext(user=_user(admin_role)), "billing", "delete")

    def test_self_service_policy(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))

        assert guard.check_permission(context, "user.profile", "delete", {"userId": "u-alice"}) is True
        assert guard.check_permission(context, "user.profile", "delete", {"userId": "u-bob"}) is False

    def test_no_roles_no_access(self):
        guard = PermissionGuard()
        assert guard.check_permission(AuthContext(user=_user()), "user.profile", "read") is False


class TestDenyPrecedence:
    """Deny policies are final."""

    def test_deny_beats_role_grant(self, admin_role):
        guard = PermissionGuard()
        guard.add_policy(PolicyRule(
            policy_id="freeze",
            name="Billing freeze",
            resource="billing",
            action="*",
            effect=Effect.DENY,
            priority=10,
        ))

        result = guard.evaluate_permissions(AuthContext(user=_user(admin_role)), "billing", "update")
        assert result.allowed is False
        assert result.denied_by == "freeze"
        assert result.reason == "Access denied by policy: Billing freeze"

    def test_deny_with_failing_condition_does_not_apply(self, admin_role):
        guard = PermissionGuard()
        guard.add_policy(PolicyRule(
            policy_id="office_only",
            name="Office only",
            resource="*",
            action="*",
            effect=Effect.DENY,
            conditions=[PolicyCondition(type=ConditionType.IP, field="", operator=Operator.NOT_IN,
                                        value=["10.0.0.1"])],
        ))

        inside = AuthContext(user=_user(admin_role), ip_address="10.0.0.1")
        outside = AuthContext(user=_user(admin_role), ip_address="192.0.2.5")
        assert guard.check_permission(inside, "project", "read") is True
        assert guard.check_permission(outside, "project", "read") is False

    def test_highest_priority_deny_is_reported(self, admin_role):
        guard = PermissionGuard(seed_default_policies=False)
        guard.add_policy(PolicyRule(policy_id="low", name="Low", resource="*", action="*",
                                    effect=Effect.DENY, priority=1))
        guard.add_policy(PolicyRule(policy_id="high", name="High", resource="*", action="*",
                                    effect=Effect.DENY, priority=50))

        result = guard.evaluate_permissions(AuthContext(user=_user(admin_role)), "x", "y")
        assert result.denied_by == "high"

    def test_inactive_deny_is_ignored(self, admin_role):
        guard = PermissionGuard()
        guard.add_policy(PolicyRule(policy_id="off", name="Off", resource="*", action="*",
                                    effect=Effect.DENY, is_active=False))
        assert guard.check_permission(AuthContext(user=_user(admin_role)), "x", "y") is True


class TestConditions:
    """Permission and policy conditions."""

    def test_permission_condition_on_resource_data(self):
        owner_only = _perm(
            "document", "update",
            PermissionCondition(field="owner.id", operator=Operator.EQUALS, value="${user.id}"),
        )
        guard = PermissionGuard(seed_default_policies=False)
        context = AuthContext(user=_user(_role("writer", owner_only)))

        assert guard.check_permission(context, "document", "update", {"owner": {"id": "u-alice"}}) is True
        assert guard.check_permission(context, "document", "update", {"owner": {"id": "u-bob"}}) is False
        assert guard.check_permission(context, "document", "update") is False

    def test_missing_field_compares_as_none(self):
        unlabelled = _perm(
            "document", "read",
            PermissionCondition(field="label", operator=Operator.NOT_EQUALS, value="secret"),
        )
        guard = PermissionGuard(seed_default_policies=False)
        context = AuthContext(user=_user(_role("reader", unlabelled)))

        assert guard.check_permission(context, "document", "read", {}) is True
        assert guard.check_permission(context, "document", "read", {"label": "secret"}) is False

    def test_user_condition(self):
        guard = PermissionGuard(seed_default_policies=False)
        guard.add_policy(PolicyRule(
            policy_id="staff",
            name="Staff reports",
            resource="reports",
            action="read",
            effect=Effect.ALLOW,
            conditions=[PolicyCondition(type=ConditionType.USER, field="metadata.department",
                                        operator=Operator.EQUALS, value="finance")],
        ))
        finance = _user()
        finance.metadata["department"] = "finance"

        assert guard.check_permission(AuthContext(user=finance), "reports", "read") is True
        assert guard.check_permission(AuthContext(user=_user(user_id="u2", username="eve")), "reports", "read") is False

    def test_custom_resolver(self):
        guard = PermissionGuard(seed_default_policies=False)
        guard.register_custom_resolver("tenant_tier", lambda ctx, data: ctx.user.metadata.get("tier"))
        guard.add_policy(PolicyRule(
            policy_id="premium",
            name="Premium export",
            resource="export",
            action="run",
            effect=Effect.ALLOW,
            conditions=[PolicyCondition(type=ConditionType.CUSTOM, field="tenant_tier",
                                        operator=Operator.IN, value=["gold", "platinum"])],
        ))
        user = _user()
        user.metadata["tier"] = "gold"

        assert guard.check_permission(AuthContext(user=user), "export", "run") is True

    def test_maintenance_window_policy(self, user_role, admin_role):
        guard = PermissionGuard()
        guard.register_custom_resolver("time_of_day", lambda ctx, data: 2)
        guard.update_policy("maintenance_deny", is_active=True)

        result = guard.evaluate_permissions(AuthContext(user=_user(user_role)), "user.profile", "read")
        assert result.denied_by == "maintenance_deny"
        assert guard.check_permission(AuthContext(user=_user(admin_role)), "user.profile", "read") is True

    @pytest.mark.parametrize("role_name", ["super_admin", "administrator", "admin"])
    def test_admin_role_names_bypass_maintenance(self, role_name):
        guard = PermissionGuard()
        guard.register_custom_resolver("time_of_day", lambda ctx, data: 2)
        guard.update_policy("maintenance_deny", is_active=True)
        role = Role(role_id=f"r-{role_name}", name=role_name)

        result = guard.evaluate_permissions(AuthContext(user=_user(role)), "reports", "delete")
        assert result.allowed is True
        assert result.denied_by is None


class TestApiKeyScope:
    """API key permissions."""

    def _key(self, *permissions):
        return ApiKey(api_key_id="k1", name="ci", key_hash="h", user_id="u-alice", permissions=list(permissions))

    def test_key_scope_grants(self):
        guard = PermissionGuard(seed_default_policies=False)
        context = AuthContext(user=_user(), api_key=self._key(_perm("builds", "create")))
        assert guard.check_permission(context, "builds", "create") is True

    def test_scope_mismatch_falls_through_to_roles(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role), api_key=self._key(_perm("builds", "create")))
        assert guard.check_permission(context, "user.profile", "read") is True

    def test_strict_scope_denies_mismatch(self, user_role):
        guard = PermissionGuard(strict_api_key_scope=True)
        context = AuthContext(user=_user(user_role), api_key=self._key(_perm("builds", "create")))

        result = guard.evaluate_permissions(context, "user.profile", "read")
        assert result.allowed is False
        assert result.reason == "No matching API key permissions"


class TestPolicyManagement:

    def test_default_policies_seeded(self):
        ids = {p.policy_id for p in PermissionGuard().get_policies()}
        assert ids == {"super_admin_policy", "maintenance_deny", "self_service_profile"}

    def test_missing_policy(self):
        guard = PermissionGuard()
        with pytest.raises(PolicyNotFoundError):
            guard.remove_policy("nope")
        with pytest.raises(PolicyNotFoundError):
            guard.update_policy("nope", priority=1)

    def test_update_policy_unknown_field(self):
        with pytest.raises(ValueError):
            PermissionGuard().update_policy("maintenance_deny", colour="red")

    def test_changes_are_published(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append, PolicyChanged)
        guard = PermissionGuard(events=bus)

        guard.add_policy(PolicyRule(policy_id="p", name="P", resource="*", action="*", effect=Effect.ALLOW))
        guard.update_policy("p", priority=5)
        guard.remove_policy("p")

        assert [e.event_name() for e in seen] == [
            "security.policy_added", "security.policy_updated", "security.policy_removed",
        ]


class TestCache:
    """Decision cache."""

    def test_cached_until_policy_change(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))
        assert guard.check_permission(context, "reports", "read") is False
        assert guard.cache_size() == 1

        guard.add_policy(PolicyRule(policy_id="open", name="Open reports", resource="reports",
                                    action="read", effect=Effect.ALLOW))
        assert guard.cache_size() == 0
        assert guard.check_permission(context, "reports", "read") is True

    def test_resource_data_is_part_of_key(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))
        guard.check_permission(context, "user.profile", "delete", {"userId": "u-alice"})
        guard.check_permission(context, "user.profile", "delete", {"userId": "u-bob"})
        assert guard.cache_size() == 2

    def test_ttl_zero_disables_cache(self, user_role):
        guard = PermissionGuard(cache_ttl_seconds=0)
        guard.check_permission(AuthContext(user=_user(user_role)), "user.profile", "read")
        assert guard.cache_size() == 0

    def test_policy_added_mid_evaluation_is_not_masked(self, user_role):
        guard = PermissionGuard(seed_default_policies=False)
        context = AuthContext(user=_user(user_role))
        deny_docs = PolicyRule(policy_id="deny_docs", name="No docs", resource="docs",
                               action="read", effect=Effect.DENY)

        calls = []

        def add_deny_once(_ctx, _data):
            if not calls:
                guard.add_policy(deny_docs)
            calls.append(1)
            return True

        guard.register_custom_resolver("docs_open", add_deny_once)
        guard.add_policy(PolicyRule(
            policy_id="allow_docs", name="Docs", resource="docs", action="read", effect=Effect.ALLOW,
            conditions=[PolicyCondition(type=ConditionType.CUSTOM, field="docs_open",
                                        operator=Operator.EQUALS, value=True)],
        ))

        first = guard.evaluate_permissions(context, "docs", "read")
        assert first.allowed is True
        assert guard.cache_size() == 0

        second = guard.evaluate_permissions(context, "docs", "read")
        assert second.allowed is False
        assert second.denied_by == "deny_docs"

    def test_prune_drops_expired_entries(self, user_role):
        guard = PermissionGuard()
        guard.check_permission(AuthContext(user=_user(user_role)), "user.profile", "read")

        removed = guard.prune(now=utcnow() + timedelta(minutes=10))
        assert removed["cache_entries"] == 1
        assert guard.cache_size() == 0


class TestAccessPatterns:
    """Anomaly tracking."""

    def test_frequency_counted(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))
        for _ in range(3):
            guard.check_permission(context, "user.profile", "read")

        [pattern] = guard.get_access_patterns()
        assert pattern.frequency == 3
        assert pattern.suspicious is False

    def test_burst_is_flagged_without_changing_outcome(self, user_role):
        guard = PermissionGuard()
        context = AuthContext(user=_user(user_role))
        results = {guard.check_permission(context, "user.profile", "read") for _ in range(150)}

        assert results == {True}
        [pattern] = guard.get_suspicious_patterns()
        assert pattern.frequency == 150
        assert pattern.avg_time_between_access < 1.0

    def test_idle_patterns_pruned(self, user_role):
        guard = PermissionGuard()
        guard.check_permission(AuthContext(user=_user(user_role)), "user.profile", "read")

        removed = guard.prune(now=utcnow() + timedelta(hours=25))
        assert removed["access_patterns"] == 1
        assert guard.get_access_patterns() == []


class TestRequirePermission:

    def test_raises_with_policy(self, admin_role):
        guard = PermissionGuard()
        guard.add_policy(PolicyRule(policy_id="freeze", name="Freeze", resource="*", action="delete",
                                    effect=Effect.DENY))

        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(guard, AuthContext(user=_user(admin_role)), "project", "delete")
        assert exc_info.value.denied_by == "freeze"

    def test_returns_result(self, admin_role):
        result = require_permission(PermissionGuard(), AuthContext(user=_user(admin_role)), "project", "read")
        assert result.allowed is True
