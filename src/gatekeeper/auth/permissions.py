"""
Permission guard: layered RBAC + policy evaluation engine.

Evaluation order for a (resource, action) request, first decisive outcome wins:

1. Active deny policies, highest priority first. A match whose conditions all
   hold is a final denial.
2. API key scope, when the context carries an API key.
3. Role permissions of the user, including their resource-data conditions.
4. Active allow policies.

The request is allowed iff step 1 did not deny and any of steps 2-4 matched.
Results are cached per (user, api key, ip, resource, action, resource data)
for a fixed TTL; any policy mutation clears the whole cache.
"""

import hashlib
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from ..config import GuardConfig
from ..errors import PermissionDeniedError, PolicyNotFoundError
from ..events import EventBus, PolicyChanged
from .conditions import compare_membership, compare_values, get_nested_value, substitute_placeholders
from .models import (
    AccessPattern,
    AuthContext,
    ConditionType,
    Effect,
    Permission,
    PermissionCondition,
    PermissionResult,
    PolicyCondition,
    PolicyRule,
    WILDCARD,
)
from .policies import default_policies


CustomResolver = Callable[[AuthContext, Optional[Any]], Any]

REASON_GRANTED = "Permission granted"
REASON_NO_MATCH = "No matching permissions found"
REASON_API_KEY_SCOPE = "No matching API key permissions"

SUSPICIOUS_FREQUENCY = 100
SUSPICIOUS_INTERVAL_SECONDS = 1.0


def matches_permission(permission_resource: str, permission_action: str, resource: str, action: str) -> bool:
    """
    Match a (resource, action) pattern against a request.

    Examples:
        >>> matches_permission("*", "*", "project", "delete")
        True
        >>> matches_permission("user.*", "read", "user.profile", "read")
        True
        >>> matches_permission("user.*", "read", "user.profile", "write")
        False
    """
    resource_ok = permission_resource == WILDCARD or permission_resource == resource
    action_ok = permission_action == WILDCARD or permission_action == action
    if resource_ok and action_ok:
        return True

    # Hierarchy: "user.*" covers "user.profile"; the action must match exactly
    if permission_resource.endswith(WILDCARD):
        prefix = permission_resource[:-1]
        if resource.startswith(prefix) and permission_action == action:
            return True

    return False


def _local_now() -> datetime:
    return datetime.now()


def _default_custom_resolvers() -> Dict[str, CustomResolver]:
    def user_age_days(context: AuthContext, _data: Any) -> int:
        return (datetime.now(timezone.utc) - context.user.created_at).days

    return {
        "time_of_day": lambda _ctx, _data: _local_now().hour,
        # 0 = Sunday
        "day_of_week": lambda _ctx, _data: _local_now().isoweekday() % 7,
        "user_age_days": user_age_days,
    }


class PermissionGuard:
    """
    Stateless evaluation logic plus a result cache and an access-pattern tracker.

    All shared tables (policies, cache, access patterns) are guarded by their
    own lock; evaluation itself runs outside any lock on snapshots.
    """

    def __init__(
        self,
        cache_ttl_seconds: float = 300,
        seed_default_policies: bool = True,
        strict_api_key_scope: bool = False,
        pattern_retention_hours: int = 24,
        events: Optional[EventBus] = None,
    ):
        """
        Initialize guard.

        Args:
            cache_ttl_seconds: Decision cache lifetime; 0 disables caching
            seed_default_policies: Install the default policy rules
            strict_api_key_scope: Deny outright when an API key's scope does not match
            pattern_retention_hours: Access patterns idle longer than this are pruned
            events: Bus receiving PolicyChanged events
        """
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self.strict_api_key_scope = strict_api_key_scope
        self.pattern_retention = timedelta(hours=pattern_retention_hours)
        self.events = events

        self._policies: Dict[str, PolicyRule] = {}
        self._policy_lock = threading.RLock()

        self._cache: Dict[Tuple, Tuple[PermissionResult, datetime]] = {}
        self._cache_lock = threading.RLock()
        self._cache_generation = 0

        self._patterns: Dict[Tuple[str, str, str], AccessPattern] = {}
        self._pattern_lock = threading.RLock()

        self._custom_resolvers = _default_custom_resolvers()

        if seed_default_policies:
            for policy in default_policies():
                self._policies[policy.policy_id] = policy

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        pattern_retention_hours: int = 24,
        events: Optional[EventBus] = None,
    ) -> "PermissionGuard":
        return cls(
            events=events,
            cache_ttl_seconds=config.cache_ttl_seconds,
            seed_default_policies=config.seed_default_policies,
            strict_api_key_scope=config.strict_api_key_scope,
            pattern_retention_hours=pattern_retention_hours,
        )

    # ========================================================================
    # Checks
    # ========================================================================

    def check_permission(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any] = None,
    ) -> bool:
        """
        Check whether the context may perform ``action`` on ``resource``.

        Also updates the access pattern for (user, resource, action); that
        bookkeeping never influences the outcome.

        Returns:
            True if allowed
        """
        result = self.evaluate_permissions(context, resource, action, resource_data)
        self.track_access(context.user.user_id, resource, action)
        return result.allowed

    def evaluate_permissions(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any] = None,
    ) -> PermissionResult:
        """
        Verbose check returning the reason and matched permissions.

        Returns:
            PermissionResult (cached for the configured TTL)
        """
        cache_key = self._cache_key(context, resource, action, resource_data)
        now = datetime.now(timezone.utc)

        with self._cache_lock:
            generation = self._cache_generation
            if self.cache_ttl > timedelta(0):
                cached = self._cache.get(cache_key)
                if cached is not None and cached[1] > now:
                    return cached[0]

        result = self._perform_check(context, resource, action, resource_data)

        if self.cache_ttl > timedelta(0):
            with self._cache_lock:
                # Skip the write if the cache was cleared while evaluating
                if self._cache_generation == generation:
                    self._cache[cache_key] = (result, now + self.cache_ttl)

        return result

    def can_read(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "read", resource_data)

    def can_write(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "write", resource_data)

    def can_create(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "create", resource_data)

    def can_update(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "update", resource_data)

    def can_delete(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "delete", resource_data)

    def can_execute(self, context: AuthContext, resource: str, resource_data: Optional[Any] = None) -> bool:
        return self.check_permission(context, resource, "execute", resource_data)

    # ========================================================================
    # Evaluation
    # ========================================================================

    def _perform_check(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any],
    ) -> PermissionResult:
        deny_policies, allow_policies = self._active_policies()

        # Step 1: deny policies are final
        for policy in deny_policies:
            if matches_permission(policy.resource, policy.action, resource, action) and \
                    self._policy_conditions_hold(policy, context, resource_data):
                logger.debug(f"Policy {policy.policy_id} denied {action} on {resource} for {context.user.username}")
                return PermissionResult(
                    allowed=False,
                    reason=f"Access denied by policy: {policy.name}",
                    denied_by=policy.policy_id,
                )

        matched: List[Permission] = []

        # Step 2: API key scope
        if context.api_key is not None:
            key_matches = self._matching_permissions(context.api_key.permissions, context, resource, action, resource_data)
            if not key_matches and self.strict_api_key_scope:
                return PermissionResult(allowed=False, reason=REASON_API_KEY_SCOPE)
            matched.extend(key_matches)

        # Step 3: role permissions
        for role in list(context.user.roles):
            matched.extend(self._matching_permissions(role.permissions, context, resource, action, resource_data))

        # Step 4: allow policies
        for policy in allow_policies:
            if matches_permission(policy.resource, policy.action, resource, action) and \
                    self._policy_conditions_hold(policy, context, resource_data):
                matched.append(policy.as_permission())

        allowed = len(matched) > 0
        return PermissionResult(
            allowed=allowed,
            reason=REASON_GRANTED if allowed else REASON_NO_MATCH,
            matched_permissions=matched,
        )

    def _matching_permissions(
        self,
        permissions: List[Permission],
        context: AuthContext,
        resource: str,
        action: str,
        resource_data: Optional[Any],
    ) -> List[Permission]:
        matched = []
        for permission in list(permissions):
            if not matches_permission(permission.resource, permission.action, resource, action):
                continue
            if all(self._permission_condition_holds(c, context, resource_data) for c in permission.conditions):
                matched.append(permission)
        return matched

    def _permission_condition_holds(
        self,
        condition: PermissionCondition,
        context: AuthContext,
        resource_data: Optional[Any],
    ) -> bool:
        actual = get_nested_value(resource_data, condition.field) if resource_data is not None else None
        expected = substitute_placeholders(condition.value, context)
        return compare_values(actual, condition.operator, expected)

    def _policy_conditions_hold(
        self,
        policy: PolicyRule,
        context: AuthContext,
        resource_data: Optional[Any],
    ) -> bool:
        return all(self._policy_condition_holds(c, context, resource_data) for c in policy.conditions)

    def _policy_condition_holds(
        self,
        condition: PolicyCondition,
        context: AuthContext,
        resource_data: Optional[Any],
    ) -> bool:
        expected = substitute_placeholders(condition.value, context)

        if condition.type is ConditionType.ROLE:
            field = condition.field or "name"
            values = [get_nested_value(role, field) for role in list(context.user.roles)]
            return compare_membership(values, condition.operator, expected)

        if condition.type is ConditionType.USER:
            actual = get_nested_value(context.user, condition.field)
        elif condition.type is ConditionType.TIME:
            actual = datetime.now(timezone.utc)
            if condition.field and condition.field != "now":
                actual = get_nested_value(actual, condition.field)
            elif isinstance(expected, str):
                expected = _parse_time(expected)
        elif condition.type is ConditionType.IP:
            actual = context.ip_address
        elif condition.type is ConditionType.RESOURCE:
            actual = get_nested_value(resource_data, condition.field) if resource_data is not None else None
        elif condition.type is ConditionType.CUSTOM:
            resolver = self._custom_resolvers.get(condition.field)
            actual = resolver(context, resource_data) if resolver is not None else None
        else:
            return False

        return compare_values(actual, condition.operator, expected)

    def register_custom_resolver(self, field: str, resolver: CustomResolver) -> None:
        """
        Register a value source for ``custom`` policy conditions.

        Args:
            field: Condition field name the resolver answers for
            resolver: Callable(context, resource_data) -> value
        """
        self._custom_resolvers[field] = resolver
        self.clear_permission_cache()

    # ========================================================================
    # Policy management
    # ========================================================================

    def _active_policies(self) -> Tuple[List[PolicyRule], List[PolicyRule]]:
        with self._policy_lock:
            active = [p for p in self._policies.values() if p.is_active]
        # sorted() is stable: equal priorities keep insertion order
        active = sorted(active, key=lambda p: p.priority, reverse=True)
        deny = [p for p in active if p.effect is Effect.DENY]
        allow = [p for p in active if p.effect is Effect.ALLOW]
        return deny, allow

    def add_policy(self, policy: PolicyRule) -> None:
        with self._policy_lock:
            self._policies[policy.policy_id] = policy
        self.clear_permission_cache()
        logger.info(f"Policy added: {policy.policy_id} ({policy.effect.value}, priority {policy.priority})")
        self._publish_change(policy.policy_id, "added")

    def remove_policy(self, policy_id: str) -> PolicyRule:
        """
        Remove a policy.

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        with self._policy_lock:
            policy = self._policies.pop(policy_id, None)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        self.clear_permission_cache()
        logger.info(f"Policy removed: {policy_id}")
        self._publish_change(policy_id, "removed")
        return policy

    def update_policy(self, policy_id: str, **updates: Any) -> PolicyRule:
        """
        Replace fields of a policy.

        Args:
            policy_id: Policy to update
            **updates: PolicyRule fields to change (policy_id cannot change)

        Returns:
            The updated policy

        Raises:
            PolicyNotFoundError: If no policy has this id
            ValueError: On unknown fields
        """
        allowed_fields = set(PolicyRule.__dataclass_fields__) - {"policy_id"}
        unknown = set(updates) - allowed_fields
        if unknown:
            raise ValueError(f"Unknown policy fields: {sorted(unknown)}")

        with self._policy_lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise PolicyNotFoundError(policy_id)
            values = {name: getattr(current, name) for name in PolicyRule.__dataclass_fields__}
            values.update(updates)
            updated = PolicyRule(**values)
            self._policies[policy_id] = updated

        self.clear_permission_cache()
        logger.info(f"Policy updated: {policy_id} ({', '.join(sorted(updates))})")
        self._publish_change(policy_id, "updated")
        return updated

    def _publish_change(self, policy_id: str, change: str) -> None:
        if self.events is not None:
            self.events.publish(PolicyChanged(policy_id=policy_id, change=change))

    def get_policy(self, policy_id: str) -> PolicyRule:
        with self._policy_lock:
            policy = self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy

    def get_policies(self) -> List[PolicyRule]:
        with self._policy_lock:
            return list(self._policies.values())

    # ========================================================================
    # Cache
    # ========================================================================

    @staticmethod
    def _hash_resource_data(resource_data: Optional[Any]) -> str:
        if resource_data is None:
            return ""
        try:
            encoded = json.dumps(resource_data, sort_keys=True, default=str)
        except TypeError:
            # Mixed-type keys cannot be sorted
            encoded = repr(resource_data)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def _cache_key(self, context: AuthContext, resource: str, action: str, resource_data: Optional[Any]) -> Tuple:
        api_key_id = context.api_key.api_key_id if context.api_key is not None else ""
        return (
            context.user.user_id,
            api_key_id,
            context.ip_address or "",
            resource,
            action,
            self._hash_resource_data(resource_data),
        )

    def clear_permission_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
            self._cache_generation += 1

    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    # ========================================================================
    # Access patterns
    # ========================================================================

    def track_access(self, user_id: str, resource: str, action: str) -> None:
        key = (user_id, resource, action)
        now = datetime.now(timezone.utc)

        with self._pattern_lock:
            existing = self._patterns.get(key)
            if existing is None:
                self._patterns[key] = AccessPattern(
                    user_id=user_id,
                    resource=resource,
                    action=action,
                    frequency=1,
                    last_access=now,
                )
                return

            elapsed = (now - existing.last_access).total_seconds()
            existing.frequency += 1
            existing.avg_time_between_access = (existing.avg_time_between_access + elapsed) / 2
            existing.last_access = now
            existing.suspicious = (
                existing.frequency > SUSPICIOUS_FREQUENCY
                and existing.avg_time_between_access < SUSPICIOUS_INTERVAL_SECONDS
            )

            if existing.suspicious:
                logger.warning(f"Suspicious access pattern: user {user_id} {action} {resource} x{existing.frequency}")

    def get_access_patterns(self) -> List[AccessPattern]:
        with self._pattern_lock:
            return list(self._patterns.values())

    def get_suspicious_patterns(self) -> List[AccessPattern]:
        with self._pattern_lock:
            return [p for p in self._patterns.values() if p.suspicious]

    # ========================================================================
    # Maintenance
    # ========================================================================

    def prune(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Drop expired cache entries and idle access patterns.

        Returns:
            Counts of removed entries per table
        """
        now = now or datetime.now(timezone.utc)

        with self._cache_lock:
            expired = [key for key, (_, expires_at) in self._cache.items() if expires_at <= now]
            for key in expired:
                del self._cache[key]

        cutoff = now - self.pattern_retention
        with self._pattern_lock:
            idle = [key for key, pattern in self._patterns.items() if pattern.last_access < cutoff]
            for key in idle:
                del self._patterns[key]

        return {"cache_entries": len(expired), "access_patterns": len(idle)}


def require_permission(
    guard: PermissionGuard,
    context: AuthContext,
    resource: str,
    action: str,
    resource_data: Optional[Any] = None,
) -> PermissionResult:
    """
    Require a permission, raising PermissionDeniedError if not authorized.

    Raises:
        PermissionDeniedError: If the guard denies the request
    """
    result = guard.evaluate_permissions(context, resource, action, resource_data)
    guard.track_access(context.user.user_id, resource, action)
    if not result.allowed:
        raise PermissionDeniedError(
            user_id=context.user.user_id,
            resource=resource,
            action=action,
            reason=result.reason,
            denied_by=result.denied_by,
        )
    return result


def _parse_time(value: str) -> Any:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
