"""
Seed data: system roles and default policy rules.
"""

from typing import List

from .models import (
    ConditionType,
    Effect,
    Operator,
    Permission,
    PolicyCondition,
    PolicyRule,
    Role,
    WILDCARD,
)


ADMIN_ROLE_ID = "admin"
USER_ROLE_ID = "user"

# Role names that bypass the maintenance window and get the super admin grant
ADMIN_ROLE_NAMES = ["super_admin", "administrator", "admin"]


def system_roles() -> List[Role]:
    """Immutable roles every IdentityManager starts with."""
    admin = Role(
        role_id=ADMIN_ROLE_ID,
        name="admin",
        description="Full system access",
        permissions=[
            Permission(permission_id="admin_all", name="*:*", resource=WILDCARD, action=WILDCARD),
        ],
        is_system=True,
    )
    user = Role(
        role_id=USER_ROLE_ID,
        name="user",
        description="Basic user access",
        permissions=[
            Permission(permission_id="read_own", name="user:read", resource="user.*", action="read"),
            Permission(permission_id="update_own", name="user:update", resource="user.*", action="update"),
        ],
        is_system=True,
    )
    return [admin, user]


def default_policies() -> List[PolicyRule]:
    """Policy rules installed when ``guard.seed_default_policies`` is on."""
    return [
        PolicyRule(
            policy_id="super_admin_policy",
            name="Super Admin Access",
            description="Full system access for super administrators",
            resource=WILDCARD,
            action=WILDCARD,
            effect=Effect.ALLOW,
            conditions=[
                PolicyCondition(
                    type=ConditionType.ROLE,
                    field="name",
                    operator=Operator.IN,
                    value=list(ADMIN_ROLE_NAMES),
                    description="Must have super admin or admin role",
                ),
            ],
            priority=1000,
        ),
        # Seeded inactive; operators switch it on with update_policy()
        PolicyRule(
            policy_id="maintenance_deny",
            name="Maintenance Window Restriction",
            description="Deny access during maintenance hours (2-4 AM)",
            resource=WILDCARD,
            action=WILDCARD,
            effect=Effect.DENY,
            conditions=[
                PolicyCondition(
                    type=ConditionType.CUSTOM,
                    field="time_of_day",
                    operator=Operator.IN,
                    value=[2, 3],
                    description="Between 2 AM and 4 AM",
                ),
                PolicyCondition(
                    type=ConditionType.ROLE,
                    field="name",
                    operator=Operator.NOT_IN,
                    value=list(ADMIN_ROLE_NAMES),
                    description="Except for admins",
                ),
            ],
            priority=900,
            is_active=False,
        ),
        PolicyRule(
            policy_id="self_service_profile",
            name="Self-Service Profile Access",
            description="Users can read and update their own profile",
            resource="user.profile",
            action=WILDCARD,
            effect=Effect.ALLOW,
            conditions=[
                PolicyCondition(
                    type=ConditionType.RESOURCE,
                    field="userId",
                    operator=Operator.EQUALS,
                    value="${user.id}",
                    description="Resource must belong to the current user",
                ),
            ],
            priority=100,
        ),
    ]
