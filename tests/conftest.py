"""
Shared fixtures.

bcrypt cost is lowered to 4 so the suite stays fast.
"""

import pytest

from gatekeeper.audit import AuditEventListener, AuditLogger
from gatekeeper.auth import IdentityManager, PermissionGuard, RequestMeta
from gatekeeper.events import EventBus


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def audit(tmp_path):
    audit_logger = AuditLogger(
        log_directory=tmp_path / "audit",
        buffer_size=1000,
        enable_console_output=False,
    )
    yield audit_logger
    audit_logger.close()


@pytest.fixture
def guard(events):
    return PermissionGuard(events=events)


@pytest.fixture
def identity(events, guard, audit):
    AuditEventListener(audit).attach(events)
    return IdentityManager(
        jwt_secret="test-secret-key-with-enough-length-for-hs256",
        guard=guard,
        events=events,
        bcrypt_rounds=4,
        max_failed_login_attempts=5,
        lockout_duration_minutes=30,
    )


@pytest.fixture
def meta():
    return RequestMeta(ip_address="10.0.0.1", user_agent="pytest", session_id="sess-1")


@pytest.fixture
def alice(identity):
    return identity.create_user("alice", "alice@example.com", "alice-password")


@pytest.fixture
def bob(identity):
    return identity.create_user("bob", "bob@example.com", "bob-password")
