"""
End-to-end tests through the wired SecurityCore.
"""

import json

import pytest

from gatekeeper import SecurityCore
from gatekeeper.auth import RequestMeta
from gatekeeper.config import GatekeeperConfig
from gatekeeper.errors import InvalidCredentialsError, PermissionDeniedError


@pytest.fixture
def core(tmp_path):
    config = GatekeeperConfig()
    config.passwords.bcrypt_rounds = 4
    config.audit.log_directory = str(tmp_path / "audit")
    config.audit.enable_console_output = False
    with SecurityCore(config) as core:
        yield core


def test_login_is_audited(core):
    core.identity.create_user("carol", "carol@example.com", "carol-password")
    meta = RequestMeta(ip_address="192.168.1.5")

    with pytest.raises(InvalidCredentialsError):
        core.identity.authenticate("carol", "wrong", meta)
    core.identity.authenticate("carol", "carol-password", meta)

    names = [e.event for e in core.audit.search()]
    assert names[:3] == ["auth.login", "auth.login_failed", "user.created"]


def test_denial_is_audited_and_persisted(core):
    carol = core.identity.create_user("carol", "carol@example.com", "carol-password")
    token = core.identity.authenticate("carol", "carol-password")
    context = core.identity.validate_token(token.access_token)

    with pytest.raises(PermissionDeniedError):
        core.identity.require_permission(context, "billing", "delete")

    core.audit.flush()
    [path] = core.audit.storage.list_files()
    records = [json.loads(line) for line in path.read_text().splitlines()]
    denied = [r for r in records if r["event"] == "security.access_denied"]
    assert denied[0]["userId"] == carol.id
    assert denied[0]["resource"] == "billing"


def test_background_tasks_running(core):
    assert core.scheduler.running_tasks() == ["identity-maintenance"]


def test_isolated_cores(tmp_path):
    first = SecurityCore(GatekeeperConfig())
    second = SecurityCore(GatekeeperConfig())
    assert first.events is not second.events
    assert first.identity.store is not second.identity.store
