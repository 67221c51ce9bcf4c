"""
Tests for the local username/password provider.
"""

import pytest

from gatekeeper.errors import InvalidCredentialsError
from gatekeeper.auth.providers import AuthProvider, LocalAuthProvider, MFAProvider


@pytest.fixture
def provider(identity):
    return LocalAuthProvider(identity)


def test_satisfies_protocol(provider):
    assert isinstance(provider, AuthProvider)
    assert not isinstance(provider, MFAProvider)


def test_authenticate(provider, alice, audit):
    token = provider.authenticate({
        "username": "alice",
        "password": "alice-password",
        "ip_address": "10.0.0.9",
        "session_id": "s-9",
    })

    context = provider.validate_token(token.access_token)
    assert context.user.username == "alice"
    assert context.ip_address is None
    assert audit.search(event="auth.login")[0].ip_address == "10.0.0.9"


@pytest.mark.parametrize("credentials", [{}, {"username": "alice"}, {"password": "x"}])
def test_missing_credentials(provider, credentials):
    with pytest.raises(InvalidCredentialsError, match="required"):
        provider.authenticate(credentials)


def test_refresh_and_logout(provider, alice):
    token = provider.authenticate({"username": "alice", "password": "alice-password"})

    refreshed = provider.refresh_token(token.refresh_token)
    assert refreshed.refresh_token != token.refresh_token

    provider.logout(refreshed.access_token)
    assert provider.validate_token(refreshed.access_token) is None


def test_get_user(provider, alice):
    assert provider.get_user(alice.id).username == "alice"
    assert provider.get_user("missing") is None
