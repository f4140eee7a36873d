"""
Tests for the signed session proof.
"""

import pytest
from unittest.mock import MagicMock

from docchat.auth.session import SessionConfigurationError, SessionManager
from docchat.config.auth import AuthConfig
from conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000)


@pytest.fixture
def manager(clock):
    return SessionManager("session-secret-0123456789abcdef", max_age_seconds=1800, clock=clock)


class TestSessionTokens:

    def test_issue_and_verify(self, manager, clock):
        token = manager.issue("user-1", brand="2_20", name="Alice", email="a@example.com")

        claims = manager.verify(token)

        assert claims.subject == "user-1"
        assert claims.brand == "2_20"
        assert claims.name == "Alice"
        assert claims.expires_at == clock.now + 1800

    def test_token_carries_no_provider_tokens(self, manager):
        import jwt
        payload = jwt.decode(manager.issue("user-1"), options={"verify_signature": False})
        assert set(payload) == {"typ", "sub", "iat", "exp"}

    def test_expired_token_rejected(self, manager, clock):
        token = manager.issue("user-1")
        clock.now += 1801
        assert manager.verify(token) is None

    def test_renew_extends_expiry_and_keeps_identity(self, manager, clock):
        original = manager.verify(manager.issue("user-1", brand="2_20", name="Alice"))

        clock.now += 1000
        renewed = manager.verify(manager.renew(original))

        assert renewed.subject == "user-1"
        assert renewed.brand == "2_20"
        assert renewed.name == "Alice"
        assert renewed.expires_at == clock.now + 1800
        assert renewed.expires_at > original.expires_at

    def test_from_config_uses_clock(self, clock):
        manager = SessionManager.from_config(
            AuthConfig(session_secret="session-secret-0123456789abcdef"), clock=clock,
        )

        claims = manager.verify(manager.issue("user-1"))

        assert claims.issued_at == clock.now

    def test_wrong_secret_rejected(self, manager):
        other = SessionManager("other-secret-0123456789abcdefghij")
        assert manager.verify(other.issue("user-1")) is None

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
    def test_garbage_rejected(self, manager, token):
        assert manager.verify(token) is None

    def test_login_state_is_not_a_session(self, manager):
        state_token = manager.issue_login_state("state-1", "verifier-1")
        assert manager.verify(state_token) is None

    def test_missing_secret(self):
        with pytest.raises(SessionConfigurationError):
            SessionManager(None)


class TestLoginState:

    def test_round_trip(self, manager):
        state = manager.verify_login_state(manager.issue_login_state("state-1", "verifier-1"))

        assert state.state == "state-1"
        assert state.code_verifier == "verifier-1"

    def test_expires_after_ten_minutes(self, manager, clock):
        token = manager.issue_login_state("state-1", "verifier-1")
        clock.now += 601
        assert manager.verify_login_state(token) is None

    def test_session_token_is_not_login_state(self, manager):
        assert manager.verify_login_state(manager.issue("user-1")) is None


class TestReadRequestToken:

    def _request(self, cookies=None, headers=None):
        request = MagicMock()
        request.cookies = cookies or {}
        request.headers = headers or {}
        return request

    def test_cookie_preferred(self, manager):
        request = self._request(
            cookies={"docchat_session": "cookie-token"},
            headers={"Authorization": "Bearer header-token"},
        )
        assert manager.read_request_token(request) == "cookie-token"

    def test_bearer_fallback(self, manager):
        request = self._request(headers={"Authorization": "Bearer header-token"})
        assert manager.read_request_token(request) == "header-token"

    def test_nothing_present(self, manager):
        assert manager.read_request_token(self._request()) is None
