"""
tests/test_client_session.py -- PassgateSession state machine against the real API.

The session talks to the app through the TestClient, which has the same
request(method, url, ...) interface as requests.Session. timeout=None because
TestClient does not take a timeout argument per request.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.mfa import totp_code
from auth.sessions import utcnow
from client.session import ApiError, PassgateSession, ReauthRequired, SessionState

PASSWORD = "P@ssw0rd1"


@pytest.fixture
def session(api_client: TestClient) -> PassgateSession:
    return PassgateSession(http=api_client, timeout=None)


class TestLogin:
    def test_password_login(self, session: PassgateSession, make_user) -> None:
        make_user()
        assert session.login("ada@acme.io", PASSWORD) is SessionState.AUTHENTICATED
        assert session.access_token and session.refresh_token

    def test_bad_credentials(self, session: PassgateSession, make_user) -> None:
        make_user()
        with pytest.raises(ApiError) as excinfo:
            session.login("ada@acme.io", "Wr0ng!pass")
        assert excinfo.value.status == 401
        assert excinfo.value.code == "invalid_credentials"
        assert session.state is SessionState.ANONYMOUS

    def test_mfa_pending_then_verified(self, session: PassgateSession, make_user) -> None:
        user = make_user(mfa=True)
        assert session.login("ada@acme.io", PASSWORD) is SessionState.MFA_PENDING
        assert session.access_token is None
        assert session.verify_mfa(totp_code(user.mfa_secret, utcnow())) is SessionState.AUTHENTICATED
        assert session.mfa_ticket is None

    def test_verify_without_pending_challenge(self, session: PassgateSession) -> None:
        with pytest.raises(ApiError) as excinfo:
            session.verify_mfa("123456")
        assert excinfo.value.code == "no_mfa_pending"

    def test_dead_ticket_returns_to_anonymous(self, session: PassgateSession, make_user, api_client) -> None:
        make_user(mfa=True)
        session.login("ada@acme.io", PASSWORD)
        with api_client.app.state.user_store.transaction() as tx:
            tx.revoke_mfa_tickets(tx.find_by_email("ada@acme.io").id)
        with pytest.raises(ApiError):
            session.verify_mfa("123456")
        assert session.state is SessionState.ANONYMOUS


class TestRequests:
    def test_authenticated_request(self, session: PassgateSession, make_user) -> None:
        make_user()
        session.login("ada@acme.io", PASSWORD)
        resp = session.request("GET", "/api/v1/users/me")
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "ada@acme.io"

    def test_401_triggers_one_refresh_and_retry(self, session: PassgateSession, make_user) -> None:
        make_user()
        session.login("ada@acme.io", PASSWORD)
        old_refresh = session.refresh_token
        session.access_token = "expired-or-garbage"
        resp = session.request("GET", "/api/v1/users/me")
        assert resp.status_code == 200
        assert session.state is SessionState.AUTHENTICATED
        assert session.refresh_token != old_refresh

    def test_failed_refresh_requires_reauth(self, session: PassgateSession, make_user, api_client) -> None:
        user = make_user()
        session.login("ada@acme.io", PASSWORD)
        api_client.app.state.token_service.revoke(user.id)
        session.access_token = "expired-or-garbage"
        with pytest.raises(ReauthRequired):
            session.request("GET", "/api/v1/users/me")
        assert session.state is SessionState.REAUTH_REQUIRED
        assert session.refresh_token is None

    def test_request_before_login(self, session: PassgateSession) -> None:
        with pytest.raises(ReauthRequired):
            session.request("GET", "/api/v1/users/me")


class TestLogout:
    def test_logout_revokes_server_side(self, session: PassgateSession, make_user, api_client) -> None:
        user = make_user()
        session.login("ada@acme.io", PASSWORD)
        session.logout()
        assert session.state is SessionState.ANONYMOUS
        assert session.access_token is None
        assert api_client.app.state.user_store.list_refresh_tokens(user.id) == []
