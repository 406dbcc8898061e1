"""
client/session.py -- Client-side session state machine for the Passgate API.

States and transitions:

    ANONYMOUS --login (no MFA)----------> AUTHENTICATED
    ANONYMOUS --login (MFA required)----> MFA_PENDING --verify_mfa--> AUTHENTICATED
    AUTHENTICATED --request gets 401----> REFRESHING
    REFRESHING --refresh ok-------------> AUTHENTICATED (request retried once)
    REFRESHING --refresh fails----------> REAUTH_REQUIRED
    any --logout------------------------> ANONYMOUS

A failed request triggers at most one refresh attempt. If the retried request
is still rejected, or the refresh itself fails, the session moves to
REAUTH_REQUIRED and the caller must log in again. There is no retry loop.

The transport is anything with a requests-style request(method, url, ...)
method: a requests.Session in production, a FastAPI TestClient in tests.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

import requests

logger = logging.getLogger("passgate.client")


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    MFA_PENDING = "mfa_pending"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


class ApiError(Exception):
    """Non-2xx response from the API, carrying the error envelope fields."""

    def __init__(self, status: int, code: str, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")

    @classmethod
    def from_response(cls, response) -> "ApiError":
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        return cls(response.status_code, error.get("code", "unknown"), error.get("message", response.text))


class ReauthRequired(ApiError):
    """The session cannot be recovered without a fresh login."""

    def __init__(self, message: str = "Please log in again.") -> None:
        super().__init__(401, "reauth_required", message)


class PassgateSession:
    """Holds tokens for one user and drives the state machine above."""

    def __init__(self, base_url: str = "", http=None, timeout: Optional[float] = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout
        self.state = SessionState.ANONYMOUS
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.mfa_ticket: Optional[str] = None

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, mfa_code: Optional[str] = None) -> SessionState:
        body: dict[str, Any] = {"email": email, "password": password}
        if mfa_code is not None:
            body["mfa_code"] = mfa_code
        response = self._send("POST", "/api/v1/auth/login", json=body)
        if response.status_code != 200:
            raise ApiError.from_response(response)
        data = response.json()["data"]
        if data["mfa_required"]:
            self.mfa_ticket = data["mfa_ticket"]
            self._transition(SessionState.MFA_PENDING)
        else:
            self._store_tokens(data["tokens"])
        return self.state

    def verify_mfa(self, code: str) -> SessionState:
        if self.state is not SessionState.MFA_PENDING or self.mfa_ticket is None:
            raise ApiError(400, "no_mfa_pending", "No MFA challenge is pending.")
        response = self._send("POST", "/api/v1/auth/mfa/verify", json={"ticket": self.mfa_ticket, "code": code})
        if response.status_code != 200:
            error = ApiError.from_response(response)
            if error.code in ("invalid_token", "token_expired"):
                # Ticket gone (expired or attempts exhausted): start over.
                self.mfa_ticket = None
                self._transition(SessionState.ANONYMOUS)
            raise error
        self.mfa_ticket = None
        self._store_tokens(response.json()["data"])
        return self.state

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any):
        """Send an authenticated request, refreshing once on 401.

        Raises ReauthRequired when the session is not (or no longer) usable.
        """
        if self.state is not SessionState.AUTHENTICATED:
            raise ReauthRequired("Not logged in.")
        response = self._send(method, path, authenticated=True, **kwargs)
        if response.status_code != 401:
            return response
        if not self.refresh():
            raise ReauthRequired()
        response = self._send(method, path, authenticated=True, **kwargs)
        if response.status_code == 401:
            self._transition(SessionState.REAUTH_REQUIRED)
            raise ReauthRequired()
        return response

    def refresh(self) -> bool:
        """One refresh attempt. True on success; otherwise the session needs a new login."""
        if self.refresh_token is None:
            self._transition(SessionState.REAUTH_REQUIRED)
            return False
        self._transition(SessionState.REFRESHING)
        response = self._send("POST", "/api/v1/auth/refresh", json={"refresh_token": self.refresh_token})
        if response.status_code != 200:
            logger.info("Refresh failed with %d", response.status_code)
            self.access_token = None
            self.refresh_token = None
            self._transition(SessionState.REAUTH_REQUIRED)
            return False
        self._store_tokens(response.json()["data"])
        return True

    def logout(self, everywhere: bool = False) -> None:
        """Revoke the refresh token server-side (best effort) and forget local tokens."""
        if self.access_token is not None:
            response = self._send(
                "POST",
                "/api/v1/auth/logout",
                authenticated=True,
                json={"refresh_token": self.refresh_token, "everywhere": everywhere},
            )
            if response.status_code != 200:
                logger.info("Server-side logout returned %d", response.status_code)
        self.access_token = None
        self.refresh_token = None
        self.mfa_ticket = None
        self._transition(SessionState.ANONYMOUS)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store_tokens(self, tokens: dict) -> None:
        self.access_token = tokens["access_token"]
        self.refresh_token = tokens["refresh_token"]
        self._transition(SessionState.AUTHENTICATED)

    def _transition(self, new_state: SessionState) -> None:
        if new_state is not self.state:
            logger.debug("Session %s -> %s", self.state.value, new_state.value)
            self.state = new_state

    def _send(self, method: str, path: str, authenticated: bool = False, **kwargs: Any):
        headers = dict(kwargs.pop("headers", None) or {})
        if authenticated and self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if self.timeout is not None:
            kwargs.setdefault("timeout", self.timeout)
        return self.http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
