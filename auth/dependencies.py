"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with exactly one method:
  Authorization: Bearer <access token>

There are no cookies and no API keys. A missing header is a 401 raised here;
an expired or malformed token raises TokenExpired / TokenMalformed from the
Token Service, which the AuthError handler in api/main.py turns into a 401.

get_current_user() returns the active User behind a valid access token.
require_admin() wraps it and raises HTTP 403 if the user lacks the admin role.

The service objects are built once in the api/main.py lifespan and kept on
app.state; the get_* factories below hand them to route handlers.

Layer rule: this is the only auth/ module that imports from fastapi.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.mfa import MfaChallenge
from auth.models import User
from auth.orchestrator import SessionOrchestrator
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from auth.store import UserStore


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = get_token_service(request).verify_access(token)
    user = get_user_store(request).get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


# ---------------------------------------------------------------------------
# Service factories (objects live on app.state)
# ---------------------------------------------------------------------------


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_mfa(request: Request) -> MfaChallenge:
    return request.app.state.mfa


def get_recovery(request: Request) -> AccountRecovery:
    return request.app.state.recovery


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator
