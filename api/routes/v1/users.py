"""
api/routes/v1/users.py -- Profile and user management REST endpoints.

Routes:
  GET    /api/v1/users/me                         -- current user (requires auth)
  PATCH  /api/v1/users/me                         -- update first/last name (requires auth)
  PUT    /api/v1/users/me/password                -- change password (requires auth)
  GET    /api/v1/users                            -- list all users (admin only)
  GET    /api/v1/users/{id}                       -- one user (admin only)
  PATCH  /api/v1/users/{id}                       -- roles / is_active / is_email_verified (admin only)
  DELETE /api/v1/users/{id}                       -- soft delete: deactivate + sign out (admin only)
  POST   /api/v1/users/{id}/invalidate-sessions   -- revoke every refresh token (admin only)

Security:
  [M4] Admin updates block self-deactivation, and block deactivating or demoting
       the last active admin.
  Deactivation revokes the user's refresh tokens and pending MFA tickets in
  the same transaction; outstanding access tokens die at expiry because
  get_current_user() rejects inactive users.

The /users/me routes are registered before /users/{id} so "me" is never
parsed as a path parameter.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    AdminUserPatch,
    Envelope,
    MessageResponse,
    PasswordChangeRequest,
    ProfilePatch,
    RevokedResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, get_recovery, get_token_service, get_user_store, require_admin
from auth.models import ADMIN_ROLE, User
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from auth.store import UserStore
from core.errors import AlreadyExists, NotFound, StaleRecordError, ValidationFailed
from core.validation import check_name, combine

# Auth policy:
# - /users/me, /users/me/password:  requires auth (get_current_user)
# - everything else:                requires admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/users/me", response_model=Envelope[UserResponse])
def me(current_user: User = Depends(get_current_user)) -> Envelope[UserResponse]:
    return Envelope(data=UserResponse.from_user(current_user))


@router.patch("/users/me", response_model=Envelope[UserResponse])
def update_me(
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
    store: UserStore = Depends(get_user_store),
) -> Envelope[UserResponse]:
    """Update the caller's display name. Omitted fields are left unchanged."""
    first = check_name(body.first_name, "First name")
    last = check_name(body.last_name, "Last name")
    result = combine(first, last)
    if not result.ok:
        raise ValidationFailed(result.errors)
    with store.transaction() as tx:
        user = tx.find_by_id(current_user.id)
        if user is None:
            raise NotFound("User not found.")
        if body.first_name is not None:
            user.first_name = first.value
        if body.last_name is not None:
            user.last_name = last.value
        _save(tx, user)
    return Envelope(data=UserResponse.from_user(user))


@router.put("/users/me/password", response_model=Envelope[MessageResponse])
def change_password(
    body: PasswordChangeRequest,
    current_user: User = Depends(get_current_user),
    recovery: AccountRecovery = Depends(get_recovery),
) -> Envelope[MessageResponse]:
    """Change the caller's password. Every refresh token is revoked, including this session's."""
    recovery.change_password(current_user.id, body.current_password, body.new_password)
    return Envelope(data=MessageResponse(message="Password changed. Please log in again."))


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/users", response_model=Envelope[list[UserResponse]])
def list_users(
    current_user: User = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
) -> Envelope[list[UserResponse]]:
    """List all user accounts. Admin only."""
    return Envelope(data=[UserResponse.from_user(u) for u in store.list_users()])


@router.get("/users/{user_id}", response_model=Envelope[UserResponse])
def get_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
) -> Envelope[UserResponse]:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return Envelope(data=UserResponse.from_user(user))


@router.patch("/users/{user_id}", response_model=Envelope[UserResponse])
def update_user(
    request: Request,
    user_id: int,
    body: AdminUserPatch,
    current_user: User = Depends(require_admin),
) -> Envelope[UserResponse]:
    """Update a user's roles, active status, or verified flag. Admin only."""
    if body.roles is None and body.is_active is None and body.is_email_verified is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    user = _apply_admin_update(
        request,
        current_user,
        user_id,
        roles=body.roles,
        is_active=body.is_active,
        is_email_verified=body.is_email_verified,
    )
    return Envelope(data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope[UserResponse])
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> Envelope[UserResponse]:
    """Soft delete: the account is deactivated and signed out, never removed."""
    user = _apply_admin_update(request, current_user, user_id, is_active=False)
    return Envelope(data=UserResponse.from_user(user))


@router.post("/users/{user_id}/invalidate-sessions", response_model=Envelope[RevokedResponse])
def invalidate_sessions(
    user_id: int,
    current_user: User = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
    tokens: TokenService = Depends(get_token_service),
) -> Envelope[RevokedResponse]:
    with store.transaction() as tx:
        if tx.find_by_id(user_id) is None:
            raise NotFound("User not found.")
        count = tokens.revoke_in(tx, user_id)
        tx.revoke_mfa_tickets(user_id)
    return Envelope(data=RevokedResponse(revoked=count))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _apply_admin_update(
    request: Request,
    current_user: User,
    user_id: int,
    roles: Optional[list[str]] = None,
    is_active: Optional[bool] = None,
    is_email_verified: Optional[bool] = None,
) -> User:
    store = get_user_store(request)
    tokens = get_token_service(request)
    with store.transaction() as tx:
        target = tx.find_by_id(user_id)
        if target is None:
            raise NotFound("User not found.")

        deactivating = is_active is False and target.is_active
        demoting = roles is not None and ADMIN_ROLE not in roles and target.is_admin
        # [M4] Block self-deactivation
        if deactivating and target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        # [M4] Block removing the last active admin
        if (deactivating or demoting) and target.is_admin and target.is_active:
            if tx.count_active_admins() <= 1:
                raise HTTPException(
                    status_code=400,
                    detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
                )

        if roles is not None:
            target.roles = list(dict.fromkeys(roles))
        if is_active is not None:
            target.is_active = is_active
        if is_email_verified is not None:
            target.is_email_verified = is_email_verified
        _save(tx, target)
        if deactivating:
            tokens.revoke_in(tx, target.id)
            tx.revoke_mfa_tickets(target.id)
    return target


def _save(tx, user: User) -> None:
    try:
        tx.save(user)
    except StaleRecordError as exc:
        raise AlreadyExists("User changed concurrently; try again.") from exc
