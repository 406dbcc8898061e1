"""
auth/recovery.py -- Email verification, password reset, and password change.

Link tokens (verification and reset) are 64-char hex strings from
auth.tokens.generate_link_token(). Only HMAC hashes are stored on the user row;
issuing a new token overwrites the hash, which supersedes every earlier one.

Password reset requests never reveal whether the email exists: the method
returns None in every case and only a known, active account gets a token.

Every completing step (verify, reset, change) is one transaction that writes
the user with an optimistic version check. A concurrent writer that got there
first makes save() raise StaleRecordError, which is reported as a consumed or
invalid token.

bcrypt runs before the transaction opens so the write lock is never held
across a password hash.

Notifications are best-effort: DeliveryError is logged and the flow succeeds.

Layer rule: no imports from api/ or client/. The notifier is injected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from auth.models import User
from auth.sessions import TokenService, utcnow
from auth.store import UserStore, from_iso, to_iso
from auth.tokens import check_password, generate_link_token, hash_password, hash_token
from core.config import Settings, get_settings
from core.errors import (
    AlreadyExists,
    DeliveryError,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    StaleRecordError,
    TokenAlreadyConsumed,
    ValidationFailed,
)
from core.validation import check_password_strength, check_token_format

logger = logging.getLogger("passgate.auth.recovery")


class AccountRecovery:
    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        notifier,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_verification(self, user_id: int) -> None:
        """Issue a fresh verification token and email it. No-op once verified."""
        raw = generate_link_token()
        with self.store.transaction() as tx:
            user = tx.find_by_id(user_id)
            if user is None:
                raise NotFound("User not found.")
            if user.is_email_verified:
                logger.info("Verification skipped: user_id=%s already verified", user_id)
                return
            user.email_verification_token_hash = hash_token(raw, self.settings)
            user.email_verification_consumed_at = None
            try:
                tx.save(user)
            except StaleRecordError as exc:
                raise AlreadyExists("Account changed concurrently; try again.") from exc
        self.send_verification(user, raw)

    def send_verification(self, user: User, raw_token: str) -> None:
        """Email an already-stored verification token."""
        link = f"{self.settings.frontend_url.rstrip('/')}/verify-email?token={raw_token}"
        self._notify(user, "verify_email", {"link": link, "token": raw_token})
        logger.info("Verification email dispatched for user_id=%s", user.id)

    def verify_email(self, token: str) -> User:
        """Consume a verification token and mark the email verified.

        Raises:
            InvalidToken:         token unknown (or not a well-formed link token).
            TokenAlreadyConsumed: token was already used.
        """
        if not check_token_format(token).ok:
            raise InvalidToken("Verification token not found.")
        token_hash = hash_token(token, self.settings)
        with self.store.transaction() as tx:
            user = tx.find_by_verification_hash(token_hash)
            if user is None:
                raise InvalidToken("Verification token not found.")
            if user.email_verification_consumed_at is not None:
                raise TokenAlreadyConsumed()
            user.is_email_verified = True
            user.email_verification_consumed_at = to_iso(self.clock())
            try:
                tx.save(user)
            except StaleRecordError as exc:
                raise TokenAlreadyConsumed() from exc
        logger.info("Email verified for user_id=%s", user.id)
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Start a reset for the email if it belongs to an active account.

        Always returns None; the caller cannot tell known from unknown emails.
        """
        raw = generate_link_token()
        ttl = self.settings.password_reset_expire_seconds
        with self.store.transaction() as tx:
            user = tx.find_by_email(email)
            if user is None or not user.is_active:
                logger.info("Password reset requested for unknown or inactive account")
                return None
            user.password_reset_token_hash = hash_token(raw, self.settings)
            user.password_reset_expires = to_iso(self.clock() + timedelta(seconds=ttl))
            try:
                tx.save(user)
            except StaleRecordError:
                # A concurrent request already issued a token; its email stands.
                logger.info("Password reset for user_id=%s superseded concurrently", user.id)
                return None
        link = f"{self.settings.frontend_url.rstrip('/')}/reset-password?token={raw}"
        self._notify(user, "password_reset", {"link": link, "token": raw, "expires_in_minutes": ttl // 60})
        logger.info("Password reset token issued for user_id=%s", user.id)
        return None

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password with a reset token and sign out every session.

        Raises:
            ValidationFailed: the new password is too weak.
            InvalidToken:     token unknown, expired, or consumed concurrently.
        """
        strength = check_password_strength(new_password)
        if not strength.ok:
            raise ValidationFailed(strength.errors)
        if not check_token_format(token).ok:
            raise InvalidToken()
        new_hash = hash_password(new_password)
        token_hash = hash_token(token, self.settings)
        expired = False
        with self.store.transaction() as tx:
            user = tx.find_by_reset_hash(token_hash)
            if user is None:
                raise InvalidToken()
            if user.password_reset_expires is None or from_iso(user.password_reset_expires) <= self.clock():
                expired = True
            else:
                user.hashed_password = new_hash
            user.password_reset_token_hash = None
            user.password_reset_expires = None
            try:
                tx.save(user)
            except StaleRecordError as exc:
                raise InvalidToken() from exc
            if not expired:
                self.tokens.revoke_in(tx, user.id)
                tx.revoke_mfa_tickets(user.id)
        # Raised after commit so the expired token is cleared.
        if expired:
            logger.info("Password reset rejected: expired token for user_id=%s", user.id)
            raise InvalidToken("Password reset token has expired.")
        logger.info("Password reset completed for user_id=%s", user.id)
        self._notify(user, "password_changed", {})

    # ------------------------------------------------------------------
    # Password change (authenticated)
    # ------------------------------------------------------------------

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password after checking the current one; ends every session and MFA challenge."""
        strength = check_password_strength(new_password)
        if not strength.ok:
            raise ValidationFailed(strength.errors)
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        if not check_password(user, current_password):
            logger.warning("Password change rejected: wrong current password for user_id=%s", user_id)
            raise InvalidCredentials()
        user.hashed_password = hash_password(new_password)
        with self.store.transaction() as tx:
            try:
                tx.save(user)
            except StaleRecordError as exc:
                raise AlreadyExists("Account changed concurrently; try again.") from exc
            self.tokens.revoke_in(tx, user.id)
            tx.revoke_mfa_tickets(user.id)
        logger.info("Password changed for user_id=%s", user_id)
        self._notify(user, "password_changed", {})

    def _notify(self, user: User, template_id: str, payload: dict) -> None:
        try:
            self.notifier.send(user.email, template_id, {"first_name": user.first_name, **payload})
        except DeliveryError as exc:
            logger.warning("Notification %s for user_id=%s not sent: %s", template_id, user.id, exc)
