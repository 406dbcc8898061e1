"""
auth/orchestrator.py -- Session Orchestrator: register, login, OAuth login, logout.

Login state machine:

    Unauthenticated --password ok--> PasswordVerified
        PasswordVerified --MFA off--------------> Authenticated (token pair)
        PasswordVerified --MFA on, no code------> MfaPending (ticket, see auth/mfa.py)
        PasswordVerified --MFA on, code ok------> Authenticated
    Authenticated --refresh--> Authenticated (auth/sessions.py)
    Authenticated --logout---> Revoked

Security notes:
  [C1] The password check always costs one bcrypt run: unknown email, OAuth-only
       account, inactive account, and wrong password are indistinguishable in
       both response and timing. All of them raise InvalidCredentials.
  Email-not-verified is reported only after the password matched, so it is no
       enumeration signal. It is off unless Settings.require_verified_email.
  Rate limiting happens in the HTTP layer (slowapi) before any of this runs.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.mfa import MfaChallenge
from auth.models import LoginResult, User
from auth.recovery import AccountRecovery
from auth.sessions import ALL, TokenService, utcnow
from auth.store import UserStore, UserTransaction, to_iso
from auth.tokens import check_password, generate_link_token, hash_password, hash_token
from core.config import Settings, get_settings
from core.errors import (
    AccountInactive,
    AlreadyExists,
    EmailNotVerified,
    Forbidden,
    InvalidCredentials,
    StaleRecordError,
    ValidationFailed,
)
from core.validation import check_email, check_name, check_password_strength, combine

logger = logging.getLogger("passgate.auth.orchestrator")


class SessionOrchestrator:
    """Composes the store, Token Service, MFA step, and recovery flow."""

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        mfa: MfaChallenge,
        recovery: AccountRecovery,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.mfa = mfa
        self.recovery = recovery
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Optional[list[str]] = None,
        email_verified: bool = False,
    ) -> User:
        """Create a local account and send its verification email.

        Raises:
            ValidationFailed: email syntax, password strength, or name rules.
            AlreadyExists:    the normalized email is taken.
        """
        email_check = check_email(email)
        first_check = check_name(first_name, "First name")
        last_check = check_name(last_name, "Last name")
        result = combine(email_check, check_password_strength(password), first_check, last_check)
        if not result.ok:
            raise ValidationFailed(result.errors)

        raw_token = None if email_verified else generate_link_token()
        user = User(
            email=email_check.value,
            hashed_password=hash_password(password),
            first_name=first_check.value,
            last_name=last_check.value,
            is_email_verified=email_verified,
            email_verification_token_hash=hash_token(raw_token, self.settings) if raw_token else None,
        )
        if roles:
            user.roles = list(roles)
        try:
            with self.store.transaction() as tx:
                if tx.find_by_email(user.email) is not None:
                    raise AlreadyExists()
                tx.create(user)
        except IntegrityError as exc:
            raise AlreadyExists() from exc
        logger.info("User registered: user_id=%s", user.id)
        if raw_token:
            self.recovery.send_verification(user, raw_token)
        return user

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, mfa_code: Optional[str] = None) -> LoginResult:
        """Verify credentials and return tokens, or an MFA ticket when a code is needed."""
        user = self.store.get_by_email(email)
        password_ok = check_password(user, password)  # [C1] always one bcrypt run
        if not password_ok or not user.is_active:
            logger.warning("Login failed (user_id=%s)", user.id if user else None)
            raise InvalidCredentials()
        if self.settings.require_verified_email and not user.is_email_verified:
            logger.info("Login refused: email not verified for user_id=%s", user.id)
            raise EmailNotVerified()

        wrong_code = False
        with self.store.transaction() as tx:
            current = tx.find_by_id(user.id)
            # Re-read under the write lock: deactivated or password changed since the check.
            if current is None or not current.is_active or current.hashed_password != user.hashed_password:
                raise InvalidCredentials()
            if current.is_mfa_enabled and (mfa_code is None or self._inline_locked(current)):
                ticket, expires_in = self.mfa.begin(tx, current)
                return LoginResult(mfa_ticket=ticket, mfa_ticket_expires_in=expires_in)
            if current.is_mfa_enabled:
                wrong_code = not self._check_inline_code(tx, current, mfa_code)
            if not wrong_code:
                tx.touch_last_login(current.id, to_iso(self.clock()))
                pair = self.tokens.issue_in(tx, current)
        # Raised after commit so the failed-attempt count persists.
        if wrong_code:
            raise InvalidCredentials()
        logger.info("Login succeeded for user_id=%s", user.id)
        return LoginResult(tokens=pair)

    def _inline_locked(self, user: User) -> bool:
        if user.mfa_failed_attempts < self.settings.mfa_ticket_max_attempts:
            return False
        logger.warning("Inline MFA code ignored for user_id=%s: attempt limit reached", user.id)
        return True

    def _check_inline_code(self, tx: UserTransaction, user: User, code: str) -> bool:
        """Check a code sent with the password. Wrong codes count toward the attempt limit."""
        ok, remaining = self.mfa.verify_code(user, code)
        if ok and remaining is None and user.mfa_failed_attempts == 0:
            return True
        if ok:
            user.mfa_failed_attempts = 0
            if remaining is not None:
                user.mfa_backup_codes = remaining
        else:
            user.mfa_failed_attempts += 1
            logger.warning(
                "Login failed: bad MFA code for user_id=%s (%d/%d)",
                user.id,
                user.mfa_failed_attempts,
                self.settings.mfa_ticket_max_attempts,
            )
        try:
            tx.save(user)
        except StaleRecordError as exc:
            raise InvalidCredentials() from exc
        return ok

    # ------------------------------------------------------------------
    # OAuth login
    # ------------------------------------------------------------------

    def oauth_login(
        self,
        provider: str,
        email: str,
        subject: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> LoginResult:
        """Log in with a provider-verified identity.

        Match order: (provider, subject) -> unlinked account with the same email
        (linked now) -> new provider-linked account with no local password.
        The provider has already confirmed the email, so it is marked verified.
        """
        email_check = check_email(email)
        if not email_check.ok:
            raise ValidationFailed(email_check.errors)
        with self.store.transaction() as tx:
            user = tx.find_by_oauth(provider, subject)
            if user is None:
                user = tx.find_by_email(email_check.value)
                if user is not None:
                    if user.oauth_subject is not None:
                        logger.warning("OAuth login refused: user_id=%s linked to another identity", user.id)
                        raise Forbidden("This account is linked to a different sign-in provider.")
                    user.oauth_provider = provider
                    user.oauth_subject = subject
                    user.is_email_verified = True
                    tx.save(user)
                    logger.info("Linked %s identity to user_id=%s", provider, user.id)
                else:
                    user = User(
                        email=email_check.value,
                        first_name=check_name(first_name, "First name").value,
                        last_name=check_name(last_name, "Last name").value,
                        is_email_verified=True,
                        oauth_provider=provider,
                        oauth_subject=subject,
                    )
                    try:
                        tx.create(user)
                    except IntegrityError as exc:
                        raise AlreadyExists() from exc
                    logger.info("Created %s-linked user_id=%s", provider, user.id)
            if not user.is_active:
                raise AccountInactive()
            if user.is_mfa_enabled:
                ticket, expires_in = self.mfa.begin(tx, user)
                return LoginResult(mfa_ticket=ticket, mfa_ticket_expires_in=expires_in)
            tx.touch_last_login(user.id, to_iso(self.clock()))
            pair = self.tokens.issue_in(tx, user)
        logger.info("OAuth login (%s) succeeded for user_id=%s", provider, user.id)
        return LoginResult(tokens=pair)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: int, refresh_token: Optional[str] = None, everywhere: bool = False) -> int:
        """Revoke the given refresh token, or all of them. Idempotent; returns the count."""
        if everywhere or self.settings.revoke_all_on_logout or refresh_token is None:
            return self.tokens.revoke(user_id, ALL)
        return self.tokens.revoke(user_id, refresh_token)
