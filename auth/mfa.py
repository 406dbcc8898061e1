"""
auth/mfa.py -- MFA challenge step and TOTP enrollment.

Challenge flow:
  1. Password verified, MFA enabled, no code supplied: begin() stores a
     Pending-MFA ticket (hash only) and hands the raw ticket to the client.
  2. Client posts ticket + code: complete() consumes the ticket and issues the
     real token pair through the Token Service, all in one transaction.

A ticket is single-use and short-lived (Settings.mfa_ticket_expire_seconds).
Wrong codes increment its attempt counter; at Settings.mfa_ticket_max_attempts
the ticket is deleted and the user must log in again.

Codes are either a RFC 6238 TOTP code (cryptography's twofactor TOTP, SHA1, six
digits, 30 s steps, +/- Settings.mfa_valid_window steps of skew) or one of the
user's single-use backup codes (stored as sha256 hashes, removed on match).

Layer rule: no imports from api/, notify/, or client/.
"""

from __future__ import annotations

import base64
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor import InvalidToken as InvalidTotp
from cryptography.hazmat.primitives.twofactor.totp import TOTP

from auth.models import MfaEnrollment, MfaTicket, TokenPair, User
from auth.sessions import TokenService, utcnow
from auth.store import UserStore, UserTransaction, from_iso, to_iso
from auth.tokens import check_password, generate_url_token, hash_backup_code, hash_token
from core.config import Settings, get_settings
from core.errors import AlreadyExists, InvalidCredentials, InvalidToken, NotFound, StaleRecordError, ValidationFailed

logger = logging.getLogger("passgate.auth.mfa")

TOTP_DIGITS = 6
TOTP_STEP_SECONDS = 30


# ---------------------------------------------------------------------------
# TOTP primitives
# ---------------------------------------------------------------------------


def random_secret() -> str:
    """160-bit base32 secret, the form authenticator apps accept."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii")


def _totp(secret: str) -> TOTP:
    key = base64.b32decode(secret.upper() + "=" * (-len(secret) % 8))
    return TOTP(key, TOTP_DIGITS, SHA1(), TOTP_STEP_SECONDS)


def totp_code(secret: str, at: datetime) -> str:
    """The code an authenticator app shows at the given moment."""
    return _totp(secret).generate(int(at.timestamp())).decode("ascii")


def totp_matches(secret: str, code: str, at: datetime, window: int = 1) -> bool:
    """Accept the code for the current step or up to `window` steps either side."""
    if not (code.isdigit() and len(code) == TOTP_DIGITS):
        return False
    totp = _totp(secret)
    now = int(at.timestamp())
    for step in range(-window, window + 1):
        try:
            totp.verify(code.encode("ascii"), now + step * TOTP_STEP_SECONDS)
        except InvalidTotp:
            continue
        return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """otpauth:// URI for QR enrollment."""
    return _totp(secret).get_provisioning_uri(account, issuer)


def generate_backup_codes(count: int) -> tuple[list[str], list[str]]:
    """Return (plain codes shown once, sha256 hashes to store)."""
    codes = [secrets.token_hex(5) for _ in range(count)]
    return codes, [hash_backup_code(c) for c in codes]


class MfaChallenge:
    """Second-factor verification and enrollment for one UserStore."""

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Code verification
    # ------------------------------------------------------------------

    def verify_code(self, user: User, code: str) -> tuple[bool, Optional[list[str]]]:
        """Check a TOTP or backup code.

        Returns (ok, remaining_backup_codes). remaining is None unless a backup
        code matched, in which case the caller must persist it.
        """
        if not user.mfa_secret:
            return False, None
        code = code.strip().replace("-", "")
        if code.isdigit() and len(code) == TOTP_DIGITS:
            return totp_matches(user.mfa_secret, code, self.clock(), self.settings.mfa_valid_window), None
        hashed = hash_backup_code(code)
        if hashed in user.mfa_backup_codes:
            return True, [h for h in user.mfa_backup_codes if h != hashed]
        return False, None

    # ------------------------------------------------------------------
    # Challenge
    # ------------------------------------------------------------------

    def begin(self, tx: UserTransaction, user: User) -> tuple[str, int]:
        """Store a Pending-MFA ticket for the user. Returns (raw ticket, ttl seconds)."""
        ttl = self.settings.mfa_ticket_expire_seconds
        raw = generate_url_token()
        tx.add_mfa_ticket(
            MfaTicket(
                ticket_hash=hash_token(raw, self.settings),
                user_id=user.id,
                expires_at=to_iso(self.clock() + timedelta(seconds=ttl)),
            )
        )
        logger.info("MFA challenge issued for user_id=%s", user.id)
        return raw, ttl

    def complete(self, ticket: str, code: str) -> TokenPair:
        """Finish a login that stopped at the MFA step.

        Raises:
            InvalidToken:       ticket unknown, expired, or already consumed; checked
                                before the code, so code correctness is irrelevant.
            InvalidCredentials: the code did not match.
        """
        ticket_hash = hash_token(ticket, self.settings)
        expired = False
        wrong_code = False
        with self.store.transaction() as tx:
            stored = tx.find_mfa_ticket(ticket_hash)
            if stored is None:
                raise InvalidToken()
            if from_iso(stored.expires_at) <= self.clock():
                tx.consume_mfa_ticket(ticket_hash)
                expired = True
            else:
                user = tx.find_by_id(stored.user_id)
                if user is None or not user.is_active or not user.is_mfa_enabled:
                    raise InvalidToken()
                ok, remaining = self.verify_code(user, code)
                if not ok:
                    wrong_code = True
                    if stored.attempts + 1 >= self.settings.mfa_ticket_max_attempts:
                        tx.consume_mfa_ticket(ticket_hash)
                        logger.warning("MFA ticket exhausted for user_id=%s", user.id)
                    else:
                        tx.record_mfa_attempt(ticket_hash)
                else:
                    if not tx.consume_mfa_ticket(ticket_hash):
                        raise InvalidToken()
                    if remaining is not None or user.mfa_failed_attempts:
                        # A completed challenge also clears the inline attempt count.
                        user.mfa_failed_attempts = 0
                        if remaining is not None:
                            user.mfa_backup_codes = remaining
                        try:
                            tx.save(user)
                        except StaleRecordError as exc:
                            raise InvalidToken() from exc
                    if remaining is not None:
                        logger.info("Backup code consumed for user_id=%s (%d left)", user.id, len(remaining))
                    tx.touch_last_login(user.id, to_iso(self.clock()))
                    pair = self.tokens.issue_in(tx, user)
        # Raised after commit so the deleted ticket / attempt count persists.
        if expired:
            raise InvalidToken("MFA ticket has expired.")
        if wrong_code:
            logger.warning("MFA code rejected for user_id=%s", stored.user_id)
            raise InvalidCredentials()
        logger.info("MFA login completed for user_id=%s", stored.user_id)
        return pair

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def setup(self, user_id: int) -> MfaEnrollment:
        """Generate and store a fresh TOTP secret; MFA stays disabled until enable()."""
        with self.store.transaction() as tx:
            user = self._load(tx, user_id)
            if user.is_mfa_enabled:
                raise AlreadyExists("MFA is already enabled.")
            user.mfa_secret = random_secret()
            tx.save(user)
        uri = provisioning_uri(user.mfa_secret, user.email, self.settings.app_name)
        logger.info("MFA setup started for user_id=%s", user_id)
        return MfaEnrollment(secret=user.mfa_secret, otpauth_uri=uri)

    def enable(self, user_id: int, code: str) -> list[str]:
        """Confirm the pending secret with a TOTP code; return fresh backup codes.

        The plain backup codes are returned exactly once and never stored.
        """
        with self.store.transaction() as tx:
            user = self._load(tx, user_id)
            if user.is_mfa_enabled:
                raise AlreadyExists("MFA is already enabled.")
            if not user.mfa_secret:
                raise ValidationFailed(["Start MFA setup before enabling it."])
            if not totp_matches(user.mfa_secret, code.strip(), self.clock(), self.settings.mfa_valid_window):
                raise InvalidCredentials()
            codes, hashes = generate_backup_codes(self.settings.mfa_backup_code_count)
            user.mfa_backup_codes = hashes
            user.is_mfa_enabled = True
            tx.save(user)
        logger.info("MFA enabled for user_id=%s", user_id)
        return codes

    def disable(self, user_id: int, password: Optional[str], code: str) -> None:
        """Turn MFA off. Needs a valid code, plus the password for local accounts."""
        with self.store.transaction() as tx:
            user = self._load(tx, user_id)
            if not user.is_mfa_enabled:
                raise ValidationFailed(["MFA is not enabled."])
            if user.hashed_password is not None and not check_password(user, password or ""):
                raise InvalidCredentials()
            ok, _ = self.verify_code(user, code)
            if not ok:
                raise InvalidCredentials()
            user.is_mfa_enabled = False
            user.mfa_secret = None
            user.mfa_backup_codes = []
            user.mfa_failed_attempts = 0
            tx.save(user)
            tx.revoke_mfa_tickets(user.id)
        logger.info("MFA disabled for user_id=%s", user_id)

    @staticmethod
    def _load(tx: UserTransaction, user_id: int) -> User:
        user = tx.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user
