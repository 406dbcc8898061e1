"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own the
domain shape; the store persists them and the services do the work.

Layer rule: no imports from api/, notify/, or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

ADMIN_ROLE = "admin"
DEFAULT_ROLES = ("user",)


@dataclass
class User:
    """An identity that can authenticate with Passgate.

    email is stored normalized (trimmed, lower-cased) and is unique.
    hashed_password is None for OAuth-only users (they have no local password).

    Token columns hold HMAC hashes, never raw tokens. The verification token hash
    is kept after consumption (with email_verification_consumed_at set) until a
    new verification request supersedes it.

    version is the optimistic concurrency counter: UserTransaction.save() only
    writes when the stored version still equals this one, then bumps it.
    """

    email: str
    id: Optional[int] = None
    hashed_password: Optional[str] = None  # None = OAuth-only user
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token_hash: Optional[str] = None
    email_verification_consumed_at: Optional[str] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires: Optional[str] = None
    mfa_secret: Optional[str] = None
    is_mfa_enabled: bool = False
    mfa_backup_codes: list[str] = field(default_factory=list)  # sha256 hex of unused codes
    mfa_failed_attempts: int = 0  # wrong inline login codes since the last success
    oauth_provider: Optional[str] = None  # "github", "google", "oidc"
    oauth_subject: Optional[str] = None  # provider's stable user ID
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        if self.is_mfa_enabled and not self.mfa_secret:
            raise ValueError("is_mfa_enabled requires mfa_secret")

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


@dataclass
class RefreshToken:
    """Server-side record of one issued refresh token (hash only)."""

    user_id: int
    token_hash: str
    issued_at: str
    expires_at: str
    id: Optional[int] = None


@dataclass
class MfaTicket:
    """Pending-MFA ticket: password verified, second factor outstanding.

    Single-use and short-lived. attempts counts wrong codes submitted against it.
    """

    ticket_hash: str
    user_id: int
    expires_at: str
    attempts: int = 0


@dataclass
class TokenPair:
    """Final credentials returned on successful authentication or refresh."""

    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass
class LoginResult:
    """Outcome of a login step: either final tokens or an MFA ticket, never both."""

    tokens: Optional[TokenPair] = None
    mfa_ticket: Optional[str] = None
    mfa_ticket_expires_in: Optional[int] = None

    @property
    def mfa_required(self) -> bool:
        return self.mfa_ticket is not None


@dataclass
class MfaEnrollment:
    """Returned by MFA setup. secret is shown to the user once for manual entry."""

    secret: str
    otpauth_uri: str
