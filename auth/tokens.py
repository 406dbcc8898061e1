"""
auth/tokens.py -- JWT, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and carry
       sub (user id), email, roles, type="access", iat, and exp. Decoding raises
       TokenExpired or TokenMalformed; the request layer turns both into a 401.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in check_password() so response time does not reveal whether
       an email exists [C1].

  Opaque tokens (refresh tokens, MFA tickets, verification and reset tokens):
       generated with the secrets module (>= 256 bits of entropy) and stored as
       HMAC-SHA256(SECRET_KEY, raw). Lookup by hash is O(1) via a UNIQUE index and
       a leaked database does not yield usable tokens. bcrypt's intentional
       slowness is unnecessary for high-entropy values.

Layer rule: no imports from api/, notify/, or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings, get_settings
from core.errors import TokenExpired, TokenMalformed

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("passgate.auth")

_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only considers the first 72 bytes; core.validation rejects longer
    passwords before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A malformed stored hash raises
    ValueError inside bcrypt; that is treated as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("passgate_timing_dummy")


def check_password(user: Optional[User], password: str) -> bool:
    """Verify password for a possibly-missing user with equal cost either way.

    Always runs bcrypt: against the user's hash when there is one, otherwise
    against _DUMMY_HASH. Unknown email, OAuth-only account, and wrong password all
    cost one bcrypt check and all return False.
    """
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return False
    return verify_password(password, user.hashed_password)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_url_token() -> str:
    """Random URL-safe token for refresh tokens and MFA tickets (384 bits)."""
    return secrets.token_urlsafe(48)


def generate_link_token() -> str:
    """Random 64-char hex token for email verification and password reset links.

    Hex keeps the token alphanumeric, which is what the link validators accept.
    """
    return secrets.token_hex(32)


def hash_token(raw: str, settings: Optional[Settings] = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so the hash doubles as the lookup key.
    """
    cfg = settings or get_settings()
    return hmac.new(cfg.secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


def hash_backup_code(code: str) -> str:
    """Backup codes are normalized (lower-case, no dashes) before hashing."""
    return hashlib.sha256(code.strip().lower().replace("-", "").encode()).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user: User,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed access JWT for the user.

    Args:
        user:           The authenticated user (must have an id).
        settings:       Settings override; defaults to get_settings().
        now:            Issue time; defaults to the current UTC time.
        expire_seconds: Lifetime override. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    cfg = settings or get_settings()
    issued = now or datetime.now(timezone.utc)
    duration = expire_seconds if expire_seconds > 0 else cfg.access_token_expire_seconds
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "roles": list(user.roles),
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=duration)).timestamp()),
    }
    return jwt.encode(payload, cfg.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> dict:
    """Decode and verify an access JWT.

    Raises:
        TokenExpired:   signature valid but exp is in the past.
        TokenMalformed: anything else (bad signature, garbage, wrong type,
                        missing claims).
    """
    cfg = settings or get_settings()
    try:
        payload = jwt.decode(token, cfg.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except JWTError as exc:
        raise TokenMalformed() from exc
    if payload.get("type") != ACCESS_TOKEN_TYPE or "sub" not in payload:
        raise TokenMalformed()
    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise TokenMalformed() from exc
    return payload
