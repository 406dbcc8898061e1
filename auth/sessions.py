"""
auth/sessions.py -- Token Service: issue, refresh (rotate), revoke, verify.

Access tokens are short-lived JWTs (auth/tokens.py). Refresh tokens are opaque
random strings; only their HMAC hash is stored, one row per token, at most
Settings.max_refresh_tokens_per_user per user (oldest evicted first).

Rotation is single-use. refresh() runs in one transaction:
    find row by hash -> check expiry -> delete row (rowcount must be 1)
    -> load owner -> issue replacement.
If two callers present the same token concurrently, the database serializes the
delete; the loser sees rowcount 0 and gets InvalidToken. A stolen refresh token
is therefore usable at most once, and its legitimate owner's next refresh fails
loudly instead of silently succeeding twice.

Layer rule: no imports from api/, notify/, or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.models import RefreshToken, TokenPair, User
from auth.store import UserStore, UserTransaction, from_iso, to_iso
from auth.tokens import create_access_token, decode_access_token, generate_url_token, hash_token
from core.config import Settings, get_settings
from core.errors import AccountInactive, InvalidToken

logger = logging.getLogger("passgate.auth.sessions")

# Sentinel for revoke(): remove every refresh token the user holds.
ALL = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and rotates token pairs against an injected UserStore."""

    def __init__(
        self,
        store: UserStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user: User) -> TokenPair:
        """Issue a token pair in its own transaction."""
        with self.store.transaction() as tx:
            return self.issue_in(tx, user)

    def issue_in(self, tx: UserTransaction, user: User) -> TokenPair:
        """Issue a token pair inside the caller's transaction.

        Persists the refresh token hash, then evicts the oldest tokens beyond
        the per-user cap.
        """
        now = self.clock()
        raw_refresh = generate_url_token()
        tx.add_refresh_token(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_token(raw_refresh, self.settings),
                issued_at=to_iso(now),
                expires_at=to_iso(now + timedelta(seconds=self.settings.refresh_token_expire_seconds)),
            )
        )
        evicted = tx.trim_refresh_tokens(user.id, self.settings.max_refresh_tokens_per_user)
        if evicted:
            logger.info("Evicted %d old refresh token(s) for user_id=%s", evicted, user.id)
        return TokenPair(
            access_token=create_access_token(user, self.settings, now=now),
            refresh_token=raw_refresh,
            expires_in=self.settings.access_token_expire_seconds,
            refresh_expires_in=self.settings.refresh_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Refresh (rotation)
    # ------------------------------------------------------------------

    def refresh(self, raw_refresh: str) -> TokenPair:
        """Consume a refresh token and return a new pair.

        Raises:
            InvalidToken:    token unknown, expired, already consumed, or lost a
                             concurrent race.
            AccountInactive: the owner has been deactivated.
        """
        token_hash = hash_token(raw_refresh, self.settings)
        with self.store.transaction() as tx:
            stored = tx.find_refresh_token(token_hash)
            if stored is None:
                logger.warning("Refresh rejected: unknown token")
                raise InvalidToken()
            expired = from_iso(stored.expires_at) <= self.clock()
            consumed = tx.consume_refresh_token(stored.id)
            if not expired:
                if not consumed:
                    logger.warning("Refresh rejected: token consumed concurrently for user_id=%s", stored.user_id)
                    raise InvalidToken()
                user = tx.find_by_id(stored.user_id)
                if user is None:
                    raise InvalidToken()
                if not user.is_active:
                    raise AccountInactive()
                pair = self.issue_in(tx, user)
        # Raised outside the with-block so the expired row's deletion commits.
        if expired:
            logger.info("Refresh rejected: expired token for user_id=%s", stored.user_id)
            raise InvalidToken("Refresh token has expired.")
        logger.info("Refresh token rotated for user_id=%s", user.id)
        return pair

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, user_id: int, raw_refresh=ALL) -> int:
        """Remove one refresh token (ownership-checked) or ALL of them.

        Idempotent: revoking an unknown or already revoked token returns 0.
        """
        with self.store.transaction() as tx:
            return self.revoke_in(tx, user_id, raw_refresh)

    def revoke_in(self, tx: UserTransaction, user_id: int, raw_refresh=ALL) -> int:
        if raw_refresh is ALL:
            count = tx.revoke_all_refresh_tokens(user_id)
        else:
            count = tx.revoke_refresh_token(user_id, hash_token(raw_refresh, self.settings))
        logger.info("Revoked %d refresh token(s) for user_id=%s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> dict:
        """Return the access token payload; raises TokenExpired or TokenMalformed."""
        return decode_access_token(token, self.settings)
