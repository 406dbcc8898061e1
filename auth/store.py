"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper + Unit of Work.
UserStore is the repository and owns the engine. Every read-modify-write runs
inside UserStore.transaction(), which yields a UserTransaction bound to a
single connection: commit on normal exit, rollback on any exception. There is
no shared, long-lived connection or query runner; each operation gets its own
transaction scope. _row_to_* functions are the mappers. Service code never
touches SQL directly.

Concurrency:
  save(user) is optimistic -- UPDATE ... WHERE id = :id AND version = :version.
  Zero matched rows raises StaleRecordError.

  Consuming a refresh token or MFA ticket deletes its row and requires
  rowcount == 1. A concurrent consumer that lost the race sees rowcount == 0.

  SQLite: pysqlite's implicit transaction handling is disabled and every
  transaction starts with BEGIN IMMEDIATE, so the write lock is taken up front
  and concurrent writers queue on busy_timeout instead of failing on a stale
  snapshot. The timeout bounds the wait.

  Driver-level failures (lost connection, lock timeout, pool exhaustion) are
  raised as core.errors.Unavailable. Nothing is retried here.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Token columns hold HMAC hashes only.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Layer rule: no imports from api/, notify/, or client/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import ADMIN_ROLE, MfaTicket, RefreshToken, User
from core.config import get_settings
from core.errors import StaleRecordError, Unavailable
from core.validation import normalize_email

logger = logging.getLogger("passgate.store")

_DRIVER_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("roles", Text, nullable=False, server_default='["user"]'),  # JSON list
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token_hash", String(64), index=True),
    Column("email_verification_consumed_at", String(32)),
    Column("password_reset_token_hash", String(64), index=True),
    Column("password_reset_expires", String(32)),
    Column("mfa_secret", String(64)),
    Column("is_mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_backup_codes", Text, nullable=False, server_default="[]"),  # JSON list of sha256 hex
    Column("mfa_failed_attempts", Integer, nullable=False, server_default="0"),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("version", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_mfa_tickets = Table(
    "mfa_tickets",
    _metadata,
    Column("ticket_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    isolation_level=None stops pysqlite from emitting its own deferred BEGIN;
    _begin_immediate below emits BEGIN IMMEDIATE instead. PRAGMAs are
    per-connection, so they run on every new pooled connection.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _begin_immediate(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO-8601, so string comparison in SQL is chronological."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class UserTransaction:
    """All credential-store operations, bound to one open transaction.

    Obtain one from UserStore.transaction(); never construct or keep one
    beyond the with-block.
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_by_id(self, user_id: int) -> Optional[User]:
        row = self._conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email(self, email: str) -> Optional[User]:
        """Look up by normalized email (case-insensitive by construction)."""
        row = self._conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_oauth(self, provider: str, subject: str) -> Optional[User]:
        row = self._conn.execute(
            _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
        ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_verification_hash(self, token_hash: str) -> Optional[User]:
        row = self._conn.execute(
            _users.select().where(_users.c.email_verification_token_hash == token_hash)
        ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_reset_hash(self, token_hash: str) -> Optional[User]:
        row = self._conn.execute(_users.select().where(_users.c.password_reset_token_hash == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create(self, user: User) -> int:
        """Insert a new user, fill in id/created_at/version, and return the id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user.email = normalize_email(user.email)
        user.created_at = user.created_at or _now_iso()
        user.version = 0
        result = self._conn.execute(_users.insert().values(**_user_columns(user), created_at=user.created_at, version=0))
        user.id = result.inserted_primary_key[0]
        return user.id

    def save(self, user: User) -> None:
        """Write every mutable column if the stored version still matches.

        Raises StaleRecordError when another transaction saved the user first.
        On success user.version is bumped to the stored value.
        """
        result = self._conn.execute(
            _users.update()
            .where((_users.c.id == user.id) & (_users.c.version == user.version))
            .values(**_user_columns(user), version=user.version + 1)
        )
        if result.rowcount != 1:
            raise StaleRecordError(f"user {user.id} changed since version {user.version}")
        user.version += 1

    def touch_last_login(self, user_id: int, when: str) -> None:
        """Stamp last_login_at without a version bump; login never races on it."""
        self._conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=when))

    def list_users(self) -> list[User]:
        rows = self._conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        return self._conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def count_active_admins(self) -> int:
        """Roles are a JSON list, so admins are counted in Python."""
        rows = self._conn.execute(select(_users.c.roles).where(_users.c.is_active == 1)).fetchall()
        return sum(1 for r in rows if ADMIN_ROLE in json.loads(r.roles or "[]"))

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> int:
        result = self._conn.execute(
            _refresh_tokens.insert().values(
                user_id=token.user_id,
                token_hash=token.token_hash,
                issued_at=token.issued_at,
                expires_at=token.expires_at,
            )
        )
        token.id = result.inserted_primary_key[0]
        return token.id

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        row = self._conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def consume_refresh_token(self, token_id: int) -> bool:
        """Delete one token row. False means another transaction consumed it first."""
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == token_id))
        return result.rowcount == 1

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return the user's refresh tokens, oldest first."""
        rows = self._conn.execute(
            _refresh_tokens.select()
            .where(_refresh_tokens.c.user_id == user_id)
            .order_by(_refresh_tokens.c.issued_at, _refresh_tokens.c.id)
        ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token(self, user_id: int, token_hash: str) -> int:
        """Delete one token; user_id is part of the WHERE clause (ownership check)."""
        result = self._conn.execute(
            _refresh_tokens.delete().where(
                (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token_hash == token_hash)
            )
        )
        return result.rowcount

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def trim_refresh_tokens(self, user_id: int, keep: int) -> int:
        """Evict the oldest tokens so at most `keep` remain. Returns rows removed."""
        tokens = self.list_refresh_tokens(user_id)
        excess = tokens[: max(len(tokens) - keep, 0)]
        if not excess:
            return 0
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id.in_([t.id for t in excess])))
        return result.rowcount

    # ------------------------------------------------------------------
    # MFA tickets
    # ------------------------------------------------------------------

    def add_mfa_ticket(self, ticket: MfaTicket) -> None:
        self._conn.execute(
            _mfa_tickets.insert().values(
                ticket_hash=ticket.ticket_hash,
                user_id=ticket.user_id,
                expires_at=ticket.expires_at,
                attempts=ticket.attempts,
            )
        )

    def find_mfa_ticket(self, ticket_hash: str) -> Optional[MfaTicket]:
        row = self._conn.execute(_mfa_tickets.select().where(_mfa_tickets.c.ticket_hash == ticket_hash)).fetchone()
        if row is None:
            return None
        return MfaTicket(
            ticket_hash=row.ticket_hash,
            user_id=row.user_id,
            expires_at=row.expires_at,
            attempts=row.attempts,
        )

    def consume_mfa_ticket(self, ticket_hash: str) -> bool:
        """Delete the ticket. False means it was already consumed concurrently."""
        result = self._conn.execute(_mfa_tickets.delete().where(_mfa_tickets.c.ticket_hash == ticket_hash))
        return result.rowcount == 1

    def record_mfa_attempt(self, ticket_hash: str) -> None:
        self._conn.execute(
            _mfa_tickets.update()
            .where(_mfa_tickets.c.ticket_hash == ticket_hash)
            .values(attempts=_mfa_tickets.c.attempts + 1)
        )

    def revoke_mfa_tickets(self, user_id: int) -> int:
        result = self._conn.execute(_mfa_tickets.delete().where(_mfa_tickets.c.user_id == user_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: str) -> tuple[int, int]:
        """Delete expired refresh tokens and MFA tickets. Returns (tokens, tickets)."""
        tokens = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now)).rowcount
        tickets = self._conn.execute(_mfa_tickets.delete().where(_mfa_tickets.c.expires_at <= now)).rowcount
        return tokens, tickets


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, refresh tokens, and MFA tickets.

    Usage:
        store = UserStore("sqlite:///passgate.db")
        with store.transaction() as tx:
            user = tx.find_by_email("a@x.com")
            user.first_name = "Ada"
            tx.save(user)
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        cfg = get_settings()
        db_url = db_url or cfg.database_url
        timeout = cfg.db_timeout_seconds if timeout is None else timeout
        if db_url.startswith("sqlite"):
            # pysqlite's timeout is the busy-wait bound for a locked database.
            self.engine: Engine = create_engine(
                db_url, connect_args={"check_same_thread": False, "timeout": timeout}
            )
            event.listen(self.engine, "connect", _on_sqlite_connect)
            event.listen(self.engine, "begin", _begin_immediate)
        else:
            self.engine = create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[UserTransaction]:
        """Open a transaction scope for one operation.

        Commits when the block exits normally; rolls back and re-raises on any
        exception. Driver failures surface as Unavailable.
        """
        try:
            with self.engine.begin() as conn:
                yield UserTransaction(conn)
        except _DRIVER_ERRORS as exc:
            logger.error("Credential store unavailable: %s", exc.__class__.__name__)
            raise Unavailable(detail="credential store") from exc

    # ------------------------------------------------------------------
    # Single-statement conveniences (each in its own transaction)
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.transaction() as tx:
            return tx.count_users() > 0

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self.transaction() as tx:
            return tx.find_by_id(user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        with self.transaction() as tx:
            return tx.find_by_email(email)

    def list_users(self) -> list[User]:
        with self.transaction() as tx:
            return tx.list_users()

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        with self.transaction() as tx:
            return tx.list_refresh_tokens(user_id)

    def purge_expired(self) -> tuple[int, int]:
        with self.transaction() as tx:
            return tx.purge_expired(_now_iso())

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.transaction() as tx:
                tx.count_users()
        except Unavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_columns(user: User) -> dict:
    """Mutable user columns, in storage representation."""
    return {
        "email": normalize_email(user.email),
        "hashed_password": user.hashed_password,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "roles": json.dumps(list(user.roles)),
        "is_active": 1 if user.is_active else 0,
        "is_email_verified": 1 if user.is_email_verified else 0,
        "email_verification_token_hash": user.email_verification_token_hash,
        "email_verification_consumed_at": user.email_verification_consumed_at,
        "password_reset_token_hash": user.password_reset_token_hash,
        "password_reset_expires": user.password_reset_expires,
        "mfa_secret": user.mfa_secret,
        "is_mfa_enabled": 1 if user.is_mfa_enabled else 0,
        "mfa_backup_codes": json.dumps(list(user.mfa_backup_codes)),
        "mfa_failed_attempts": user.mfa_failed_attempts,
        "oauth_provider": user.oauth_provider,
        "oauth_subject": user.oauth_subject,
        "last_login_at": user.last_login_at,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        roles=json.loads(row.roles or "[]"),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        email_verification_token_hash=row.email_verification_token_hash,
        email_verification_consumed_at=row.email_verification_consumed_at,
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires=row.password_reset_expires,
        mfa_secret=row.mfa_secret,
        is_mfa_enabled=bool(row.is_mfa_enabled),
        mfa_backup_codes=json.loads(row.mfa_backup_codes or "[]"),
        mfa_failed_attempts=row.mfa_failed_attempts,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
        version=row.version,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )
