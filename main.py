#!/usr/bin/env python3
"""
Passgate -- administrative command line.

Usage:
  python main.py create-user admin@acme.io --admin
  python main.py create-user ada@acme.io --password 'S3cure!pass'
  python main.py deactivate ada@acme.io
  python main.py revoke-sessions ada@acme.io
  python main.py purge
  python main.py serve --host 0.0.0.0 --port 8000

Accounts created here are marked email-verified. Without --password the
password is prompted for (not echoed).

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: sqlite file passgate.db).
  SECRET_KEY    Signing key; required unless DEBUG=true.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.mfa import MfaChallenge
from auth.models import ADMIN_ROLE, DEFAULT_ROLES
from auth.orchestrator import SessionOrchestrator
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from auth.store import UserStore
from core.config import get_settings
from core.errors import AuthError, ValidationFailed
from notify.mailer import build_notifier


def _orchestrator(store: UserStore) -> SessionOrchestrator:
    settings = get_settings()
    tokens = TokenService(store, settings)
    mfa = MfaChallenge(store, tokens, settings)
    recovery = AccountRecovery(store, tokens, build_notifier(settings), settings)
    return SessionOrchestrator(store, tokens, mfa, recovery, settings)


def create_user(store: UserStore, email: str, password: Optional[str], admin: bool) -> int:
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    roles = [*DEFAULT_ROLES, ADMIN_ROLE] if admin else list(DEFAULT_ROLES)
    try:
        user = _orchestrator(store).register(email, password, roles=roles, email_verified=True)
    except ValidationFailed as exc:
        for error in exc.errors:
            print(f"  [!] {error}")
        return 1
    print(f"Created user {user.email} (id={user.id}, roles={', '.join(user.roles)}).")
    return 0


def deactivate(store: UserStore, email: str) -> int:
    with store.transaction() as tx:
        user = tx.find_by_email(email)
        if user is None:
            print(f"  [!] No user with email {email}.")
            return 1
        user.is_active = False
        tx.save(user)
        revoked = tx.revoke_all_refresh_tokens(user.id)
        tx.revoke_mfa_tickets(user.id)
    print(f"Deactivated {user.email}; revoked {revoked} refresh token(s).")
    return 0


def revoke_sessions(store: UserStore, email: str) -> int:
    with store.transaction() as tx:
        user = tx.find_by_email(email)
        if user is None:
            print(f"  [!] No user with email {email}.")
            return 1
        revoked = tx.revoke_all_refresh_tokens(user.id)
    print(f"Revoked {revoked} refresh token(s) for {user.email}.")
    return 0


def purge(store: UserStore) -> int:
    tokens, tickets = store.purge_expired()
    print(f"Purged {tokens} expired refresh token(s) and {tickets} MFA ticket(s).")
    return 0


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="passgate",
        description="Passgate -- session lifecycle service administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create-user", help="Create a verified local account.")
    p_create.add_argument("email")
    p_create.add_argument("--admin", action="store_true", help="Grant the admin role.")
    p_create.add_argument("--password", help="Password (prompted for when omitted).")

    p_deactivate = sub.add_parser("deactivate", help="Deactivate an account and sign it out.")
    p_deactivate.add_argument("email")

    p_revoke = sub.add_parser("revoke-sessions", help="Revoke every refresh token of an account.")
    p_revoke.add_argument("email")

    sub.add_parser("purge", help="Delete expired refresh tokens and MFA tickets.")

    p_serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn.")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return serve(args.host, args.port, args.reload)

    store = UserStore()
    try:
        if args.command == "create-user":
            return create_user(store, args.email, args.password, args.admin)
        if args.command == "deactivate":
            return deactivate(store, args.email)
        if args.command == "revoke-sessions":
            return revoke_sessions(store, args.email)
        return purge(store)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
