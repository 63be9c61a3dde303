#!/usr/bin/env python3
"""
authgate -- operator CLI for the credential store.

Runs the same SessionOrchestrator the auth service uses, against the store
configured by AUTH_DB_URL, so administrative actions follow exactly the same
rules (hashing, revocation reasons, lineage) as API calls.

Usage:
  python main.py create-user alice alice@example.com
  python main.py revoke-all 42
  python main.py reset-password alice@example.com
  python main.py deactivate 42
  python main.py lineage <refresh-token>

Environment variables:
  SECRET_KEY    Signing key (required unless DEBUG=true).
  AUTH_DB_URL   SQLAlchemy URL of the credential store.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.models import User
from auth.sessions import SessionOrchestrator
from auth.store import CredentialStore
from auth.tokens import JwtConfig, TokenIssuer
from core.config import get_settings
from core.logging import configure_logging


def _print_reset_delivery(user: User, temporary_password: str) -> None:
    """Operator console delivery: the operator hands the password over in person."""
    print(f"  Temporary password for {user.username}: {temporary_password}")


def _build_orchestrator(store: CredentialStore) -> SessionOrchestrator:
    issuer = TokenIssuer(JwtConfig.from_settings(get_settings()))
    return SessionOrchestrator(store, issuer, reset_delivery=_print_reset_delivery)


def cmd_create_user(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    session = orchestrator.register(args.username, args.email, password)
    print(f"  Created user {session.user.username} (id={session.user.id})")
    return 0


def cmd_revoke_all(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    count = orchestrator.revoke_all(args.user_id)
    print(f"  Revoked {count} refresh token(s) for user {args.user_id}")
    return 0


def cmd_reset_password(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    orchestrator.reset_password(args.email)
    print("  Reset processed.")
    return 0


def cmd_deactivate(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    if not orchestrator.store.set_active(args.user_id, False):
        print(f"  [!] No user with id {args.user_id}")
        return 1
    orchestrator.revoke_all(args.user_id)
    print(f"  Deactivated user {args.user_id} and revoked their sessions")
    return 0


def cmd_lineage(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    for record in orchestrator.lineage(args.token):
        state = record.revoked_reason if record.is_revoked else ("expired" if record.is_expired() else "active")
        print(f"  #{record.id:<6} created {record.created_at}  {state}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="authgate", description="authgate credential store administration")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-user", help="register a new active user")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--password", help="omit to be prompted")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("revoke-all", help="end every session of a user")
    p.add_argument("user_id", type=int)
    p.set_defaults(func=cmd_revoke_all)

    p = sub.add_parser("reset-password", help="issue a temporary password (printed to this console)")
    p.add_argument("email")
    p.set_defaults(func=cmd_reset_password)

    p = sub.add_parser("deactivate", help="deactivate a user and end their sessions")
    p.add_argument("user_id", type=int)
    p.set_defaults(func=cmd_deactivate)

    p = sub.add_parser("lineage", help="show the rotation history of a refresh token's session")
    p.add_argument("token")
    p.set_defaults(func=cmd_lineage)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    store = CredentialStore(settings.auth_db_url)
    try:
        return args.func(_build_orchestrator(store), args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
