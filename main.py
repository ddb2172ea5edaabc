#!/usr/bin/env python3
"""
TaskNest auth -- operator command line.

Usage:
  python main.py bootstrap-admin --email admin@example.com --name "Ops Admin"
  python main.py purge-expired

Commands:
  bootstrap-admin   Create the first admin account. Prompts for the password
                    (never taken from argv, so it stays out of shell history).
                    Does nothing if an active admin already exists.
  purge-expired     Delete expired refresh, reset and invite rows once. The
                    API server does the same on a timer.

Configuration is read from the environment / .env (see core/config.py).
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from audit.models import AuditAction
from audit.recorder import AuditRecorder, make_audit_engine
from auth.errors import CredentialError
from auth.sessions import SessionManager
from auth.tokens import BCRYPT_MAX_BYTES
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 8


def _prompt_password() -> Optional[str]:
    """Ask twice; return None (after explaining why) if the entries are unusable."""
    password = getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        print(f"  [!] Password must be at most {BCRYPT_MAX_BYTES} bytes.")
        return None
    if getpass.getpass("  Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def bootstrap_admin(sessions: SessionManager, audit: AuditRecorder, email: str, name: str) -> int:
    """Create the first admin. Returns a process exit code."""
    credentials = sessions.credentials
    if credentials.count_active_admins() > 0:
        print("  Admin user already exists, skipping.")
        return 0
    existing = credentials.find_by_email(email)
    if existing is not None:
        print(f"  [!] A user with email {existing.email} already exists (role: {existing.role}).")
        return 1

    password = _prompt_password()
    if password is None:
        return 1

    admin = credentials.create_principal(
        email=email,
        name=name,
        plaintext=password,
        role="admin",
        department="Management",
        position="System Administrator",
    )
    audit.record(admin.id, AuditAction.USER_CREATE, "User", admin.id, details={"bootstrap": True})
    print(f"  Admin user created: {admin.email} (id {admin.id}).")
    return 0


def purge_expired(sessions: SessionManager) -> int:
    tokens, invites = sessions.purge_expired()
    print(f"  Purged {tokens} expired token(s) and {invites} expired invite(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tasknest-auth",
        description="Operator commands for the TaskNest credential service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py bootstrap-admin --email admin@example.com --name "Ops Admin"
  DATABASE_URL=sqlite:////var/lib/tasknest/auth.db python main.py purge-expired
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    boot = sub.add_parser("bootstrap-admin", help="Create the first admin account")
    boot.add_argument("--email", required=True, help="Admin email address")
    boot.add_argument("--name", default="Super Admin", help="Display name (default: Super Admin)")

    sub.add_parser("purge-expired", help="Delete expired token and invite rows")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    audit = AuditRecorder(make_audit_engine(settings.database_url))
    sessions = SessionManager.from_settings(settings, audit)
    try:
        if args.command == "bootstrap-admin":
            return bootstrap_admin(sessions, audit, args.email, args.name)
        return purge_expired(sessions)
    except CredentialError as exc:
        print(f"  [!] {exc.message} ({exc.error_code})")
        return 1
    finally:
        sessions.close()
        audit.close()
        sessions.credentials.close()


if __name__ == "__main__":
    sys.exit(main())
