#!/usr/bin/env python3
"""
Storefront Identity -- operator commands.

Usage:
  python main.py create-admin admin@example.com
  python main.py create-admin admin@example.com --password-stdin < secret.txt
  python main.py purge-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity database (default sqlite:///storefront_identity.db).
  SECRET_KEY    Required unless DEBUG=true. Not used by these commands, but
                Settings validates it on load like the API does.
"""

import argparse
import getpass
import sys

from auth.models import Role
from auth.store import RefreshTokenStore, UserStore, open_engine
from auth.tokens import MAX_PASSWORD_BYTES, hash_password
from core.config import get_settings


def create_admin(db_url: str, email: str, password: str) -> int:
    """Create an ADMIN account, or promote and re-password an existing one.

    Returns a process exit code.
    """
    email = email.strip().lower()
    if "@" not in email:
        print(f"  [!] '{email}' doesn't look like an email address.")
        return 2
    if len(password) < 6:
        print("  [!] Password must be at least 6 characters.")
        return 2
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return 2

    engine = open_engine(db_url)
    try:
        store = UserStore(engine)
        user = store.upsert_by_email(
            email,
            hashed_password=hash_password(password),
            roles=[Role.USER.value, Role.ADMIN.value],
        )
    finally:
        engine.dispose()
    print(f"  Admin ready: {user.email} ({user.id})")
    return 0


def purge_tokens(db_url: str) -> int:
    engine = open_engine(db_url)
    try:
        removed = RefreshTokenStore(engine).purge_expired()
    finally:
        engine.dispose()
    print(f"  Purged {removed} expired refresh token(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Storefront Identity operator commands.")
    parser.add_argument("--db", help="Database URL (defaults to DATABASE_URL from settings).")
    sub = parser.add_subparsers(dest="command", required=True)

    p_admin = sub.add_parser("create-admin", help="Create or promote an admin account.")
    p_admin.add_argument("email")
    p_admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from stdin instead of prompting.",
    )

    sub.add_parser("purge-tokens", help="Delete expired refresh tokens.")

    args = parser.parse_args(argv)
    db_url = args.db or get_settings().database_url

    if args.command == "create-admin":
        if args.password_stdin:
            password = sys.stdin.readline().rstrip("\n")
        else:
            password = getpass.getpass("Password: ")
            if getpass.getpass("Repeat password: ") != password:
                print("  [!] Passwords do not match.")
                return 2
        return create_admin(db_url, args.email, password)
    return purge_tokens(db_url)


if __name__ == "__main__":
    sys.exit(main())
