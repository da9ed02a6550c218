#!/usr/bin/env python3
"""
AniRec -- operator commands for the credential store.

Usage:
  python main.py purge-tokens            Delete expired refresh tokens now
  python main.py revoke-sessions EMAIL   Revoke every session of one user
  python main.py generate-secrets        Print fresh JWT/encryption secrets for .env

Configuration is read from the environment / .env exactly like the API
(DATABASE_URL, JWT_SECRET, JWT_REFRESH_SECRET, ENCRYPTION_KEY, ...).
"""

import argparse
import secrets
import sys

from auth.store import CredentialStore
from core.config import load_settings
from core.errors import ConfigurationError


def _generate_secrets() -> int:
    print(f"JWT_SECRET={secrets.token_hex(32)}")
    print(f"JWT_REFRESH_SECRET={secrets.token_hex(32)}")
    # 16 random bytes as hex -> exactly 32 characters
    print(f"ENCRYPTION_KEY={secrets.token_hex(16)}")
    return 0


def _purge_tokens(store: CredentialStore) -> int:
    removed = store.purge_expired_refresh_tokens()
    print(f"  Removed {removed} expired refresh token(s).")
    return 0


def _revoke_sessions(store: CredentialStore, email: str) -> int:
    user = store.find_user_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        return 1
    count = store.delete_all_for_user(user.id)
    print(f"  Revoked {count} session(s) for {user.email}.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="AniRec credential store maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("purge-tokens", help="delete expired refresh tokens")
    revoke = sub.add_parser("revoke-sessions", help="revoke all sessions of a user")
    revoke.add_argument("email")
    sub.add_parser("generate-secrets", help="print fresh secrets for .env")
    args = parser.parse_args(argv)

    if args.command == "generate-secrets":
        return _generate_secrets()

    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"  [!] Configuration error: {e}")
        return 2

    store = CredentialStore(settings.database_url)
    try:
        if args.command == "purge-tokens":
            return _purge_tokens(store)
        return _revoke_sessions(store, args.email)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
