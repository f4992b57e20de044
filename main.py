#!/usr/bin/env python3
"""
Skillmap gateway -- administration CLI.

Manages the user directory and API keys directly against the relational
store, for operators and for bootstrapping a fresh deployment.

Usage:
  python main.py users add USER_ID EMAIL
  python main.py users show EMAIL
  python main.py users delete USER_ID
  python main.py keys create USER_ID NAME [--expires-in-days N]
  python main.py keys list USER_ID [--json]
  python main.py keys revoke USER_ID KEY_ID

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the relational store
                (default: sqlite:///./skillmap_auth.db). --db-url overrides it.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.api_keys import ApiKeyManager
from auth.store import ApiKeyStore, UserStore, create_auth_engine
from core.config import get_settings


def _fmt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


def _cmd_users(args, users: UserStore) -> int:
    if args.action == "add":
        try:
            user = users.create_user(args.user_id, args.email)
        except IntegrityError:
            print(f"  [!] A user with id '{args.user_id}' or email '{args.email}' already exists.")
            return 1
        print(f"  Created user {user.user_id} <{user.email}>")
        return 0

    if args.action == "show":
        user = users.get_user_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email '{args.email}'.")
            return 1
        state = "deleted" if user.is_deleted else "active"
        print(f"  {user.user_id} <{user.email}> {state}, created {_fmt(user.created_at)}")
        return 0

    # delete
    if not users.mark_deleted(args.user_id):
        print(f"  [!] No user with id '{args.user_id}'.")
        return 1
    print(f"  User {args.user_id} marked deleted. Their sessions and keys stop working immediately.")
    return 0


def _cmd_keys(args, users: UserStore, manager: ApiKeyManager) -> int:
    if args.action == "create":
        owner = users.get_user_by_id(args.user_id)
        if owner is None or owner.is_deleted:
            print(f"  [!] No active user with id '{args.user_id}'.")
            return 1
        limit = get_settings().api_key_max_per_user
        if manager.count_active(args.user_id) >= limit:
            print(f"  [!] User already has {limit} active keys. Revoke one first.")
            return 1
        raw_key, api_key = manager.generate(args.user_id, args.name, expires_in_days=args.expires_in_days)
        print(f"  Created key {api_key.id} ({api_key.name})")
        print(f"  {raw_key}")
        print("  Store it now -- it cannot be shown again.")
        return 0

    if args.action == "list":
        keys = manager.list(args.user_id)
        if args.json:
            print(
                json.dumps(
                    [
                        {
                            "id": k.id,
                            "name": k.name,
                            "key_prefix": k.key_prefix,
                            "created_at": k.created_at.isoformat(),
                            "expires_at": k.expires_at.isoformat() if k.expires_at else None,
                            "last_used_at": k.last_used_at.isoformat() if k.last_used_at else None,
                            "is_active": k.is_active,
                        }
                        for k in keys
                    ],
                    indent=2,
                )
            )
            return 0
        if not keys:
            print(f"  No API keys for user {args.user_id}.")
            return 0
        for k in keys:
            state = "active" if k.is_active else "revoked"
            print(
                f"  {k.id}  {k.key_prefix}...  {k.name:<24} {state:<8} "
                f"created {_fmt(k.created_at)}  last used {_fmt(k.last_used_at)}"
            )
        return 0

    # revoke
    if not manager.revoke(args.key_id, args.user_id):
        print(f"  [!] No active key '{args.key_id}' owned by user {args.user_id}.")
        return 1
    print(f"  Key {args.key_id} revoked.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skillmap-admin",
        description="Manage Skillmap gateway users and API keys.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py users add user_01H8 alice@example.com
  python main.py keys create user_01H8 "CI pipeline" --expires-in-days 90
  python main.py keys list user_01H8 --json
  python main.py keys revoke user_01H8 0b6f0c0e-5d1e-4a57-9f7e-3f1f2c1a9d42
        """,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the relational store (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    users = sub.add_parser("users", help="Manage the user directory")
    users_sub = users.add_subparsers(dest="action", required=True)
    add = users_sub.add_parser("add", help="Create a user")
    add.add_argument("user_id")
    add.add_argument("email")
    show = users_sub.add_parser("show", help="Look a user up by email")
    show.add_argument("email")
    delete = users_sub.add_parser("delete", help="Soft-delete a user")
    delete.add_argument("user_id")

    keys = sub.add_parser("keys", help="Manage API keys")
    keys_sub = keys.add_subparsers(dest="action", required=True)
    create = keys_sub.add_parser("create", help="Issue a new API key")
    create.add_argument("user_id")
    create.add_argument("name")
    create.add_argument(
        "--expires-in-days",
        type=int,
        default=None,
        metavar="N",
        help="Key lifetime in days (default: never expires)",
    )
    list_ = keys_sub.add_parser("list", help="List a user's keys")
    list_.add_argument("user_id")
    list_.add_argument("--json", action="store_true", help="Output structured JSON")
    revoke = keys_sub.add_parser("revoke", help="Revoke a key")
    revoke.add_argument("user_id")
    revoke.add_argument("key_id")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")

    engine = create_auth_engine(args.db_url or get_settings().database_url)
    users = UserStore(engine)
    try:
        if args.command == "users":
            return _cmd_users(args, users)
        return _cmd_keys(args, users, ApiKeyManager(ApiKeyStore(engine), users))
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
