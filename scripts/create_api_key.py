#!/usr/bin/env python3
"""
API Key Management

Issues, lists and revokes caller API keys. A new key's plaintext is
printed once and cannot be recovered afterwards.

Usage:
    # Issue a key
    python3 scripts/create_api_key.py --user-id d95a40f2-1091-4db4-aefe-f889c3a8896b --name "CI runner"

    # List active keys (optionally for one user)
    python3 scripts/create_api_key.py --list --user-id d95a40f2-1091-4db4-aefe-f889c3a8896b

    # Revoke a key by id
    python3 scripts/create_api_key.py --revoke 0b5c3a52-6f7e-4a44-9d8e-5d3c7a1e2f90
"""

import argparse
import asyncio
import sys
from uuid import UUID

from credpool.db.session import close_engine, get_session
from credpool.exceptions import APIKeyNotFoundError
from credpool.observability import setup_logging
from credpool.services.api_key import APIKeyService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage credential pool API keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --user-id u-1 --name "CI runner"
  %(prog)s --list
  %(prog)s --revoke 0b5c3a52-6f7e-4a44-9d8e-5d3c7a1e2f90
        """,
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--list", action="store_true", help="List active keys")
    action.add_argument("--revoke", type=UUID, metavar="KEY_ID", help="Revoke the key with this id")
    parser.add_argument("--user-id", help="User the key authenticates as (filters --list)")
    parser.add_argument("--name", help="Human-readable key name (required to issue a key)")
    return parser


async def run_command(args: argparse.Namespace, service: APIKeyService) -> None:
    """Run one parsed command against the key service and print the result."""
    if args.list:
        keys = await service.list_api_keys(user_id=args.user_id)
        for key in keys:
            last_used = key.last_used_at.isoformat() if key.last_used_at else "never"
            print(f"{key.key_id}  {key.user_id}  {key.key_prefix}...  {key.name}  last used {last_used}")
        print(f"{len(keys)} active key(s)")
        return

    if args.revoke is not None:
        await service.revoke_api_key(args.revoke)
        print(f"Revoked key {args.revoke}")
        return

    generated = await service.create_api_key(user_id=args.user_id, name=args.name)
    print(f"Key id:  {generated.key_id}")
    print(f"User id: {generated.user_id}")
    print(f"API key: {generated.plaintext_key}")
    print("Store this key now; it will not be shown again.")


async def execute(args: argparse.Namespace) -> None:
    try:
        async with get_session() as session:
            await run_command(args, APIKeyService(session))
    finally:
        await close_engine()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if not args.list and args.revoke is None and not (args.user_id and args.name):
        parser.error("--user-id and --name are required to issue a key")

    setup_logging()
    try:
        asyncio.run(execute(args))
    except APIKeyNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
