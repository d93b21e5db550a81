#!/usr/bin/env python3
"""
Kiro Account Import

Bulk-imports an export of the Kiro account manager into the pool.
Only records with an active status and a refresh token are imported;
accounts already in the pool (same user id or machine id) are skipped.

Usage:
    # Import private accounts for one user
    python3 scripts/import_kiro_accounts.py accounts.json --owner d95a40f2-1091-4db4-aefe-f889c3a8896b

    # Import into the shared pool
    python3 scripts/import_kiro_accounts.py accounts.json --owner admin --shared
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from credpool.config import settings
from credpool.db.session import close_engine, get_session_factory
from credpool.observability import get_logger, setup_logging
from credpool.services.account_store import SQLAccountStore
from credpool.services.legacy_import import ImportSummary, LegacyImporter
from credpool.services.pool_manager import CredentialPoolManager
from credpool.services.token_refresh import build_refreshers

logger = get_logger(__name__)


def load_records(path: Path) -> list[Any]:
    """Read an export; a single JSON object is treated as one record."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    return payload if isinstance(payload, list) else [payload]


async def run_import(records: list[Any], owner: str, shared: bool) -> ImportSummary:
    manager = CredentialPoolManager.from_settings(
        store=SQLAccountStore(get_session_factory()),
        refreshers=build_refreshers(settings),
        settings=settings,
    )
    await manager.start()
    try:
        return await LegacyImporter(manager).import_batch(
            records, owner_user_id=owner, is_shared=shared
        )
    finally:
        await manager.close()
        await close_engine()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Import Kiro account-manager exports into the credential pool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 scripts/import_kiro_accounts.py accounts.json --owner USER_ID
  python3 scripts/import_kiro_accounts.py accounts.json --owner admin --shared
        """,
    )
    parser.add_argument("json_file", type=Path, help="Exported accounts (JSON array)")
    parser.add_argument("--owner", required=True, help="User id that will own the accounts")
    parser.add_argument(
        "--shared", action="store_true", help="Make imported accounts available to every user"
    )
    args = parser.parse_args()

    setup_logging()

    try:
        records = load_records(args.json_file)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("import_file_unreadable", path=str(args.json_file), error=str(e))
        sys.exit(1)

    logger.info("import_file_loaded", path=str(args.json_file), records=len(records))
    summary = asyncio.run(run_import(records, args.owner, args.shared))

    print(
        f"Import complete: imported={summary.imported}, skipped={summary.skipped}, "
        f"failed={summary.failed}, filtered={summary.filtered}"
    )
    sys.exit(1 if summary.failed else 0)


if __name__ == "__main__":
    main()
