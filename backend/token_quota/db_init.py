"""
Token Quota Database Bootstrap

Creates the collections and indexes the quota service relies on (the
unique indexes are what make account creation, purchase creation and
payment ids idempotent) and stamps the schema version.

The same bootstrap runs on app startup and from the command line. It is
idempotent and never drops anything. Accounts are created lazily on
first use, not here.

Usage:
    python -m token_quota.db_init
    python -m token_quota.db_init --dry-run
    ENVIRONMENT=production TOKEN_QUOTA_INIT_CONFIRM=YES python -m token_quota.db_init
"""

import os
import sys
import asyncio
import logging
from typing import List, Tuple

from pymongo.errors import CollectionInvalid

from token_quota import __version__
from token_quota.timeutil import utc_now, to_iso

logger = logging.getLogger(__name__)

INIT_VERSION = f"v{__version__}"

REQUIRED_COLLECTIONS = [
    "quota_accounts",
    "usage_records",
    "pending_purchases",
    "subscriptions",
    "token_quota_meta",
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # quota_accounts: one account per owner and tier
    ("quota_accounts", [("owner_id", 1), ("tier", 1)], {"unique": True, "name": "idx_owner_tier_unique"}),

    # usage_records
    ("usage_records", [("id", 1)], {"unique": True, "name": "idx_usage_id_unique"}),
    ("usage_records", [("owner_id", 1), ("created_at", -1)], {"name": "idx_owner_created"}),

    # pending_purchases
    ("pending_purchases", [("order_id", 1), ("owner_id", 1)], {"unique": True, "name": "idx_order_owner_unique"}),
    ("pending_purchases", [("status", 1), ("expires_at", 1)], {"name": "idx_status_expires"}),
    ("pending_purchases", [("payment_id", 1)], {"unique": True, "sparse": True, "name": "idx_payment_id_unique"}),
    ("pending_purchases", [("owner_id", 1), ("created_at", -1)], {"name": "idx_owner_created"}),

    # subscriptions (read by the entitlement resolver)
    ("subscriptions", [("owner_id", 1)], {"name": "idx_subscription_owner"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("ENVIRONMENT", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("TOKEN_QUOTA_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: TOKEN_QUOTA_INIT_CONFIRM=YES\n"
                f"Current value: TOKEN_QUOTA_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def bootstrap(db, dry_run: bool = False) -> List[str]:
    """
    Bring collections, indexes and the version stamp up to date.

    Returns:
        One line per change made (or, with dry_run, per change that would
        be made). An up-to-date database returns an empty list.
    """
    actions = []
    existing = set(await db.list_collection_names())
    prefix = "would create" if dry_run else "created"

    for collection_name in REQUIRED_COLLECTIONS:
        if collection_name in existing:
            continue
        if not dry_run:
            try:
                await db.create_collection(collection_name)
            except CollectionInvalid:
                continue  # created concurrently
        actions.append(f"{prefix} collection {collection_name}")

    for collection_name, index_spec, options in REQUIRED_INDEXES:
        if dry_run and collection_name not in existing:
            indexes = {}
        else:
            indexes = await db[collection_name].index_information()
        if options["name"] in indexes:
            continue
        if not dry_run:
            await db[collection_name].create_index(index_spec, **options)
        actions.append(f"{prefix} index {options['name']} on {collection_name}")

    stamp = await db.token_quota_meta.find_one({"_id": "token_quota_init"}) if "token_quota_meta" in existing else None
    if not stamp or stamp.get("version") != INIT_VERSION:
        if not dry_run:
            await db.token_quota_meta.update_one(
                {"_id": "token_quota_init"},
                {"$set": {"version": INIT_VERSION, "applied_at": to_iso(utc_now())}},
                upsert=True
            )
        actions.append(f"{'would stamp' if dry_run else 'stamped'} version {INIT_VERSION}")

    return actions


async def ensure_indexes(db) -> None:
    """Startup hook: run the bootstrap and log what changed."""
    for action in await bootstrap(db):
        logger.info(f"Token quota bootstrap: {action}")


async def run_init(dry_run: bool = False) -> int:
    """Command line bootstrap against the configured database. Returns the exit code."""
    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        return 1

    from database import client, db, DB_NAME, check_db_connection

    db_ok, db_error = await check_db_connection()
    if not db_ok:
        return 1

    logger.info(f"Bootstrapping {DB_NAME} (dry run: {dry_run})")
    try:
        actions = await bootstrap(db, dry_run=dry_run)
    finally:
        client.close()

    for action in actions:
        logger.info(f"  {action}")
    if not actions:
        logger.info("  already up to date")
    return 0


def main(argv=None):
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Create token quota collections and indexes")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args(argv)

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
