"""
Entitlements Database Initialization Script

Rules:
1. Environment Guard - production requires ENTITLEMENTS_INIT_CONFIRM=YES
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy profile creation - profiles are created at signup, not here
5. Safe index creation - handles "index already exists" gracefully
6. Dry-run mode - --dry-run prints what it would do
7. Version stamp - tracks init version

The unique account_id index is what makes concurrent create_if_absent
calls converge on one profile document.

Usage:
    CLI one-off: python -m entitlements.db_init
    With dry-run: python -m entitlements.db_init --dry-run
    In production: APP_ENV=production ENTITLEMENTS_INIT_CONFIRM=YES python -m entitlements.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Tuple

from pymongo.errors import CollectionInvalid, OperationFailure

from .config import PROFILES_COLLECTION, META_COLLECTION

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    PROFILES_COLLECTION,
    META_COLLECTION,
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    (PROFILES_COLLECTION, [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    (PROFILES_COLLECTION, [("is_premium", 1)], {"name": "idx_is_premium"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("ENTITLEMENTS_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: ENTITLEMENTS_INIT_CONFIRM=YES\n"
                f"Current value: ENTITLEMENTS_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "entitlements_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(db, dry_run: bool = False) -> List[str]:
    """Create collections, indexes and the version stamp. Returns the log lines."""
    results = []

    logger.info("=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))
        logger.info(results[-1])

    logger.info("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))
        logger.info(results[-1])

    logger.info("=== Version Stamp ===")
    results.append(await update_version_stamp(db, dry_run))
    logger.info(results[-1])

    return results


async def _main(dry_run: bool) -> int:
    from database import check_db_connection, get_client, get_db

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        logger.error(env_message)
        return 1

    try:
        client = get_client()
    except ValueError as e:
        logger.error(str(e))
        return 1

    logger.info(f"Database: {os.environ['DB_NAME']}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    connected, _ = await check_db_connection()
    if not connected:
        client.close()
        return 1

    await run_init(get_db(), dry_run=dry_run)
    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Entitlements DB init completed")
    logger.info("=" * 50)
    return 0


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Entitlements Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m entitlements.db_init

    # Dry run (no changes)
    python -m entitlements.db_init --dry-run

    # Production
    APP_ENV=production ENTITLEMENTS_INIT_CONFIRM=YES python -m entitlements.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    sys.exit(asyncio.run(_main(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
