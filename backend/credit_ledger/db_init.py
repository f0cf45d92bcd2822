"""
Credit Ledger Database Initialization Script

Rules:
1. Production guard - ENVIRONMENT=production requires CREDIT_LEDGER_INIT_CONFIRM=YES
2. Idempotent - safe to run repeatedly
3. Non-destructive - never drops or rewrites documents
4. Dry-run mode - --dry-run prints what it would do
5. Version stamp in credit_ledger_meta

The unique indexes on payment_orders.provider_order_id,
payment_orders.provider_payment_id and webhook_events.provider_event_id
back the exactly-once crediting guarantees; do not run the service
without them.

Usage:
    python -m credit_ledger.db_init
    python -m credit_ledger.db_init --dry-run
    ENVIRONMENT=production CREDIT_LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "users",
    "operators",
    "credit_transactions",
    "payment_orders",
    "webhook_events",
    "credit_ledger_meta",
]

# Only string ids participate in uniqueness; rows without a provider id yet are ignored
_HAS_STRING = {"$type": "string"}

# (collection, keys, options)
REQUIRED_INDEXES = [
    ("users", [("id", 1)], {"unique": True, "name": "idx_users_id_unique"}),
    ("users", [("razorpay_subscription_id", 1)], {"sparse": True, "name": "idx_users_subscription"}),
    ("operators", [("id", 1)], {"unique": True, "name": "idx_operators_id_unique"}),

    ("credit_transactions", [("account_id", 1), ("created_at", -1)], {"name": "idx_account_created"}),
    ("credit_transactions", [("feature", 1), ("action", 1), ("created_at", -1)], {"name": "idx_feature_action_created"}),

    ("payment_orders", [("id", 1)], {"unique": True, "name": "idx_order_id_unique"}),
    ("payment_orders", [("provider_order_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"provider_order_id": _HAS_STRING},
        "name": "idx_provider_order_id_unique"
    }),
    ("payment_orders", [("provider_payment_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"provider_payment_id": _HAS_STRING},
        "name": "idx_provider_payment_id_unique"
    }),
    ("payment_orders", [("account_id", 1), ("plan_id", 1), ("status", 1), ("created_at", -1)], {"name": "idx_order_reuse"}),

    ("webhook_events", [("provider_event_id", 1)], {"unique": True, "name": "idx_provider_event_id_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message)."""
    environment = os.environ.get("ENVIRONMENT", "development")

    if environment.lower() == "production":
        confirm = os.environ.get("CREDIT_LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDIT_LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: CREDIT_LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {environment}"


async def ensure_collection(db, name: str, existing: List[str], dry_run: bool = False) -> str:
    if name in existing:
        return f"  [SKIP] Collection '{name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{name}'"

    try:
        await db.create_collection(name)
        return f"  [CREATE] Created collection '{name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{name}' already exists (race)"


async def ensure_index(db, collection_name: str, keys: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    existing = await collection.index_information()
    if index_name in existing:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(keys, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def stamp_version(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.credit_ledger_meta.update_one(
        {"_id": "credit_ledger_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def initialize(db, dry_run: bool = False) -> List[str]:
    """Create missing collections and indexes on db. Returns the report lines."""
    report = ["=== Collections ==="]
    existing = await db.list_collection_names()
    for name in REQUIRED_COLLECTIONS:
        report.append(await ensure_collection(db, name, existing, dry_run))

    report.append("=== Indexes ===")
    for collection_name, keys, options in REQUIRED_INDEXES:
        report.append(await ensure_index(db, collection_name, keys, options, dry_run))

    report.append("=== Version Stamp ===")
    report.append(await stamp_version(db, dry_run))
    return report


async def run_init(dry_run: bool = False):
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error(env_message)
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name} (dry run: {dry_run})")

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        for line in await initialize(client[db_name], dry_run):
            logger.info(line)
    finally:
        client.close()

    logger.info("SUCCESS: credit ledger DB init completed")


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Credit Ledger Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
