"""
Account Trust Database Initialization

Idempotent index creation for the MongoDB backend. Runs on every startup
through MongoStorageBackend.initialize(); can also be run by hand:

    python -m account_trust.db_init
    python -m account_trust.db_init --dry-run
"""

import asyncio
import logging
from typing import List, Tuple

from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # accounts
    ("accounts", [("id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("accounts", [("username", 1)], {"unique": True, "name": "idx_username_unique"}),
    ("accounts", [("consent.guardian_token", 1)], {"sparse": True, "name": "idx_guardian_token"}),
    ("accounts", [("consent.guardian_email", 1)], {"sparse": True, "name": "idx_guardian_email"}),
    ("accounts", [("status", 1)], {"name": "idx_status"}),
    ("accounts", [("created_at", -1)], {"name": "idx_account_created"}),

    # projects
    ("projects", [("id", 1)], {"unique": True, "name": "idx_project_id_unique"}),
    ("projects", [("account_id", 1)], {"name": "idx_project_account"}),

    # consent_requests
    ("consent_requests", [("token", 1)], {"unique": True, "name": "idx_consent_token_unique"}),
    ("consent_requests", [("account_id", 1), ("created_at", -1)], {"name": "idx_consent_account_created"}),

    # sessions - TTL index is hygiene only, reads filter on expires_at themselves
    ("sessions", [("token", 1)], {"unique": True, "name": "idx_session_token_unique"}),
    ("sessions", [("expires_at", 1)], {"expireAfterSeconds": 0, "name": "idx_session_expiry_ttl"}),

    # admin_settings
    ("admin_settings", [("type", 1)], {"unique": True, "name": "idx_admin_settings_type"}),

    # admin_audit
    ("admin_audit", [("timestamp", -1)], {"name": "idx_audit_timestamp"}),
    ("admin_audit", [("action", 1), ("timestamp", -1)], {"name": "idx_audit_action_timestamp"}),
]


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    """Create an index if it doesn't exist."""
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


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every required index. Safe to run repeatedly."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        result = await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run)
        logger.info(result)
        results.append(result)
    return results


async def run_init(dry_run: bool = False):
    """Run the index initialization against the configured database."""
    from database import create_mongo_client, check_db_connection
    from .config import EngineSettings

    settings = EngineSettings.from_env()
    client, db = create_mongo_client(settings)

    ok, error = await check_db_connection(client, db)
    if not ok:
        logger.error(f"Init aborted: {error}")
        client.close()
        return

    logger.info(f"Database: {settings.db_name}")
    logger.info(f"Dry Run: {dry_run}")
    await ensure_indexes(db, dry_run)
    client.close()
    logger.info("Account trust DB init completed")


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Account Trust Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
