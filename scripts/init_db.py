"""
Database initialization script - reconciliation ledger

Run once (or after adding an index) to create collections and indexes:
    python scripts/init_db.py
"""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables before settings are read
load_dotenv()

from reconciler.core.config import settings
from reconciler.db import mongo
from reconciler.db.indexes import create_indexes

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

COLLECTIONS = [
    mongo.PAYMENTS,
    mongo.SUBSCRIPTIONS,
    mongo.USER_SUBSCRIPTION_STATUS,
    mongo.QUARANTINED_EVENTS,
    mongo.LOCKS,
]


async def main():
    """Main initialization"""
    logger.info("=" * 60)
    logger.info(f"  Reconciler Database Setup ({settings.MONGODB_DB_NAME})")
    logger.info("=" * 60 + "\n")

    await mongo.connect_to_mongo()

    try:
        await create_indexes()

        # ==================== VERIFICATION ====================
        logger.info("\n🔍 Verifying indexes...")
        db = mongo.get_database()

        for collection_name in COLLECTIONS + [mongo.USERS]:
            indexes = await db[collection_name].index_information()
            logger.info(f"\n  {collection_name}:")
            for idx_name in indexes.keys():
                if idx_name != "_id_":
                    logger.info(f"    ✅ {idx_name}")

        # ==================== STATS ====================
        logger.info("\n📊 Current documents:")
        for collection_name in COLLECTIONS:
            count = await db[collection_name].count_documents({})
            logger.info(f"  {collection_name}: {count}")

        unresolved = await db[mongo.PAYMENTS].count_documents({"needs_reconciliation": True})
        if unresolved:
            logger.info(f"\n⚠️  {unresolved} payment(s) awaiting manual reconciliation")

        logger.info("\n✅ Database initialization complete!")

    except Exception as e:
        logger.error(f"\n❌ Error: {e}")
        raise

    finally:
        await mongo.close_mongo_connection()

    logger.info("\n" + "=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
