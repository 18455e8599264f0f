# campaign_engine/config/database.py - Motor connection and campaign engine indexes

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import logging
from .settings import settings

logger = logging.getLogger(__name__)

# Global database client
_client: AsyncIOMotorClient = None
_database: AsyncIOMotorDatabase = None


async def connect_to_mongo():
    """Create database connection"""
    global _client, _database

    try:
        logger.info("🔌 Connecting to MongoDB...")

        _client = AsyncIOMotorClient(
            settings.mongodb_url,
            **settings.get_mongodb_connection_options()
        )

        _database = _client[settings.database_name]

        # Test connection
        await _database.command("ping")
        logger.info("✅ Connected to MongoDB successfully")

    except Exception as e:
        logger.error(f"❌ Failed to connect to MongoDB: {e}")
        raise


def get_database() -> AsyncIOMotorDatabase:
    """Get database instance"""
    if _database is None:
        raise RuntimeError("Database not initialized. Call connect_to_mongo() first.")
    return _database


async def close_mongo_connection():
    """Close database connection"""
    global _client, _database
    if _client:
        _client.close()
        _client = None
        _database = None
        logger.info("🔌 MongoDB connection closed")


async def create_indexes():
    """Create the indexes the campaign engine relies on"""
    db = get_database()
    logger.info("📊 Creating campaign engine indexes...")

    # ============================================================================
    # CAMPAIGNS
    # ============================================================================
    await db.automation_campaigns.create_index("campaign_id", unique=True)
    await db.automation_campaigns.create_index("status")
    await db.automation_campaigns.create_index([("created_by", 1), ("created_at", -1)])

    # ============================================================================
    # ENROLLMENTS - one per (campaign, lead)
    # ============================================================================
    await db.campaign_enrollments.create_index("enrollment_id", unique=True)
    await db.campaign_enrollments.create_index([("campaign_id", 1), ("lead_id", 1)], unique=True)
    await db.campaign_enrollments.create_index([("campaign_id", 1), ("status", 1)])
    await db.campaign_enrollments.create_index("lead_id")

    # ============================================================================
    # EXECUTIONS - the scheduler queue
    # ============================================================================
    await db.campaign_executions.create_index("execution_id", unique=True)
    # claim_key only exists while an execution is pending/executing
    await db.campaign_executions.create_index("claim_key", unique=True, sparse=True)
    await db.campaign_executions.create_index([("status", 1), ("scheduled_for", 1)])
    await db.campaign_executions.create_index([("enrollment_id", 1), ("status", 1)])
    await db.campaign_executions.create_index([("campaign_id", 1), ("status", 1)])

    # ============================================================================
    # ENGAGEMENT EVENTS
    # ============================================================================
    await db.campaign_events.create_index([("campaign_id", 1), ("lead_id", 1), ("event_type", 1), ("occurred_at", -1)])

    # ============================================================================
    # COLLABORATOR COLLECTIONS
    # ============================================================================
    await db.leads.create_index("lead_id", unique=True)
    await db.leads.create_index("assigned_to")
    await db.leads.create_index("tags")
    await db.leads.create_index("status")
    await db.leads.create_index("source")
    await db.tags.create_index("tag_id", unique=True)
    await db.whatsapp_templates.create_index("template_id", unique=True)
    await db.whatsapp_messages.create_index([("lead_id", 1), ("timestamp", -1)])
    await db.users.create_index("email", unique=True)

    logger.info("✅ Campaign engine indexes created")
