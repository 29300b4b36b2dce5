import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None


class _DbProxy:
    """
    Transparent proxy to the Motor database.
    Lets services do `from database import db` BEFORE connect_db().
    db.collection → resolved against _db_instance at call time.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


def get_db():
    return _db_instance


def use_database(instance) -> None:
    """Points the proxy at an already-built database (tests, scripts)."""
    global _db_instance
    _db_instance = instance


async def connect_db():
    global client, _db_instance
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        tz_aware=True,
    )
    _db_instance = client[settings.DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


async def create_indexes():
    collections_to_index = {
        "delivery_orders": [
            IndexModel([("order_id", 1)], unique=True),
            IndexModel([("user_id", 1)]),
            IndexModel([("assigned_agent_id", 1), ("status", 1)]),
            IndexModel([("preferred_agent_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("created_at", 1)]),
            IndexModel([("pending_effects.effect_id", 1)], sparse=True),
        ],
        "order_events": [
            IndexModel([("event_id", 1)], unique=True),
            IndexModel([("order_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "delivery_agents": [
            IndexModel([("agent_id", 1)], unique=True),
            IndexModel([("user_id", 1)], unique=True),
            IndexModel([("agent_code", 1)], unique=True),
            IndexModel([("service_area_id", 1)]),
            IndexModel([("is_active", 1), ("is_verified", 1)]),
        ],
        "agent_availability": [
            IndexModel([("agent_id", 1)], unique=True),
            IndexModel([("status", 1)]),
        ],
        "agent_order_responses": [
            IndexModel([("response_id", 1)], unique=True),
            IndexModel([("order_id", 1)]),
            IndexModel([("agent_id", 1)]),
        ],
        "delivery_tracking": [
            IndexModel([("order_id", 1), ("timestamp", -1)]),
        ],
        "delivery_pricing": [
            IndexModel([("service_id", 1)], sparse=True),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
