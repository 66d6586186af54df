import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from skillchat.config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> None:
    global _client, _database
    # driver limits sit past the per-call deadline so bounded() reports the timeout
    timeout_ms = int(settings.STORE_TIMEOUT_SECONDS * 1000) + 1000
    _client = AsyncIOMotorClient(
        settings.MONGO_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
    )
    _database = _client[settings.MONGO_DB_NAME]
    logger.info("Connected to MongoDB database %s", settings.MONGO_DB_NAME)


async def close_mongo_connection() -> None:
    global _client, _database
    if _client is not None:
        _client.close()
        logger.info("Closed MongoDB connection")
    _client = None
    _database = None


def set_database(database: AsyncIOMotorDatabase) -> None:
    """Install an already-built database handle (tests, scripts)."""
    global _database
    _database = database


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("MongoDB connection is not initialised")
    return _database


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
