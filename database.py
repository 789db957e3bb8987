"""
Database connection module for MongoDB (job history only).

MongoDB is optional. Without MONGO_URI the API runs with in-memory job
state and get_database() returns None.
"""

import logging

import certifi
from motor.motor_asyncio import AsyncIOMotorClient

from config import settings

logger = logging.getLogger("shelfsync")

client: AsyncIOMotorClient = None
db = None


async def connect_to_mongo():
    """Create database connection on startup"""
    global client, db

    if not settings.MONGO_URI:
        raise ValueError("MONGO_URI environment variable is not set")

    client = AsyncIOMotorClient(settings.MONGO_URI, tlsCAFile=certifi.where())
    db = client[settings.DATABASE_NAME]

    # Verify connection by pinging the server
    await client.admin.command("ping")
    logger.info("Connected to MongoDB", extra={"event": "db_connected", "database": settings.DATABASE_NAME})

    await db["sync_jobs"].create_index([("job_id", 1)], name="job_id_unique", unique=True)
    await db["sync_jobs"].create_index(
        [("user_id", 1), ("created_at", -1)],
        name="user_created",
    )
    logger.info(
        "Ensured job history indexes",
        extra={"event": "db_index_created", "collection": "sync_jobs"},
    )


async def close_mongo_connection():
    """Close database connection on shutdown"""
    global client, db

    if client:
        client.close()
        client = None
        db = None
        logger.info("Closed MongoDB connection", extra={"event": "db_disconnected"})


def get_database():
    """Get the database instance, or None when not connected"""
    return db
