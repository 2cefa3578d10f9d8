"""
Database connection module for MongoDB Atlas
"""

import logging

import certifi
from motor.motor_asyncio import AsyncIOMotorClient

from config import settings

logger = logging.getLogger("vendor_discovery")

client: AsyncIOMotorClient = None
db = None


async def ensure_indexes(database):
    """Create the indexes the discovery storage queries rely on."""
    await database["discovery_jobs"].create_index(
        [("is_active", 1), ("paused", 1), ("retired", 1)],
        name="active_jobs",
    )
    await database["discovery_runs"].create_index(
        [("job_id", 1), ("run_date", 1)],
        name="job_run_date",
    )
    await database["discovery_runs"].create_index(
        [("run_date", 1)],
        name="run_date",
    )
    await database["staged_vendors"].create_index(
        [("discovery_job_id", 1), ("website_verified", 1)],
        name="job_verification",
    )
    await database["discovery_conversations"].create_index(
        [("area", 1), ("specialty", 1)],
        name="area_specialty_unique",
        unique=True,
    )
    logger.info(
        "Ensured discovery indexes",
        extra={"event": "db_index_created", "collections": [
            "discovery_jobs", "discovery_runs", "staged_vendors", "discovery_conversations",
        ]},
    )


async def connect_to_mongo():
    """Create database connection on startup"""
    global client, db

    if not settings.MONGO_URI:
        raise ValueError("MONGO_URI environment variable is not set")

    client = AsyncIOMotorClient(settings.MONGO_URI, tlsCAFile=certifi.where())
    db = client[settings.DATABASE_NAME]

    # Verify connection by pinging the server
    await client.admin.command("ping")
    logger.info("Connected to MongoDB Atlas", extra={"event": "db_connected", "database": settings.DATABASE_NAME})

    await ensure_indexes(db)


async def close_mongo_connection():
    """Close database connection on shutdown"""
    global client

    if client:
        client.close()
        logger.info("Closed MongoDB connection", extra={"event": "db_disconnected"})


def get_database():
    """Get the database instance"""
    return db
