"""
Motor connection handling.

The app lifespan owns one Database for the process; scheduled jobs open
their own through get_db_context() so they can run from any worker.
Indexes are created by CreditServices.ensure_indexes(), not here.
"""
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
import logging
from contextlib import asynccontextmanager
from typing import Optional

from assignsavvy.config import MONGO_URL, DB_NAME, MONGO_TIMEOUT_MS

logger = logging.getLogger(__name__)

APP_NAME = "assignsavvy-credits"


class Database:
    def __init__(self, mongo_url: str = MONGO_URL, db_name: str = DB_NAME, timeout_ms: int = MONGO_TIMEOUT_MS):
        self.mongo_url = mongo_url
        self.db_name = db_name
        self.timeout_ms = timeout_ms
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self):
        """Open the client and ping the server. Returns the database handle."""
        self.client = AsyncIOMotorClient(
            self.mongo_url,
            serverSelectionTimeoutMS=self.timeout_ms,
            appname=APP_NAME,
        )
        self.db = self.client[self.db_name]
        try:
            await self.db.command("ping")
        except PyMongoError as e:
            logger.error(f"MongoDB unreachable ({self.db_name}): {e}")
            await self.close()
            raise
        logger.info(f"Connected to MongoDB: {self.db_name}")
        return self.db

    async def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    def get_db(self):
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db


@asynccontextmanager
async def get_db_context():
    """Own connection for a job or script.

    Usage:
        async with get_db_context() as db:
            services = build_services(db)
    """
    database = Database()
    db = await database.connect()
    try:
        yield db
    finally:
        await database.close()
