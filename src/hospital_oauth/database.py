"""
MongoDB connection for the client registry.

Only the ``mongodb`` client backend opens this connection; the grant and
token store never touches MongoDB. The lifespan in ``main.py`` calls
``connect`` on startup and ``disconnect`` on shutdown.
"""

import asyncio
import time
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from hospital_oauth.config import settings
from hospital_oauth.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")


class DatabaseManager:
    """Owns the Motor client and the hospital_oauth database handle."""

    def __init__(
        self,
        url: Optional[str] = None,
        database_name: Optional[str] = None,
        retries: Optional[int] = None,
    ):
        self.url = url or settings.MONGODB_URL
        self.database_name = database_name or settings.MONGODB_DATABASE
        self.retries = max(1, retries or settings.MONGODB_CONNECT_RETRIES)
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    @property
    def is_connected(self) -> bool:
        return self.database is not None

    async def connect(self) -> None:
        """
        Open the Motor client and verify it with a ``ping``.

        Retries with exponential backoff (1s, 2s, 4s...) and re-raises the
        last connection error once the retries are exhausted.
        """
        started = time.time()
        for attempt in range(1, self.retries + 1):
            client = AsyncIOMotorClient(
                self.url,
                serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                tz_aware=True,
            )
            try:
                await client.admin.command("ping")
            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                client.close()
                db_logger.warning("MongoDB not reachable (attempt %d/%d): %s", attempt, self.retries, e)
                if attempt == self.retries:
                    db_logger.error("Giving up on MongoDB after %.3fs", time.time() - started)
                    raise
                await asyncio.sleep(2 ** (attempt - 1))
                continue

            self.client = client
            self.database = client[self.database_name]
            db_logger.info("Connected to MongoDB database %s in %.3fs", self.database_name, time.time() - started)
            return

    async def disconnect(self) -> None:
        if self.client is None:
            return
        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("MongoDB connection closed")

    async def health_check(self) -> bool:
        """True when the server answers ``ping``; used by ``/health``."""
        if self.client is None:
            return False
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            db_logger.error("MongoDB health check failed: %s", e)
            return False
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        if self.database is None:
            raise RuntimeError(f"MongoDB is not connected; cannot open collection '{collection_name}'")
        return self.database[collection_name]


db_manager = DatabaseManager()
