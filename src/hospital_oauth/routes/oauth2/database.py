"""
OAuth2 client storage.

Client documents are keyed by ``(organization_id, client_id)``. A client id
is globally unique in practice, but lookups always include the tenant so a
client registered in one organization cannot be used against another.

Backends:
- ``MongoClientStore``: the ``oauth2_clients`` collection via Motor
- ``InMemoryClientStore``: process-local dict, for tests and single-node demos
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from hospital_oauth.database import DatabaseManager
from hospital_oauth.managers.logging_manager import get_logger

from .models import OAuthClient, utc_now
from .services.store import StoreError, require_organization

logger = get_logger(prefix="[OAuth2 Database]")

# Collection names
OAUTH2_CLIENTS_COLLECTION = "oauth2_clients"


class ClientStore(ABC):
    """Tenant-scoped persistence for client documents."""

    @abstractmethod
    async def create_client(self, client: OAuthClient) -> None:
        """Insert a new client. Raises StoreError on duplicates."""

    @abstractmethod
    async def get_client(self, organization_id: str, client_id: str) -> Optional[OAuthClient]:
        """Return the client (active or not) or None."""

    @abstractmethod
    async def update_client(self, organization_id: str, client_id: str, updates: Dict[str, Any]) -> bool:
        """Apply field updates. Returns False when the client does not exist."""

    @abstractmethod
    async def list_clients(self, organization_id: str, include_inactive: bool = False) -> List[OAuthClient]:
        """List the clients of one organization."""


class InMemoryClientStore(ClientStore):
    def __init__(self):
        self._clients: Dict[Tuple[str, str], OAuthClient] = {}
        self._lock = asyncio.Lock()

    async def create_client(self, client: OAuthClient) -> None:
        key = (require_organization(client.organization_id), client.client_id)
        async with self._lock:
            if key in self._clients:
                raise StoreError(f"Client already exists: {client.client_id}")
            self._clients[key] = client.model_copy(deep=True)

    async def get_client(self, organization_id: str, client_id: str) -> Optional[OAuthClient]:
        client = self._clients.get((require_organization(organization_id), client_id))
        return client.model_copy(deep=True) if client else None

    async def update_client(self, organization_id: str, client_id: str, updates: Dict[str, Any]) -> bool:
        key = (require_organization(organization_id), client_id)
        async with self._lock:
            client = self._clients.get(key)
            if client is None:
                return False
            self._clients[key] = client.model_copy(update={**updates, "updated_at": utc_now()})
            return True

    async def list_clients(self, organization_id: str, include_inactive: bool = False) -> List[OAuthClient]:
        require_organization(organization_id)
        return [
            client.model_copy(deep=True)
            for (org, _), client in sorted(self._clients.items(), key=lambda item: item[1].created_at)
            if org == organization_id and (include_inactive or client.is_active)
        ]


class MongoClientStore(ClientStore):
    """Client documents in MongoDB, unique on (organization_id, client_id)."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self._clients_collection = None

    @property
    def clients_collection(self):
        """Lazy initialization of clients collection."""
        if self._clients_collection is None:
            self._clients_collection = self.db_manager.get_collection(OAUTH2_CLIENTS_COLLECTION)
        return self._clients_collection

    async def create_indexes(self) -> None:
        await self.clients_collection.create_index(
            [("organization_id", ASCENDING), ("client_id", ASCENDING)],
            unique=True,
            name="organization_client_unique",
        )

    async def create_client(self, client: OAuthClient) -> None:
        require_organization(client.organization_id)
        try:
            await self.clients_collection.insert_one(client.model_dump())
            logger.info(f"Created OAuth2 client: {client.client_id} (org: {client.organization_id})")
        except DuplicateKeyError as e:
            raise StoreError(f"Client already exists: {client.client_id}") from e
        except PyMongoError as e:
            logger.error(f"Failed to create OAuth2 client {client.client_id}: {e}")
            raise StoreError(str(e)) from e

    async def get_client(self, organization_id: str, client_id: str) -> Optional[OAuthClient]:
        require_organization(organization_id)
        try:
            doc = await self.clients_collection.find_one(
                {"organization_id": organization_id, "client_id": client_id}
            )
        except PyMongoError as e:
            logger.error(f"Failed to get OAuth2 client {client_id}: {e}")
            raise StoreError(str(e)) from e
        if not doc:
            return None
        doc.pop("_id", None)
        return OAuthClient(**doc)

    async def update_client(self, organization_id: str, client_id: str, updates: Dict[str, Any]) -> bool:
        require_organization(organization_id)
        updates = {**updates, "updated_at": utc_now()}
        try:
            result = await self.clients_collection.update_one(
                {"organization_id": organization_id, "client_id": client_id},
                {"$set": updates},
            )
        except PyMongoError as e:
            logger.error(f"Failed to update OAuth2 client {client_id}: {e}")
            raise StoreError(str(e)) from e
        return result.matched_count > 0

    async def list_clients(self, organization_id: str, include_inactive: bool = False) -> List[OAuthClient]:
        require_organization(organization_id)
        query: Dict[str, Any] = {"organization_id": organization_id}
        if not include_inactive:
            query["is_active"] = True
        try:
            cursor = self.clients_collection.find(query).sort("created_at", ASCENDING)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Failed to list OAuth2 clients for org {organization_id}: {e}")
            raise StoreError(str(e)) from e
        clients = []
        for doc in docs:
            doc.pop("_id", None)
            clients.append(OAuthClient(**doc))
        return clients
