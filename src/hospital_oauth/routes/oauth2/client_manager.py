"""
OAuth2 client management.

This module provides:
- ``ClientCache``: explicit, TTL-bounded cache of client documents,
  invalidated on every administrative change
- ``ClientRegistry``: client lookup, secret verification, authentication
  of token/introspection/revocation callers, and client administration
  (register, update, rotate secret, disable, list)

Client secrets are stored as bcrypt hashes. Verification re-hashes the
presented secret with the stored salt and compares digests with
``hmac.compare_digest``; unknown clients are verified against a dummy hash so
response time does not reveal whether a client id exists. bcrypt work runs
in a worker thread so it does not block the event loop.
"""

import asyncio
import hmac
import time
from typing import Callable, Dict, List, Optional, Tuple

import bcrypt

from hospital_oauth.managers.logging_manager import get_logger

from .database import ClientStore
from .error_handler import invalid_client_error, invalid_request_error
from .logging_utils import OAuth2EventType, oauth2_logger
from .models import (
    ClientCredentials,
    ClientType,
    GrantType,
    OAuthClient,
    OAuthClientRegistration,
    OAuthClientUpdate,
    generate_client_id,
    generate_client_secret,
)
from .services.store import require_organization

logger = get_logger(prefix="[OAuth2 ClientManager]")


class ClientCache:
    """
    Process-local cache of client documents keyed by (organization_id, client_id).

    Entries expire after ``ttl_seconds``; ``invalidate`` drops one entry
    immediately and must be called after any change to a client.
    """

    def __init__(self, ttl_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, OAuthClient]] = {}

    def get(self, organization_id: str, client_id: str) -> Optional[OAuthClient]:
        entry = self._entries.get((organization_id, client_id))
        if entry is None:
            return None
        expires_at, client = entry
        if expires_at <= self._clock():
            self._entries.pop((organization_id, client_id), None)
            return None
        return client

    def put(self, client: OAuthClient) -> None:
        self._entries[(client.organization_id, client.client_id)] = (self._clock() + self.ttl_seconds, client)

    def invalidate(self, organization_id: str, client_id: str) -> None:
        self._entries.pop((organization_id, client_id), None)

    def clear(self) -> None:
        self._entries.clear()


class ClientRegistry:
    """
    OAuth2 client application registry.

    Reads go through the ``ClientCache``; writes go to the ``ClientStore``
    and invalidate the cache entry they affect.
    """

    def __init__(self, store: ClientStore, cache: Optional[ClientCache] = None, bcrypt_rounds: int = 12):
        self.store = store
        self.cache = cache or ClientCache()
        self.bcrypt_rounds = bcrypt_rounds
        # Verified against when the client is unknown, to keep timing uniform
        self._dummy_hash = self._hash_client_secret(generate_client_secret())

    async def lookup(self, organization_id: str, client_id: str) -> Optional[OAuthClient]:
        """
        Return the active client with this id in this organization, or None.
        """
        require_organization(organization_id)
        if not client_id:
            return None
        client = self.cache.get(organization_id, client_id)
        if client is None:
            client = await self.store.get_client(organization_id, client_id)
            if client is not None:
                self.cache.put(client)
        if client is None or not client.is_active:
            return None
        return client

    def verify_secret(self, client: Optional[OAuthClient], provided_secret: Optional[str]) -> bool:
        """
        Verify a presented secret against the client's stored hash in constant time.

        A missing client, a client without a stored hash, and a missing
        secret all return False after the same amount of bcrypt work.
        """
        stored_hash = client.client_secret_hash if client and client.client_secret_hash else self._dummy_hash
        # bcrypt only uses the first 72 bytes and rejects longer input
        candidate = (provided_secret or "").encode("utf-8")[:72]
        try:
            recomputed = bcrypt.hashpw(candidate, stored_hash.encode("utf-8"))
        except ValueError as e:
            logger.error(f"Stored secret hash is malformed for client {client.client_id if client else None}: {e}")
            return False
        matches = hmac.compare_digest(recomputed, stored_hash.encode("utf-8"))
        return matches and client is not None and bool(client.client_secret_hash) and bool(provided_secret)

    async def check_secret(self, client: Optional[OAuthClient], provided_secret: Optional[str]) -> bool:
        """``verify_secret`` off the event loop."""
        return await asyncio.to_thread(self.verify_secret, client, provided_secret)

    async def authenticate(
        self,
        organization_id: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        basic_credentials: Optional[ClientCredentials] = None,
        require_confidential: bool = False,
    ) -> OAuthClient:
        """
        Authenticate the calling client.

        The secret may come from the request body or HTTP Basic, but not both
        (RFC 6749 section 2.3). Public clients authenticate by id alone unless
        ``require_confidential`` is set.

        Raises:
            OAuth2Exception: ``invalid_request`` or ``invalid_client``
        """
        if basic_credentials is not None:
            if client_secret:
                raise invalid_request_error("Multiple client authentication methods are not allowed")
            if client_id and client_id != basic_credentials.client_id:
                raise invalid_client_error("Client authentication failed", detail="basic/body client_id mismatch")
            client_id = basic_credentials.client_id
            client_secret = basic_credentials.client_secret

        if not client_id:
            raise invalid_request_error("Missing required parameter: client_id")

        client = await self.lookup(organization_id, client_id)

        if client is not None and client.client_type == ClientType.PUBLIC and not client_secret:
            if require_confidential:
                self._log_failure(organization_id, client_id, "public client not allowed")
                raise invalid_client_error("Client authentication failed", detail="public client")
            return client

        if not client_secret:
            # Keep the bcrypt cost on this path too
            await self.check_secret(None, None)
            self._log_failure(organization_id, client_id, "missing client secret")
            raise invalid_client_error("Client authentication failed", detail="missing client secret")

        if not await self.check_secret(client, client_secret):
            self._log_failure(organization_id, client_id, "unknown client or invalid secret")
            raise invalid_client_error("Client authentication failed", detail="unknown client or invalid secret")

        return client

    # Administration

    async def register_client(
        self, organization_id: str, registration: OAuthClientRegistration
    ) -> Tuple[OAuthClient, Optional[str]]:
        """
        Register a new client. Returns the stored client and, for confidential
        clients, the plain secret (shown only once).

        Raises:
            ValueError: If the registration is inconsistent
        """
        require_organization(organization_id)
        check_client_policy(
            registration.client_type,
            registration.allowed_grant_types,
            registration.redirect_uris,
            registration.phi_access,
            registration.audit_required,
        )

        client_secret = None
        client_secret_hash = None
        if registration.client_type == ClientType.CONFIDENTIAL:
            client_secret = generate_client_secret()
            client_secret_hash = await asyncio.to_thread(self._hash_client_secret, client_secret)

        client = OAuthClient(
            client_id=generate_client_id(),
            organization_id=organization_id,
            client_secret_hash=client_secret_hash,
            name=registration.name,
            description=registration.description,
            client_type=registration.client_type,
            allowed_grant_types=list(dict.fromkeys(registration.allowed_grant_types)),
            redirect_uris=registration.redirect_uris,
            scopes=registration.scopes,
            allowed_departments=registration.allowed_departments,
            phi_access=registration.phi_access,
            audit_required=registration.audit_required,
            access_token_ttl=registration.access_token_ttl,
            refresh_token_ttl=registration.refresh_token_ttl,
        )
        await self.store.create_client(client)
        oauth2_logger.log_client_event(
            OAuth2EventType.CLIENT_REGISTERED,
            organization_id,
            client.client_id,
            {"client_type": client.client_type.value, "phi_access": client.phi_access},
        )
        return client, client_secret

    async def update_client(
        self, organization_id: str, client_id: str, update: OAuthClientUpdate
    ) -> Optional[OAuthClient]:
        """
        Apply a partial update to an active client.

        The merged configuration must satisfy the same rules as a
        registration. Returns the updated client, or None when the client
        does not exist or is disabled.

        Raises:
            ValueError: If the resulting configuration is inconsistent
        """
        client = await self.store.get_client(require_organization(organization_id), client_id)
        if client is None or not client.is_active:
            return None
        changes = update.changes()
        if "allowed_grant_types" in changes:
            changes["allowed_grant_types"] = list(dict.fromkeys(changes["allowed_grant_types"]))
        if not changes:
            return client

        updated = client.model_copy(update=changes)
        check_client_policy(
            updated.client_type,
            updated.allowed_grant_types,
            updated.redirect_uris,
            updated.phi_access,
            updated.audit_required,
        )
        if not await self.store.update_client(organization_id, client_id, changes):
            return None
        self.cache.invalidate(organization_id, client_id)
        oauth2_logger.log_client_event(
            OAuth2EventType.CLIENT_UPDATED, organization_id, client_id, {"fields": sorted(changes)}
        )
        return updated

    async def rotate_client_secret(self, organization_id: str, client_id: str) -> Optional[Tuple[OAuthClient, str]]:
        """
        Replace the secret of a confidential client. Returns None when the
        client does not exist, is disabled, or is public.
        """
        client = await self.store.get_client(require_organization(organization_id), client_id)
        if client is None or not client.is_active or client.client_type != ClientType.CONFIDENTIAL:
            logger.warning(f"Cannot rotate secret for client {client_id} (org: {organization_id})")
            return None
        new_secret = generate_client_secret()
        new_hash = await asyncio.to_thread(self._hash_client_secret, new_secret)
        if not await self.store.update_client(organization_id, client_id, {"client_secret_hash": new_hash}):
            return None
        self.cache.invalidate(organization_id, client_id)
        oauth2_logger.log_client_event(OAuth2EventType.CLIENT_SECRET_ROTATED, organization_id, client_id)
        return client.model_copy(update={"client_secret_hash": new_hash}), new_secret

    async def disable_client(self, organization_id: str, client_id: str) -> bool:
        """Soft-disable a client; it can no longer authenticate."""
        updated = await self.store.update_client(require_organization(organization_id), client_id, {"is_active": False})
        self.cache.invalidate(organization_id, client_id)
        if updated:
            oauth2_logger.log_client_event(OAuth2EventType.CLIENT_DISABLED, organization_id, client_id)
        return updated

    async def list_clients(self, organization_id: str, include_inactive: bool = False) -> List[OAuthClient]:
        return await self.store.list_clients(require_organization(organization_id), include_inactive)

    def _hash_client_secret(self, client_secret: str) -> str:
        return bcrypt.hashpw(client_secret.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("utf-8")

    def _log_failure(self, organization_id: str, client_id: Optional[str], reason: str) -> None:
        oauth2_logger.log_security_event(
            OAuth2EventType.CLIENT_AUTHENTICATION_FAILED,
            organization_id,
            client_id,
            f"Client authentication failed: {reason}",
            severity="medium",
        )


def check_client_policy(
    client_type: ClientType,
    grant_types: List[GrantType],
    redirect_uris: List[str],
    phi_access: bool,
    audit_required: bool,
) -> None:
    """
    Rules every stored client configuration must satisfy.

    Raises:
        ValueError: On the first rule the configuration breaks
    """
    if phi_access and not audit_required:
        raise ValueError("Audit logging is required for PHI access")
    if GrantType.AUTHORIZATION_CODE in grant_types and not redirect_uris:
        raise ValueError("At least one redirect URI is required for the authorization_code grant")
    if client_type == ClientType.PUBLIC and GrantType.CLIENT_CREDENTIALS in grant_types:
        raise ValueError("Public clients cannot use the client_credentials grant")
