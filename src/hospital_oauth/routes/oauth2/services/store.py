"""
Grant and token storage interface.

Every operation is scoped to an organization: there is no way to read or
write a code or token without naming its tenant, and backends fold the
organization id into every key they touch.

The two atomic operations carry the replay guarantees of the server:

- ``consume_code`` checks that a code is unconsumed, marks it consumed and
  persists the tokens issued for it in one step. Of N concurrent callers
  exactly one succeeds; the others get ``GrantReplayError``.
- ``rotate_refresh_token`` checks that a refresh token is unrevoked,
  revokes it together with its paired access token and persists the new
  pair in one step, with the same single-winner property.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Optional, TypeVar

from ..models import AuthorizationCode, IssuedTokenPair, TokenRecord

T = TypeVar("T")


class StoreError(Exception):
    """Storage backend failure (connection, timeout, corrupt record)."""


class GrantNotFoundError(StoreError):
    """The code or token named by an atomic operation does not exist."""


class GrantReplayError(StoreError):
    """
    The code was already consumed, or the refresh token already revoked.

    Attributes:
        lineage_id: Lineage issued from the consumed grant, when known
    """

    def __init__(self, message: str, lineage_id: Optional[str] = None):
        super().__init__(message)
        self.lineage_id = lineage_id


def require_organization(organization_id: str) -> str:
    if not organization_id or not str(organization_id).strip():
        raise ValueError("organization_id is required")
    return organization_id


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await a storage call with an upper bound on its duration.

    Raises:
        StoreError: If the call does not finish within ``timeout`` seconds
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreError(f"Storage operation '{operation}' timed out after {timeout}s") from e


class OAuth2Store(ABC):
    """Tenant-scoped store for authorization codes and issued tokens."""

    # Codes

    @abstractmethod
    async def create_code(self, organization_id: str, code: AuthorizationCode) -> None:
        """Persist a new authorization code."""

    @abstractmethod
    async def lookup_code(self, organization_id: str, code_hash: str) -> Optional[AuthorizationCode]:
        """Return the code record, consumed or not, or None."""

    @abstractmethod
    async def consume_code(
        self,
        organization_id: str,
        code_hash: str,
        tokens: IssuedTokenPair,
        consumed_at: datetime,
    ) -> None:
        """
        Atomically mark the code consumed and persist the issued tokens.

        Raises:
            GrantNotFoundError: If the code does not exist
            GrantReplayError: If the code was already consumed
        """

    # Tokens

    @abstractmethod
    async def create_token_pair(self, organization_id: str, tokens: IssuedTokenPair) -> None:
        """Persist tokens that were not issued from a code (client credentials)."""

    @abstractmethod
    async def lookup_token(self, organization_id: str, token_hash: str) -> Optional[TokenRecord]:
        """Return the token record (with its revocation state) or None."""

    @abstractmethod
    async def rotate_refresh_token(
        self,
        organization_id: str,
        refresh_token_hash: str,
        tokens: IssuedTokenPair,
        rotated_at: datetime,
    ) -> None:
        """
        Atomically revoke the presented refresh token (and its paired access
        token) and persist the replacement pair.

        Raises:
            GrantNotFoundError: If the refresh token does not exist
            GrantReplayError: If the refresh token is already revoked
        """

    @abstractmethod
    async def revoke_token(self, organization_id: str, token_hash: str, reason: str = "revoked") -> bool:
        """Revoke one token. Returns False when it does not exist."""

    @abstractmethod
    async def revoke_lineage(self, organization_id: str, lineage_id: str, reason: str = "lineage_revoked") -> int:
        """Revoke every token of a lineage. Returns the number of tokens newly revoked."""

    # Maintenance

    @abstractmethod
    async def purge_expired(self, organization_id: str, now: datetime) -> int:
        """Delete expired codes and tokens. Returns the number of records removed."""
