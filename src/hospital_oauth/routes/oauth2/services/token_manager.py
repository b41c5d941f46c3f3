"""
OAuth2 token minting.

Access and refresh tokens are opaque random strings (``at_``/``rt_`` plus 256
bits of base64url). Only their SHA-256 hash is ever stored; resource servers
validate tokens through introspection.

``TokenManager`` builds an ``IssuedTokenPair``: the raw tokens returned to
the client and the records handed to the store. Persistence is left to the
store's atomic operations so minting has no side effects.
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from hospital_oauth.managers.logging_manager import get_logger

from ..models import (
    IssuedTokenPair,
    OAuthClient,
    TokenContext,
    TokenKind,
    TokenRecord,
    generate_access_token,
    generate_refresh_token,
    hash_secret_value,
)

logger = get_logger(prefix="[OAuth2 Token Manager]")


def new_lineage_id() -> str:
    return uuid.uuid4().hex


class TokenManager:
    """
    OAuth2 token minting service.

    Lifetimes come from the client when it overrides them, else from the
    server defaults passed in here.
    """

    def __init__(self, access_token_ttl: int = 3600, refresh_token_ttl: int = 86400):
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl

    @staticmethod
    def hash_token(token: str) -> str:
        return hash_secret_value(token)

    def access_ttl_for(self, client: OAuthClient) -> int:
        return client.access_token_ttl or self.access_token_ttl

    def refresh_ttl_for(self, client: OAuthClient) -> int:
        return client.refresh_token_ttl or self.refresh_token_ttl

    def build_token_pair(
        self,
        client: OAuthClient,
        subject: Optional[str],
        scopes: List[str],
        context: TokenContext,
        now: datetime,
        lineage_id: Optional[str] = None,
        include_refresh_token: bool = True,
    ) -> IssuedTokenPair:
        """
        Mint an access token and, optionally, a refresh token.

        Args:
            client: Client the tokens are issued to (also gives the organization)
            subject: User or service the tokens act for
            scopes: Granted scopes
            context: Hospital claims carried by both tokens
            now: Issue time
            lineage_id: Existing lineage on rotation; a new one is created otherwise
            include_refresh_token: False for client_credentials

        Returns:
            IssuedTokenPair with raw tokens and cross-linked records
        """
        lineage_id = lineage_id or new_lineage_id()
        access_token = generate_access_token()
        access_hash = self.hash_token(access_token)
        refresh_token = generate_refresh_token() if include_refresh_token else None
        refresh_hash = self.hash_token(refresh_token) if refresh_token else None

        access_record = TokenRecord(
            token_hash=access_hash,
            kind=TokenKind.ACCESS,
            client_id=client.client_id,
            organization_id=client.organization_id,
            subject=subject,
            scopes=list(scopes),
            context=context,
            lineage_id=lineage_id,
            paired_token_hash=refresh_hash,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.access_ttl_for(client)),
        )
        refresh_record = None
        if refresh_token:
            refresh_record = TokenRecord(
                token_hash=refresh_hash,
                kind=TokenKind.REFRESH,
                client_id=client.client_id,
                organization_id=client.organization_id,
                subject=subject,
                scopes=list(scopes),
                context=context,
                lineage_id=lineage_id,
                paired_token_hash=access_hash,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.refresh_ttl_for(client)),
            )

        logger.debug(
            f"Minted token pair for client {client.client_id} (lineage {lineage_id}, refresh={bool(refresh_token)})"
        )
        return IssuedTokenPair(
            access_token=access_token,
            access_record=access_record,
            refresh_token=refresh_token,
            refresh_record=refresh_record,
        )
