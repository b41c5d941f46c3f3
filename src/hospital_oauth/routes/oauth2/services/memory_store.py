"""
In-memory grant and token store.

Used by the test suite and single-process deployments. All mutations run
under one ``asyncio.Lock`` so the atomic operations keep their
single-winner property across concurrent coroutines. Records are copied on
the way in and out; callers never hold references into the store.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from hospital_oauth.managers.logging_manager import get_logger

from ..models import AuthorizationCode, IssuedTokenPair, TokenRecord
from .store import GrantNotFoundError, GrantReplayError, OAuth2Store, require_organization

logger = get_logger(prefix="[OAuth2 Memory Store]")

_Key = Tuple[str, str]


class InMemoryOAuth2Store(OAuth2Store):
    def __init__(self):
        self._codes: Dict[_Key, AuthorizationCode] = {}
        self._tokens: Dict[_Key, TokenRecord] = {}
        self._lineages: Dict[_Key, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def create_code(self, organization_id: str, code: AuthorizationCode) -> None:
        require_organization(organization_id)
        if code.organization_id != organization_id:
            raise ValueError("Code belongs to a different organization")
        async with self._lock:
            self._codes[(organization_id, code.code_hash)] = code.model_copy(deep=True)

    async def lookup_code(self, organization_id: str, code_hash: str) -> Optional[AuthorizationCode]:
        code = self._codes.get((require_organization(organization_id), code_hash))
        return code.model_copy(deep=True) if code else None

    async def consume_code(
        self,
        organization_id: str,
        code_hash: str,
        tokens: IssuedTokenPair,
        consumed_at: datetime,
    ) -> None:
        key = (require_organization(organization_id), code_hash)
        async with self._lock:
            code = self._codes.get(key)
            if code is None:
                raise GrantNotFoundError("Authorization code not found")
            if code.consumed:
                raise GrantReplayError("Authorization code already consumed", lineage_id=code.lineage_id)
            self._codes[key] = code.model_copy(
                update={
                    "consumed": True,
                    "consumed_at": consumed_at,
                    "lineage_id": tokens.access_record.lineage_id,
                }
            )
            self._put_tokens(organization_id, tokens)

    async def create_token_pair(self, organization_id: str, tokens: IssuedTokenPair) -> None:
        require_organization(organization_id)
        async with self._lock:
            self._put_tokens(organization_id, tokens)

    async def lookup_token(self, organization_id: str, token_hash: str) -> Optional[TokenRecord]:
        record = self._tokens.get((require_organization(organization_id), token_hash))
        return record.model_copy(deep=True) if record else None

    async def rotate_refresh_token(
        self,
        organization_id: str,
        refresh_token_hash: str,
        tokens: IssuedTokenPair,
        rotated_at: datetime,
    ) -> None:
        require_organization(organization_id)
        async with self._lock:
            old = self._tokens.get((organization_id, refresh_token_hash))
            if old is None:
                raise GrantNotFoundError("Refresh token not found")
            if old.revoked:
                raise GrantReplayError("Refresh token already revoked", lineage_id=old.lineage_id)
            self._revoke(organization_id, refresh_token_hash, "rotated")
            if old.paired_token_hash:
                self._revoke(organization_id, old.paired_token_hash, "rotated")
            self._put_tokens(organization_id, tokens)

    async def revoke_token(self, organization_id: str, token_hash: str, reason: str = "revoked") -> bool:
        require_organization(organization_id)
        async with self._lock:
            if (organization_id, token_hash) not in self._tokens:
                return False
            self._revoke(organization_id, token_hash, reason)
            return True

    async def revoke_lineage(self, organization_id: str, lineage_id: str, reason: str = "lineage_revoked") -> int:
        require_organization(organization_id)
        async with self._lock:
            revoked = 0
            for token_hash in self._lineages.get((organization_id, lineage_id), set()):
                if self._revoke(organization_id, token_hash, reason):
                    revoked += 1
            return revoked

    async def purge_expired(self, organization_id: str, now: datetime) -> int:
        require_organization(organization_id)
        async with self._lock:
            expired_codes = [k for k, c in self._codes.items() if k[0] == organization_id and c.is_expired(now)]
            expired_tokens = [k for k, t in self._tokens.items() if k[0] == organization_id and t.is_expired(now)]
            for key in expired_codes:
                del self._codes[key]
            for key in expired_tokens:
                record = self._tokens.pop(key)
                members = self._lineages.get((organization_id, record.lineage_id))
                if members is not None:
                    members.discard(record.token_hash)
                    if not members:
                        del self._lineages[(organization_id, record.lineage_id)]
            removed = len(expired_codes) + len(expired_tokens)
        if removed:
            logger.info(f"Purged {removed} expired grants for org {organization_id}")
        return removed

    def _put_tokens(self, organization_id: str, tokens: IssuedTokenPair) -> None:
        for record in tokens.records:
            if record.organization_id != organization_id:
                raise ValueError("Token belongs to a different organization")
            self._tokens[(organization_id, record.token_hash)] = record.model_copy(deep=True)
            self._lineages[(organization_id, record.lineage_id)].add(record.token_hash)

    def _revoke(self, organization_id: str, token_hash: str, reason: str) -> bool:
        record = self._tokens.get((organization_id, token_hash))
        if record is None or record.revoked:
            return False
        self._tokens[(organization_id, token_hash)] = record.model_copy(
            update={"revoked": True, "revoked_reason": reason}
        )
        return True
