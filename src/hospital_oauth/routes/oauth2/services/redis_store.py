"""
Redis grant and token store.

Key layout (every key carries the organization id):

    oauth2:{org}:code:{code_hash}            AuthorizationCode JSON
    oauth2:{org}:code_consumed:{code_hash}   {"lineage_id", "consumed_at"} once exchanged
    oauth2:{org}:token:{token_hash}          TokenRecord JSON
    oauth2:{org}:revoked:{token_hash}        revocation reason
    oauth2:{org}:lineage:{lineage_id}        set of token hashes

Records are written once and never rewritten; consumption and revocation
are separate flag keys so Lua never has to decode JSON. Every key expires
with the record it describes, so Redis itself drops expired grants.

The atomic operations are Lua scripts: Redis runs a script to completion
before serving any other command, which makes check-and-mark a single
step across all API replicas.
"""

import json
import math
from datetime import datetime
from typing import List, Optional, Sequence

from redis.exceptions import RedisError

from hospital_oauth.managers.logging_manager import get_logger
from hospital_oauth.managers.redis_manager import RedisManager

from ..models import AuthorizationCode, IssuedTokenPair, TokenRecord, utc_now
from .store import GrantNotFoundError, GrantReplayError, OAuth2Store, StoreError, require_organization

logger = get_logger(prefix="[OAuth2 Redis Store]")

OAUTH2_KEY_PREFIX = "oauth2"

# KEYS: code, code_consumed, lineage, token keys...
# ARGV: consumed_value, consumed_ttl, lineage_ttl, then (hash, json, ttl) per token
CONSUME_CODE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'missing'}
end
local consumed = redis.call('GET', KEYS[2])
if consumed then
  return {'replay', consumed}
end
redis.call('SET', KEYS[2], ARGV[1], 'EX', ARGV[2])
redis.call('EXPIRE', KEYS[1], ARGV[2])
for i = 4, #KEYS do
  local base = 4 + (i - 4) * 3
  redis.call('SET', KEYS[i], ARGV[base + 1], 'EX', ARGV[base + 2])
  redis.call('SADD', KEYS[3], ARGV[base])
end
local lineage_ttl = tonumber(ARGV[3])
if redis.call('TTL', KEYS[3]) < lineage_ttl then
  redis.call('EXPIRE', KEYS[3], lineage_ttl)
end
return {'ok'}
"""

# KEYS: old token, old revoked flag, lineage, paired token, paired revoked flag, new token keys...
# ARGV: reason, lineage_ttl, then (hash, json, ttl) per new token
ROTATE_REFRESH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'missing'}
end
if redis.call('EXISTS', KEYS[2]) == 1 then
  return {'replay'}
end
local function revoke(token_key, revoked_key)
  local ttl = redis.call('TTL', token_key)
  if ttl > 0 then
    redis.call('SET', revoked_key, ARGV[1], 'EX', ttl, 'NX')
  end
end
revoke(KEYS[1], KEYS[2])
revoke(KEYS[4], KEYS[5])
for i = 6, #KEYS do
  local base = 3 + (i - 6) * 3
  redis.call('SET', KEYS[i], ARGV[base + 1], 'EX', ARGV[base + 2])
  redis.call('SADD', KEYS[3], ARGV[base])
end
local lineage_ttl = tonumber(ARGV[2])
if redis.call('TTL', KEYS[3]) < lineage_ttl then
  redis.call('EXPIRE', KEYS[3], lineage_ttl)
end
return {'ok'}
"""

# KEYS: lineage, token keys... ARGV: lineage_ttl, then (hash, json, ttl) per token
CREATE_TOKENS_SCRIPT = """
for i = 2, #KEYS do
  local base = 2 + (i - 2) * 3
  redis.call('SET', KEYS[i], ARGV[base + 1], 'EX', ARGV[base + 2])
  redis.call('SADD', KEYS[1], ARGV[base])
end
local lineage_ttl = tonumber(ARGV[1])
if redis.call('TTL', KEYS[1]) < lineage_ttl then
  redis.call('EXPIRE', KEYS[1], lineage_ttl)
end
return 1
"""

# KEYS: token, revoked flag. ARGV: reason
REVOKE_TOKEN_SCRIPT = """
local ttl = redis.call('TTL', KEYS[1])
if ttl == -2 then
  return 0
end
if ttl < 1 then
  ttl = 1
end
redis.call('SET', KEYS[2], ARGV[1], 'EX', ttl, 'NX')
return 1
"""

# KEYS: lineage. ARGV: org key prefix, reason
REVOKE_LINEAGE_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local revoked = 0
for _, token_hash in ipairs(members) do
  local ttl = redis.call('TTL', ARGV[1] .. 'token:' .. token_hash)
  if ttl > 0 then
    if redis.call('SET', ARGV[1] .. 'revoked:' .. token_hash, ARGV[2], 'EX', ttl, 'NX') then
      revoked = revoked + 1
    end
  end
end
return revoked
"""


def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
    remaining = (expires_at - (now or utc_now())).total_seconds()
    return max(1, math.ceil(remaining))


class RedisOAuth2Store(OAuth2Store):
    """Grant and token store backed by Redis, shared by all API replicas."""

    def __init__(self, redis_manager: RedisManager):
        self.redis_manager = redis_manager
        self._scripts = {}

    # Keys

    def _prefix(self, organization_id: str) -> str:
        return f"{OAUTH2_KEY_PREFIX}:{require_organization(organization_id)}:"

    def _code_key(self, organization_id: str, code_hash: str) -> str:
        return f"{self._prefix(organization_id)}code:{code_hash}"

    def _consumed_key(self, organization_id: str, code_hash: str) -> str:
        return f"{self._prefix(organization_id)}code_consumed:{code_hash}"

    def _token_key(self, organization_id: str, token_hash: str) -> str:
        return f"{self._prefix(organization_id)}token:{token_hash}"

    def _revoked_key(self, organization_id: str, token_hash: str) -> str:
        return f"{self._prefix(organization_id)}revoked:{token_hash}"

    def _lineage_key(self, organization_id: str, lineage_id: str) -> str:
        return f"{self._prefix(organization_id)}lineage:{lineage_id}"

    # Plumbing

    async def _script(self, name: str, source: str):
        if name not in self._scripts:
            redis_client = await self.redis_manager.get_redis()
            self._scripts[name] = redis_client.register_script(source)
        return self._scripts[name]

    async def _run(self, name: str, source: str, keys: Sequence[str], args: Sequence):
        try:
            script = await self._script(name, source)
            return await script(keys=list(keys), args=list(args))
        except (RedisError, OSError) as e:
            logger.error(f"Redis script {name} failed: {e}", exc_info=True)
            raise StoreError(f"Redis script {name} failed") from e

    def _token_keys_and_args(self, organization_id: str, tokens: IssuedTokenPair):
        keys: List[str] = []
        args: List = []
        for record in tokens.records:
            if record.organization_id != organization_id:
                raise ValueError("Token belongs to a different organization")
            keys.append(self._token_key(organization_id, record.token_hash))
            args.extend([record.token_hash, record.model_dump_json(), _ttl_seconds(record.expires_at)])
        lineage_ttl = max(_ttl_seconds(record.expires_at) for record in tokens.records)
        return keys, args, lineage_ttl

    # Codes

    async def create_code(self, organization_id: str, code: AuthorizationCode) -> None:
        if code.organization_id != require_organization(organization_id):
            raise ValueError("Code belongs to a different organization")
        try:
            redis_client = await self.redis_manager.get_redis()
            await redis_client.set(
                self._code_key(organization_id, code.code_hash),
                code.model_dump_json(),
                ex=_ttl_seconds(code.expires_at),
                nx=True,
            )
        except (RedisError, OSError) as e:
            raise StoreError("Failed to store authorization code") from e

    async def lookup_code(self, organization_id: str, code_hash: str) -> Optional[AuthorizationCode]:
        try:
            redis_client = await self.redis_manager.get_redis()
            raw_code, raw_consumed = await redis_client.mget(
                [self._code_key(organization_id, code_hash), self._consumed_key(organization_id, code_hash)]
            )
        except (RedisError, OSError) as e:
            raise StoreError("Failed to read authorization code") from e
        if raw_code is None:
            return None
        code = AuthorizationCode.model_validate_json(raw_code)
        if raw_consumed is not None:
            consumed = json.loads(raw_consumed)
            code = code.model_copy(
                update={
                    "consumed": True,
                    "lineage_id": consumed.get("lineage_id"),
                    "consumed_at": datetime.fromisoformat(consumed["consumed_at"]),
                }
            )
        return code

    async def consume_code(
        self,
        organization_id: str,
        code_hash: str,
        tokens: IssuedTokenPair,
        consumed_at: datetime,
    ) -> None:
        token_keys, token_args, lineage_ttl = self._token_keys_and_args(organization_id, tokens)
        lineage_id = tokens.access_record.lineage_id
        consumed_value = json.dumps({"lineage_id": lineage_id, "consumed_at": consumed_at.isoformat()})
        # The consumed marker lives as long as the lineage so replays stay detectable
        keys = [
            self._code_key(organization_id, code_hash),
            self._consumed_key(organization_id, code_hash),
            self._lineage_key(organization_id, lineage_id),
            *token_keys,
        ]
        args = [consumed_value, lineage_ttl, lineage_ttl, *token_args]
        result = await self._run("consume_code", CONSUME_CODE_SCRIPT, keys, args)
        status = result[0]
        if status == "missing":
            raise GrantNotFoundError("Authorization code not found")
        if status == "replay":
            previous = json.loads(result[1])
            raise GrantReplayError("Authorization code already consumed", lineage_id=previous.get("lineage_id"))

    # Tokens

    async def create_token_pair(self, organization_id: str, tokens: IssuedTokenPair) -> None:
        token_keys, token_args, lineage_ttl = self._token_keys_and_args(organization_id, tokens)
        keys = [self._lineage_key(organization_id, tokens.access_record.lineage_id), *token_keys]
        await self._run("create_tokens", CREATE_TOKENS_SCRIPT, keys, [lineage_ttl, *token_args])

    async def lookup_token(self, organization_id: str, token_hash: str) -> Optional[TokenRecord]:
        try:
            redis_client = await self.redis_manager.get_redis()
            raw_token, revoked_reason = await redis_client.mget(
                [self._token_key(organization_id, token_hash), self._revoked_key(organization_id, token_hash)]
            )
        except (RedisError, OSError) as e:
            raise StoreError("Failed to read token") from e
        if raw_token is None:
            return None
        record = TokenRecord.model_validate_json(raw_token)
        if revoked_reason is not None:
            record = record.model_copy(update={"revoked": True, "revoked_reason": revoked_reason})
        return record

    async def rotate_refresh_token(
        self,
        organization_id: str,
        refresh_token_hash: str,
        tokens: IssuedTokenPair,
        rotated_at: datetime,
    ) -> None:
        old = await self.lookup_token(organization_id, refresh_token_hash)
        if old is None:
            raise GrantNotFoundError("Refresh token not found")
        paired_hash = old.paired_token_hash or refresh_token_hash
        token_keys, token_args, lineage_ttl = self._token_keys_and_args(organization_id, tokens)
        keys = [
            self._token_key(organization_id, refresh_token_hash),
            self._revoked_key(organization_id, refresh_token_hash),
            self._lineage_key(organization_id, tokens.access_record.lineage_id),
            self._token_key(organization_id, paired_hash),
            self._revoked_key(organization_id, paired_hash),
            *token_keys,
        ]
        result = await self._run("rotate_refresh", ROTATE_REFRESH_SCRIPT, keys, ["rotated", lineage_ttl, *token_args])
        status = result[0]
        if status == "missing":
            raise GrantNotFoundError("Refresh token not found")
        if status == "replay":
            raise GrantReplayError("Refresh token already revoked", lineage_id=old.lineage_id)

    async def revoke_token(self, organization_id: str, token_hash: str, reason: str = "revoked") -> bool:
        keys = [self._token_key(organization_id, token_hash), self._revoked_key(organization_id, token_hash)]
        result = await self._run("revoke_token", REVOKE_TOKEN_SCRIPT, keys, [reason])
        return bool(int(result))

    async def revoke_lineage(self, organization_id: str, lineage_id: str, reason: str = "lineage_revoked") -> int:
        result = await self._run(
            "revoke_lineage",
            REVOKE_LINEAGE_SCRIPT,
            [self._lineage_key(organization_id, lineage_id)],
            [self._prefix(organization_id), reason],
        )
        return int(result)

    async def purge_expired(self, organization_id: str, now: datetime) -> int:
        """
        Codes and tokens expire through their key TTLs; this drops lineage
        members whose token key is already gone.
        """
        removed = 0
        try:
            redis_client = await self.redis_manager.get_redis()
            async for lineage_key in redis_client.scan_iter(match=f"{self._prefix(organization_id)}lineage:*"):
                members = await redis_client.smembers(lineage_key)
                stale = [h for h in members if not await redis_client.exists(self._token_key(organization_id, h))]
                if stale:
                    removed += await redis_client.srem(lineage_key, *stale)
        except (RedisError, OSError) as e:
            raise StoreError("Failed to purge expired grants") from e
        if removed:
            logger.info(f"Purged {removed} stale lineage entries for org {organization_id}")
        return removed
