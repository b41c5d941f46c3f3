"""
Tests for the in-memory grant and token store: tenant scoping, atomic
code consumption, refresh rotation and lineage revocation.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hospital_oauth.routes.oauth2.models import (
    AuthorizationCode,
    ClientType,
    OAuthClient,
    TokenContext,
)
from hospital_oauth.routes.oauth2.services.memory_store import InMemoryOAuth2Store
from hospital_oauth.routes.oauth2.services.store import GrantNotFoundError, GrantReplayError
from hospital_oauth.routes.oauth2.services.token_manager import TokenManager

ORG = "hospital-a"
OTHER_ORG = "hospital-b"
NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryOAuth2Store()


@pytest.fixture
def token_manager():
    return TokenManager(access_token_ttl=3600, refresh_token_ttl=86400)


@pytest.fixture
def client():
    return OAuthClient(
        client_id="hos_ehr",
        organization_id=ORG,
        client_secret_hash="unused",
        name="EHR",
        client_type=ClientType.CONFIDENTIAL,
    )


def make_code(code_hash="code-hash", organization_id=ORG, expires_in=600):
    return AuthorizationCode(
        code_hash=code_hash,
        client_id="hos_ehr",
        organization_id=organization_id,
        subject="dr.house",
        redirect_uri="https://ehr.example/cb",
        scopes=["read"],
        expires_at=NOW + timedelta(seconds=expires_in),
        created_at=NOW,
    )


def make_pair(token_manager, client, lineage_id=None):
    return token_manager.build_token_pair(client, "dr.house", ["read"], TokenContext(), NOW, lineage_id=lineage_id)


class TestCodes:
    @pytest.mark.asyncio
    async def test_create_and_lookup_code(self, store):
        await store.create_code(ORG, make_code())

        code = await store.lookup_code(ORG, "code-hash")

        assert code is not None and code.consumed is False

    @pytest.mark.asyncio
    async def test_codes_are_tenant_scoped(self, store):
        await store.create_code(ORG, make_code())

        assert await store.lookup_code(OTHER_ORG, "code-hash") is None

    @pytest.mark.asyncio
    async def test_create_code_rejects_foreign_organization(self, store):
        with pytest.raises(ValueError):
            await store.create_code(OTHER_ORG, make_code())

    @pytest.mark.asyncio
    async def test_empty_organization_is_rejected(self, store):
        with pytest.raises(ValueError, match="organization_id"):
            await store.lookup_code("", "code-hash")

    @pytest.mark.asyncio
    async def test_consume_code_persists_tokens(self, store, token_manager, client):
        await store.create_code(ORG, make_code())
        tokens = make_pair(token_manager, client)

        await store.consume_code(ORG, "code-hash", tokens, NOW)

        code = await store.lookup_code(ORG, "code-hash")
        assert code.consumed is True
        assert code.lineage_id == tokens.access_record.lineage_id
        assert await store.lookup_token(ORG, tokens.access_record.token_hash) is not None
        assert await store.lookup_token(ORG, tokens.refresh_record.token_hash) is not None

    @pytest.mark.asyncio
    async def test_second_consumption_is_a_replay(self, store, token_manager, client):
        await store.create_code(ORG, make_code())
        first = make_pair(token_manager, client)
        await store.consume_code(ORG, "code-hash", first, NOW)

        with pytest.raises(GrantReplayError) as exc_info:
            await store.consume_code(ORG, "code-hash", make_pair(token_manager, client), NOW)

        assert exc_info.value.lineage_id == first.access_record.lineage_id

    @pytest.mark.asyncio
    async def test_consume_unknown_code(self, store, token_manager, client):
        with pytest.raises(GrantNotFoundError):
            await store.consume_code(ORG, "missing", make_pair(token_manager, client), NOW)

    @pytest.mark.asyncio
    async def test_concurrent_consumption_has_one_winner(self, store, token_manager, client):
        await store.create_code(ORG, make_code())
        pairs = [make_pair(token_manager, client) for _ in range(10)]

        results = await asyncio.gather(
            *(store.consume_code(ORG, "code-hash", pair, NOW) for pair in pairs), return_exceptions=True
        )

        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, GrantReplayError)) == 9


class TestTokens:
    @pytest.mark.asyncio
    async def test_rotate_refresh_token_revokes_old_pair(self, store, token_manager, client):
        first = make_pair(token_manager, client)
        await store.create_token_pair(ORG, first)
        second = make_pair(token_manager, client, lineage_id=first.access_record.lineage_id)

        await store.rotate_refresh_token(ORG, first.refresh_record.token_hash, second, NOW)

        old_refresh = await store.lookup_token(ORG, first.refresh_record.token_hash)
        old_access = await store.lookup_token(ORG, first.access_record.token_hash)
        new_refresh = await store.lookup_token(ORG, second.refresh_record.token_hash)
        assert old_refresh.revoked and old_refresh.revoked_reason == "rotated"
        assert old_access.revoked
        assert not new_refresh.revoked

    @pytest.mark.asyncio
    async def test_rotating_revoked_token_is_a_replay(self, store, token_manager, client):
        first = make_pair(token_manager, client)
        await store.create_token_pair(ORG, first)
        lineage = first.access_record.lineage_id
        await store.rotate_refresh_token(
            ORG, first.refresh_record.token_hash, make_pair(token_manager, client, lineage), NOW
        )

        with pytest.raises(GrantReplayError) as exc_info:
            await store.rotate_refresh_token(
                ORG, first.refresh_record.token_hash, make_pair(token_manager, client, lineage), NOW
            )

        assert exc_info.value.lineage_id == lineage

    @pytest.mark.asyncio
    async def test_rotate_unknown_token(self, store, token_manager, client):
        with pytest.raises(GrantNotFoundError):
            await store.rotate_refresh_token(ORG, "missing", make_pair(token_manager, client), NOW)

    @pytest.mark.asyncio
    async def test_concurrent_rotation_has_one_winner(self, store, token_manager, client):
        first = make_pair(token_manager, client)
        await store.create_token_pair(ORG, first)
        lineage = first.access_record.lineage_id

        results = await asyncio.gather(
            *(
                store.rotate_refresh_token(
                    ORG, first.refresh_record.token_hash, make_pair(token_manager, client, lineage), NOW
                )
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r is None) == 1
        assert all(isinstance(r, GrantReplayError) for r in results if r is not None)

    @pytest.mark.asyncio
    async def test_revoke_token(self, store, token_manager, client):
        tokens = make_pair(token_manager, client)
        await store.create_token_pair(ORG, tokens)

        assert await store.revoke_token(ORG, tokens.access_record.token_hash, reason="client_revoked") is True
        assert await store.revoke_token(ORG, "missing") is False

        access = await store.lookup_token(ORG, tokens.access_record.token_hash)
        refresh = await store.lookup_token(ORG, tokens.refresh_record.token_hash)
        assert access.revoked and access.revoked_reason == "client_revoked"
        assert not refresh.revoked

    @pytest.mark.asyncio
    async def test_revoke_lineage_counts_newly_revoked(self, store, token_manager, client):
        first = make_pair(token_manager, client)
        await store.create_token_pair(ORG, first)
        lineage = first.access_record.lineage_id
        second = make_pair(token_manager, client, lineage)
        await store.rotate_refresh_token(ORG, first.refresh_record.token_hash, second, NOW)

        revoked = await store.revoke_lineage(ORG, lineage)

        # The first pair was already revoked by the rotation
        assert revoked == 2
        assert await store.revoke_lineage(ORG, lineage) == 0

    @pytest.mark.asyncio
    async def test_lineage_revocation_is_tenant_scoped(self, store, token_manager, client):
        tokens = make_pair(token_manager, client)
        await store.create_token_pair(ORG, tokens)

        assert await store.revoke_lineage(OTHER_ORG, tokens.access_record.lineage_id) == 0
        assert await store.lookup_token(OTHER_ORG, tokens.access_record.token_hash) is None

    @pytest.mark.asyncio
    async def test_create_token_pair_rejects_foreign_organization(self, store, token_manager, client):
        with pytest.raises(ValueError):
            await store.create_token_pair(OTHER_ORG, make_pair(token_manager, client))

    @pytest.mark.asyncio
    async def test_records_are_copies(self, store, token_manager, client):
        tokens = make_pair(token_manager, client)
        await store.create_token_pair(ORG, tokens)

        record = await store.lookup_token(ORG, tokens.access_record.token_hash)
        record.scopes.append("admin")

        assert (await store.lookup_token(ORG, tokens.access_record.token_hash)).scopes == ["read"]


class TestPurge:
    @pytest.mark.asyncio
    async def test_purge_expired(self, store, token_manager, client):
        await store.create_code(ORG, make_code("old", expires_in=60))
        await store.create_code(ORG, make_code("fresh", expires_in=600))
        tokens = make_pair(token_manager, client)
        await store.create_token_pair(ORG, tokens)

        assert await store.purge_expired(ORG, NOW + timedelta(seconds=120)) == 1
        assert await store.lookup_code(ORG, "old") is None
        assert await store.lookup_code(ORG, "fresh") is not None

        # the fresh code and the one-hour access token
        assert await store.purge_expired(ORG, NOW + timedelta(hours=2)) == 2
        assert await store.lookup_token(ORG, tokens.access_record.token_hash) is None
        assert await store.lookup_token(ORG, tokens.refresh_record.token_hash) is not None

    @pytest.mark.asyncio
    async def test_purge_leaves_other_tenants_alone(self, store):
        await store.create_code(ORG, make_code("old", expires_in=60))

        assert await store.purge_expired(OTHER_ORG, NOW + timedelta(hours=2)) == 0
        assert await store.lookup_code(ORG, "old") is not None
