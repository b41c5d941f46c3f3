"""
End-to-end scenarios through the token, introspection and revocation services.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import ORG, REDIRECT_URI
from hospital_oauth.routes.oauth2.audit_manager import AuditAction
from hospital_oauth.routes.oauth2.models import (
    AuthorizationCode,
    HospitalRole,
    IntrospectionRequest,
    TokenContext,
    TokenRequest,
    hash_secret_value,
)


async def seed_code(server, client, clock, code="abc123", scopes=("patients:read",)):
    """Store a code record directly, as if issued earlier by /oauth2/authorize."""
    await server.store.create_code(
        ORG,
        AuthorizationCode(
            code_hash=hash_secret_value(code),
            client_id=client.client_id,
            organization_id=ORG,
            subject="dr.grey",
            redirect_uri=REDIRECT_URI,
            scopes=list(scopes),
            context=TokenContext(hospital_role=HospitalRole.DOCTOR, department_id="surgery"),
            expires_at=clock() + timedelta(minutes=10),
            created_at=clock(),
        ),
    )


def code_request(client, secret, code="abc123"):
    return TokenRequest(
        grant_type="authorization_code",
        client_id=client.client_id,
        client_secret=secret,
        code=code,
        redirect_uri=REDIRECT_URI,
    )


async def introspect(server, resource_server, token):
    rs_client, rs_secret = resource_server
    request = IntrospectionRequest(token=token, client_id=rs_client.client_id, client_secret=rs_secret)
    return await server.introspection_service.handle(ORG, request)


class TestTokenLifecycleScenarios:
    @pytest.mark.asyncio
    async def test_code_exchange(self, oauth2_server, confidential_client, clock):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)

        result = await oauth2_server.token_service.handle(ORG, code_request(client, secret))

        assert result.status_code == 200
        assert result.body["token_type"] == "Bearer"
        assert result.body["scope"] == "patients:read"
        assert result.body["access_token"]
        assert result.body["refresh_token"]

    @pytest.mark.asyncio
    async def test_second_exchange_of_same_code(self, oauth2_server, confidential_client, clock):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)
        await oauth2_server.token_service.handle(ORG, code_request(client, secret))

        result = await oauth2_server.token_service.handle(ORG, code_request(client, secret))

        assert result.status_code == 400
        assert result.body["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_introspect_expired_token(self, oauth2_server, confidential_client, resource_server, clock):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)
        tokens = (await oauth2_server.token_service.handle(ORG, code_request(client, secret))).body
        clock.advance(3601)

        result = await introspect(oauth2_server, resource_server, tokens["access_token"])

        assert result.status_code == 200
        assert result.body == {"active": False}

    @pytest.mark.asyncio
    async def test_client_credentials_with_wrong_secret(self, oauth2_server, confidential_client, audit_sink):
        client, _ = confidential_client
        request = TokenRequest(grant_type="client_credentials", client_id=client.client_id, client_secret="nope")

        result = await oauth2_server.token_service.handle(ORG, request)

        assert result.status_code == 401
        assert result.body["error"] == "invalid_client"
        assert audit_sink.events[-1].action == AuditAction.TOKEN_FAILED
        assert audit_sink.events[-1].success is False

    @pytest.mark.asyncio
    async def test_rotated_away_refresh_token_revokes_lineage(
        self, oauth2_server, confidential_client, resource_server, clock
    ):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)
        first = (await oauth2_server.token_service.handle(ORG, code_request(client, secret))).body
        rotate = TokenRequest(
            grant_type="refresh_token",
            client_id=client.client_id,
            client_secret=secret,
            refresh_token=first["refresh_token"],
        )
        second = (await oauth2_server.token_service.handle(ORG, rotate)).body
        assert (await introspect(oauth2_server, resource_server, second["access_token"])).body["active"] is True

        replay = await oauth2_server.token_service.handle(ORG, rotate)

        assert replay.status_code == 400
        assert replay.body["error"] == "invalid_grant"
        assert (await introspect(oauth2_server, resource_server, second["access_token"])).body == {"active": False}
        assert (await introspect(oauth2_server, resource_server, second["refresh_token"])).body == {"active": False}


class TestConcurrencyScenarios:
    @pytest.mark.asyncio
    async def test_concurrent_code_exchange_single_winner(self, oauth2_server, confidential_client, clock):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)

        results = await asyncio.gather(
            *(oauth2_server.token_service.handle(ORG, code_request(client, secret)) for _ in range(8))
        )

        assert [r.status_code for r in results].count(200) == 1
        assert [r.status_code for r in results].count(400) == 7

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_winner(self, oauth2_server, confidential_client, clock):
        client, secret = confidential_client
        await seed_code(oauth2_server, client, clock)
        first = (await oauth2_server.token_service.handle(ORG, code_request(client, secret))).body
        rotate = TokenRequest(
            grant_type="refresh_token",
            client_id=client.client_id,
            client_secret=secret,
            refresh_token=first["refresh_token"],
        )

        results = await asyncio.gather(*(oauth2_server.token_service.handle(ORG, rotate) for _ in range(4)))

        assert [r.status_code for r in results].count(200) == 1
        assert all(r.body["error"] == "invalid_grant" for r in results if r.status_code != 200)
