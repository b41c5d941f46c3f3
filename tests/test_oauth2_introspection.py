"""
Tests for token introspection (RFC 7662).
"""

from unittest.mock import AsyncMock

import pytest

from conftest import ORG, OTHER_ORG, confidential_registration, issue_code
from hospital_oauth.routes.oauth2.audit_manager import AuditAction
from hospital_oauth.routes.oauth2.models import ClientCredentials, IntrospectionRequest, TokenRequest
from hospital_oauth.routes.oauth2.services.store import StoreError


async def issue_tokens(server, client, secret, **code_kwargs):
    code = await issue_code(server, client, **code_kwargs)
    request = TokenRequest(
        grant_type="authorization_code",
        client_id=client.client_id,
        client_secret=secret,
        code=code,
        redirect_uri=client.redirect_uris[0],
    )
    return (await server.token_service.handle(ORG, request)).body


async def introspect(server, caller, token, organization_id=ORG):
    client, secret = caller
    request = IntrospectionRequest(token=token, client_id=client.client_id, client_secret=secret)
    return await server.introspection_service.handle(organization_id, request)


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_active_access_token(self, oauth2_server, confidential_client, resource_server, clock, audit_sink):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret, phi_access=True)
        audit_sink.clear()

        result = await introspect(oauth2_server, resource_server, tokens["access_token"])

        assert result.status_code == 200
        body = result.body
        assert body["active"] is True
        assert body["client_id"] == client.client_id
        assert body["sub"] == "dr.house"
        assert body["scope"] == "read patients:read"
        assert body["token_type"] == "access_token"
        assert body["iss"] == "hospitalos"
        assert body["iat"] == int(clock().timestamp())
        assert body["exp"] == int(clock().timestamp()) + 3600
        assert body["hospital_role"] == "doctor"
        assert body["department_id"] == "cardiology"
        assert body["phi_access"] is True
        assert audit_sink.actions() == [AuditAction.INTROSPECTION_SUCCESS]
        assert audit_sink.events[0].metadata["tokenClientId"] == client.client_id

    @pytest.mark.asyncio
    async def test_active_refresh_token(self, oauth2_server, confidential_client, resource_server):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)

        result = await introspect(oauth2_server, resource_server, tokens["refresh_token"])

        assert result.body["active"] is True
        assert result.body["token_type"] == "refresh_token"

    @pytest.mark.asyncio
    async def test_token_type_hint_is_ignored(self, oauth2_server, confidential_client, resource_server):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        rs_client, rs_secret = resource_server
        request = IntrospectionRequest(
            token=tokens["access_token"],
            token_type_hint="refresh_token",
            client_id=rs_client.client_id,
            client_secret=rs_secret,
        )

        result = await oauth2_server.introspection_service.handle(ORG, request)

        assert result.body["active"] is True

    @pytest.mark.asyncio
    async def test_unknown_token_is_inactive(self, oauth2_server, resource_server, audit_sink):
        result = await introspect(oauth2_server, resource_server, "at_unknown")

        assert result.status_code == 200
        assert result.body == {"active": False}
        assert audit_sink.events == []

    @pytest.mark.asyncio
    async def test_expired_token_is_inactive(self, oauth2_server, confidential_client, resource_server, clock):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        clock.advance(3600)

        result = await introspect(oauth2_server, resource_server, tokens["access_token"])

        assert result.body == {"active": False}

    @pytest.mark.asyncio
    async def test_revoked_token_is_inactive(self, oauth2_server, confidential_client, resource_server):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        rotate = TokenRequest(
            grant_type="refresh_token",
            client_id=client.client_id,
            client_secret=secret,
            refresh_token=tokens["refresh_token"],
        )
        await oauth2_server.token_service.handle(ORG, rotate)

        result = await introspect(oauth2_server, resource_server, tokens["access_token"])

        assert result.body == {"active": False}

    @pytest.mark.asyncio
    async def test_tokens_of_disabled_client_are_inactive(
        self, oauth2_server, confidential_client, resource_server, audit_sink
    ):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        assert (await introspect(oauth2_server, resource_server, tokens["access_token"])).body["active"] is True
        await oauth2_server.client_registry.disable_client(ORG, client.client_id)
        audit_sink.clear()

        access = await introspect(oauth2_server, resource_server, tokens["access_token"])
        refresh = await introspect(oauth2_server, resource_server, tokens["refresh_token"])

        assert access.status_code == 200
        assert access.body == {"active": False}
        assert refresh.body == {"active": False}
        assert AuditAction.INTROSPECTION_SUCCESS not in audit_sink.actions()

    @pytest.mark.asyncio
    async def test_token_of_another_organization_is_inactive(self, oauth2_server, confidential_client):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        other_rs = await oauth2_server.client_registry.register_client(
            OTHER_ORG,
            confidential_registration(redirect_uris=[], allowed_grant_types=["client_credentials"], scopes=["read"]),
        )

        result = await introspect(oauth2_server, other_rs, tokens["access_token"], organization_id=OTHER_ORG)

        assert result.status_code == 200
        assert result.body == {"active": False}

    @pytest.mark.asyncio
    async def test_basic_authentication(self, oauth2_server, confidential_client, resource_server):
        client, secret = confidential_client
        tokens = await issue_tokens(oauth2_server, client, secret)
        rs_client, rs_secret = resource_server

        result = await oauth2_server.introspection_service.handle(
            ORG,
            IntrospectionRequest(token=tokens["access_token"]),
            ClientCredentials(client_id=rs_client.client_id, client_secret=rs_secret),
        )

        assert result.body["active"] is True


class TestIntrospectionErrors:
    @pytest.mark.asyncio
    async def test_missing_token(self, oauth2_server, resource_server, audit_sink):
        result = await introspect(oauth2_server, resource_server, None)

        assert result.status_code == 400
        assert result.body["error"] == "invalid_request"
        assert audit_sink.actions() == [AuditAction.INTROSPECTION_FAILED]

    @pytest.mark.asyncio
    async def test_wrong_secret(self, oauth2_server, resource_server):
        client, _ = resource_server

        result = await introspect(oauth2_server, (client, "wrong"), "at_x")

        assert result.status_code == 401
        assert result.body["error"] == "invalid_client"

    @pytest.mark.asyncio
    async def test_client_id_without_secret(self, oauth2_server, resource_server):
        client, _ = resource_server

        result = await introspect(oauth2_server, (client, None), "at_x")

        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_public_client_cannot_introspect(self, oauth2_server, public_client):
        result = await introspect(oauth2_server, (public_client, None), "at_x")

        assert result.status_code == 401
        assert result.body["error"] == "invalid_client"

    @pytest.mark.asyncio
    async def test_no_client_authentication(self, oauth2_server):
        result = await oauth2_server.introspection_service.handle(ORG, IntrospectionRequest(token="at_x"))

        assert result.status_code == 400
        assert result.body["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_store_failure(self, oauth2_server, resource_server, audit_sink):
        oauth2_server.store.lookup_token = AsyncMock(side_effect=StoreError("redis down"))

        result = await introspect(oauth2_server, resource_server, "at_x")

        assert result.status_code == 500
        assert result.body["error"] == "server_error"
        assert audit_sink.events[-1].metadata["error"] == "server_error"
