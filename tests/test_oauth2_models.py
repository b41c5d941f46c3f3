"""
Tests for OAuth2 data models and helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from hospital_oauth.routes.oauth2.models import (
    AuditEvent,
    ClientType,
    GrantType,
    OAuthClient,
    OAuthClientRegistration,
    OAuthClientResponse,
    TokenContext,
    TokenKind,
    TokenRecord,
    format_scope,
    generate_access_token,
    generate_client_id,
    generate_refresh_token,
    hash_secret_value,
    parse_scope,
    validate_scopes,
)

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestScopeHelpers:
    def test_parse_scope_splits_and_deduplicates(self):
        assert parse_scope("read  patients:read read") == ["read", "patients:read"]

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_parse_scope_blank(self, value):
        assert parse_scope(value) is None

    @pytest.mark.parametrize("value", ['read "write"', "read\\write", "café"])
    def test_parse_scope_rejects_forbidden_characters(self, value):
        with pytest.raises(ValueError, match="Malformed scope token"):
            parse_scope(value)

    def test_format_scope(self):
        assert format_scope(["read", "write"]) == "read write"

    def test_validate_scopes_rejects_unknown(self):
        assert validate_scopes(["read", "read", "phi:read"]) == ["read", "phi:read"]
        with pytest.raises(ValueError, match="Invalid scope"):
            validate_scopes(["read", "billing"])


class TestGenerators:
    def test_client_id_format(self):
        client_id = generate_client_id()

        assert client_id.startswith("hos_")
        assert len(client_id) == 4 + 32

    def test_tokens_are_prefixed_and_unique(self):
        assert generate_access_token().startswith("at_")
        assert generate_refresh_token().startswith("rt_")
        assert len({generate_access_token() for _ in range(50)}) == 50

    def test_hash_secret_value_is_sha256_hex(self):
        digest = hash_secret_value("abc")

        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestClientRegistration:
    def test_defaults(self):
        registration = OAuthClientRegistration(name="Portal", redirect_uris=["https://portal.example/cb"])

        assert registration.client_type == ClientType.CONFIDENTIAL
        assert registration.scopes == ["read", "write"]
        assert registration.allowed_grant_types == [GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN]
        assert registration.phi_access is False

    @pytest.mark.parametrize(
        "uri",
        ["http://portal.example/cb", "https://portal.example/cb#frag", "ftp://portal.example"],
    )
    def test_rejects_insecure_redirect_uris(self, uri):
        with pytest.raises(ValidationError):
            OAuthClientRegistration(name="Portal", redirect_uris=[uri])

    def test_accepts_localhost_redirects(self):
        registration = OAuthClientRegistration(
            name="Dev", redirect_uris=["http://localhost:3000/cb", "http://127.0.0.1/cb", "http://localhost:3000/cb"]
        )

        assert registration.redirect_uris == ["http://localhost:3000/cb", "http://127.0.0.1/cb"]

    def test_rejects_unknown_scope(self):
        with pytest.raises(ValidationError):
            OAuthClientRegistration(name="Portal", scopes=["read", "everything"])


class TestClientModels:
    def test_allows_grant_and_confidentiality(self):
        client = OAuthClient(
            client_id="hos_1",
            organization_id="hospital-a",
            name="Portal",
            client_type=ClientType.PUBLIC,
        )

        assert client.is_confidential is False
        assert client.allows_grant(GrantType.AUTHORIZATION_CODE)
        assert not client.allows_grant(GrantType.CLIENT_CREDENTIALS)

    def test_client_requires_organization(self):
        with pytest.raises(ValidationError):
            OAuthClient(client_id="hos_1", organization_id="", name="Portal", client_type=ClientType.PUBLIC)

    def test_response_never_contains_secret_hash(self):
        client = OAuthClient(
            client_id="hos_1",
            organization_id="hospital-a",
            client_secret_hash="$2b$04$abcdefghijklmnopqrstuv",
            name="Portal",
            client_type=ClientType.CONFIDENTIAL,
        )

        dumped = OAuthClientResponse.from_client(client, "s3cret").model_dump()

        assert dumped["client_secret"] == "s3cret"
        assert "client_secret_hash" not in dumped


class TestTokenRecord:
    def _record(self, **overrides):
        data = {
            "token_hash": "h",
            "kind": TokenKind.ACCESS,
            "client_id": "hos_1",
            "organization_id": "hospital-a",
            "lineage_id": "l1",
            "issued_at": NOW,
            "expires_at": NOW + timedelta(hours=1),
        }
        data.update(overrides)
        return TokenRecord(**data)

    def test_active_until_expiry(self):
        record = self._record()

        assert record.is_active(NOW)
        assert not record.is_active(NOW + timedelta(hours=1))

    def test_revoked_is_inactive(self):
        assert not self._record(revoked=True).is_active(NOW)

    def test_context_defaults(self):
        assert self._record().context == TokenContext()


class TestAuditEvent:
    def test_sink_payload_uses_camel_case(self):
        event = AuditEvent(
            organization_id="hospital-a",
            action="oauth.token.issued",
            resource="oauth_token",
            resource_id="hos_1",
            success=True,
            metadata={"grantType": "client_credentials"},
            timestamp=NOW,
        )

        payload = event.to_sink_payload()

        assert payload["organizationId"] == "hospital-a"
        assert payload["resourceId"] == "hos_1"
        assert payload["metadata"] == {"grantType": "client_credentials"}
        assert "errorMessage" not in payload
        assert payload["timestamp"].startswith("2026-01-15T09:00:00")
