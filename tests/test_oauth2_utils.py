"""
Tests for request helpers, error responses, logging helpers and the audit emitter.
"""

import base64
from unittest.mock import AsyncMock

import pytest

from hospital_oauth.routes.oauth2.audit_manager import AuditAction, AuditEmitter, AuditResource
from hospital_oauth.routes.oauth2.error_handler import (
    OAuth2ErrorCode,
    OAuth2Exception,
    OAuth2ErrorSeverity,
    invalid_grant_error,
    oauth2_error_handler,
)
from hospital_oauth.routes.oauth2.logging_utils import token_fingerprint
from hospital_oauth.routes.oauth2.utils import (
    build_redirect_url,
    parse_basic_authorization,
    resolve_organization_id,
    subdomain_from_host,
)


def basic(raw: str) -> str:
    return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")


class TestBasicAuthorization:
    def test_decodes_credentials(self):
        credentials = parse_basic_authorization(basic("hos_abc:s3cret"))

        assert credentials.client_id == "hos_abc"
        assert credentials.client_secret == "s3cret"

    def test_url_decodes_both_parts(self):
        credentials = parse_basic_authorization(basic("my%3Aclient:p%40ss+word"))

        assert credentials.client_id == "my:client"
        assert credentials.client_secret == "p@ss word"

    def test_secret_may_contain_colon(self):
        assert parse_basic_authorization(basic("hos_abc:a:b")).client_secret == "a:b"

    @pytest.mark.parametrize("header", [None, "", "Bearer at_123"])
    def test_absent_or_other_scheme(self, header):
        assert parse_basic_authorization(header) is None

    @pytest.mark.parametrize("header", ["Basic ###", basic("no-separator"), basic(":secret-only")])
    def test_malformed(self, header):
        with pytest.raises(OAuth2Exception) as exc_info:
            parse_basic_authorization(header)

        assert exc_info.value.error_code == OAuth2ErrorCode.INVALID_REQUEST


class TestOrganizationResolution:
    @pytest.mark.parametrize(
        "host,expected",
        [
            ("hospital-a.auth.example.com", "hospital-a"),
            ("Hospital-A.auth.example.com:8443", "hospital-a"),
            ("hospital-a.auth.example.com.", "hospital-a"),
            ("auth.example.com", None),
            ("a.b.auth.example.com", None),
            ("hospital-a.other.example", None),
            ("www.auth.example.com", None),
            ("api.auth.example.com", None),
            ("10.0.0.1", None),
            ("[::1]:8000", None),
            ("localhost:8000", None),
            (None, None),
        ],
    )
    def test_subdomain_from_host(self, host, expected):
        assert subdomain_from_host(host, ["www", "api"], "auth.example.com") == expected

    def test_host_ignored_without_base_domain(self):
        assert subdomain_from_host("hospital-a.auth.example.com", ["www", "api"]) is None

    def test_header_wins_over_host(self):
        headers = {"X-Organization-Id": "hospital-b", "host": "hospital-a.auth.example.com"}

        assert resolve_organization_id(headers, base_domain="auth.example.com") == "hospital-b"

    def test_falls_back_to_host(self):
        headers = {"host": "hospital-a.auth.example.com"}

        assert resolve_organization_id(headers, base_domain="auth.example.com") == "hospital-a"

    def test_bare_service_host_is_not_a_tenant(self):
        with pytest.raises(OAuth2Exception) as exc_info:
            resolve_organization_id(
                {"X-Organization-Id": "  ", "host": "auth.example.com"}, base_domain="auth.example.com"
            )

        assert exc_info.value.error_code == OAuth2ErrorCode.INVALID_REQUEST

    def test_host_not_used_without_base_domain(self):
        with pytest.raises(OAuth2Exception):
            resolve_organization_id({"host": "hospital-a.auth.example.com"})


class TestRedirectUrl:
    def test_appends_query(self):
        url = build_redirect_url("https://app.example/cb", {"code": "c d", "state": None})

        assert url == "https://app.example/cb?code=c+d"

    def test_keeps_existing_query(self):
        url = build_redirect_url("https://app.example/cb?tenant=1", {"error": "invalid_scope", "state": "xyz"})

        assert url == "https://app.example/cb?tenant=1&error=invalid_scope&state=xyz"


class TestErrorResponses:
    @pytest.mark.parametrize(
        "code,status",
        [
            (OAuth2ErrorCode.INVALID_REQUEST, 400),
            (OAuth2ErrorCode.INVALID_CLIENT, 401),
            (OAuth2ErrorCode.INVALID_GRANT, 400),
            (OAuth2ErrorCode.INVALID_SCOPE, 400),
            (OAuth2ErrorCode.UNAUTHORIZED_CLIENT, 403),
            (OAuth2ErrorCode.UNSUPPORTED_GRANT_TYPE, 400),
            (OAuth2ErrorCode.SERVER_ERROR, 500),
        ],
    )
    def test_status_codes(self, code, status):
        response = oauth2_error_handler.token_error(code, "description")

        assert response.status_code == status
        assert response.body == {"error": code.value, "error_description": "description"}
        assert response.headers["Cache-Control"] == "no-store"
        assert response.error == code.value

    def test_security_events_are_high_severity(self):
        exc = invalid_grant_error("replayed", security_event="code_replay")

        assert exc.severity == OAuth2ErrorSeverity.HIGH
        assert exc.status_code == 400

    def test_detail_is_not_sent_to_client(self):
        exc = invalid_grant_error("Invalid authorization code", detail="code was issued to another client")

        response = oauth2_error_handler.from_exception(exc)

        assert "another client" not in str(response.body)


class TestTokenFingerprint:
    def test_fingerprint_is_truncated_hash(self):
        fingerprint = token_fingerprint("at_secret")

        assert fingerprint.endswith("...")
        assert len(fingerprint) == 19
        assert "at_secret" not in fingerprint

    def test_empty(self):
        assert token_fingerprint(None) is None
        assert token_fingerprint("") is None


class TestAuditEmitter:
    @pytest.mark.asyncio
    async def test_drops_none_metadata(self, audit_sink):
        emitter = AuditEmitter(audit_sink)

        await emitter.emit(
            "hospital-a",
            AuditAction.TOKEN_ISSUED,
            AuditResource.TOKEN,
            success=True,
            metadata={"scope": "read", "refreshToken": None},
        )

        assert audit_sink.events[0].metadata == {"scope": "read"}

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_raise(self):
        sink = AsyncMock()
        sink.record.side_effect = ConnectionError("audit store down")
        emitter = AuditEmitter(sink)

        await emitter.emit("hospital-a", AuditAction.TOKEN_FAILED, AuditResource.TOKEN, success=False)

        sink.record.assert_awaited_once()
