"""
Pytest configuration for the OAuth2 authorization server tests.

Provides an in-memory ``OAuth2Server`` with a frozen clock and a capturing
audit sink, registered confidential and public clients, helpers that issue
authorization codes, and a FastAPI ``TestClient`` bound to the same server.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from hospital_oauth.config import Settings  # noqa: E402
from hospital_oauth.main import create_app  # noqa: E402
from hospital_oauth.routes.oauth2.audit_manager import AuditSink  # noqa: E402
from hospital_oauth.routes.oauth2.database import InMemoryClientStore  # noqa: E402
from hospital_oauth.routes.oauth2.models import (  # noqa: E402
    AuthorizationGrantRequest,
    ClientType,
    GrantType,
    HospitalRole,
    OAuthClientRegistration,
)
from hospital_oauth.routes.oauth2.server import OAuth2Server  # noqa: E402
from hospital_oauth.routes.oauth2.services.memory_store import InMemoryOAuth2Store  # noqa: E402
from hospital_oauth.routes.oauth2.services.pkce_validator import PKCEValidator  # noqa: E402

ORG = "hospital-a"
OTHER_ORG = "hospital-b"
REDIRECT_URI = "https://ehr.hospital-a.example/callback"
MOBILE_REDIRECT_URI = "https://mobile.hospital-a.example/callback"
INTERNAL_API_KEY = "test-internal-key"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CapturingAuditSink(AuditSink):
    def __init__(self):
        self.events = []

    async def record(self, event) -> None:
        self.events.append(event)

    async def get_audit_trail(self, organization_id, limit=100):
        events = [e.to_sink_payload() for e in reversed(self.events) if e.organization_id == organization_id]
        return events[:limit]

    def actions(self) -> List[str]:
        return [event.action for event in self.events]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def test_settings():
    """Settings for tests: in-memory backends, cheap bcrypt, internal API enabled."""
    return Settings(
        OAUTH2_STORE_BACKEND="memory",
        OAUTH2_CLIENT_BACKEND="memory",
        BCRYPT_ROUNDS=4,
        INTERNAL_API_KEY=INTERNAL_API_KEY,
        METRICS_ENABLED=False,
        BASE_URL="https://auth.example.com",
        TENANT_BASE_DOMAIN="auth.example.com",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def audit_sink():
    return CapturingAuditSink()


@pytest.fixture
def oauth2_server(test_settings, clock, audit_sink):
    return OAuth2Server(
        InMemoryOAuth2Store(),
        InMemoryClientStore(),
        audit_sink=audit_sink,
        config=test_settings,
        clock=clock,
    )


def confidential_registration(**overrides) -> OAuthClientRegistration:
    data = {
        "name": "EHR Portal",
        "client_type": ClientType.CONFIDENTIAL,
        "redirect_uris": [REDIRECT_URI],
        "scopes": ["read", "write", "patients:read", "phi:read"],
        "allowed_grant_types": [GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN, GrantType.CLIENT_CREDENTIALS],
        "phi_access": True,
    }
    data.update(overrides)
    return OAuthClientRegistration(**data)


def public_registration(**overrides) -> OAuthClientRegistration:
    data = {
        "name": "Nurse Mobile App",
        "client_type": ClientType.PUBLIC,
        "redirect_uris": [MOBILE_REDIRECT_URI],
        "scopes": ["read", "patients:read"],
        "allowed_grant_types": [GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN],
    }
    data.update(overrides)
    return OAuthClientRegistration(**data)


@pytest_asyncio.fixture
async def confidential_client(oauth2_server):
    """Registered confidential client as ``(client, secret)``."""
    return await oauth2_server.client_registry.register_client(ORG, confidential_registration())


@pytest_asyncio.fixture
async def public_client(oauth2_server):
    client, _ = await oauth2_server.client_registry.register_client(ORG, public_registration())
    return client


@pytest_asyncio.fixture
async def resource_server(oauth2_server):
    """Confidential client used by a resource server to introspect tokens."""
    return await oauth2_server.client_registry.register_client(
        ORG,
        confidential_registration(
            name="Lab Results API",
            redirect_uris=[],
            allowed_grant_types=[GrantType.CLIENT_CREDENTIALS],
            scopes=["read"],
            phi_access=False,
        ),
    )


async def issue_code(
    server: OAuth2Server,
    client,
    subject: str = "dr.house",
    scope: Optional[str] = "read patients:read",
    redirect_uri: Optional[str] = None,
    verifier: Optional[str] = None,
    hospital_role: Optional[HospitalRole] = HospitalRole.DOCTOR,
    department_id: Optional[str] = "cardiology",
    phi_access: bool = False,
    organization_id: str = ORG,
) -> str:
    """Issue a code for ``client``; a PKCE S256 challenge is added when ``verifier`` is given."""
    request = AuthorizationGrantRequest(
        client_id=client.client_id,
        redirect_uri=redirect_uri or client.redirect_uris[0],
        subject=subject,
        scope=scope,
        state="xyz",
        code_challenge=PKCEValidator.generate_code_challenge(verifier) if verifier else None,
        code_challenge_method="S256" if verifier else None,
        hospital_role=hospital_role,
        department_id=department_id,
        phi_access=phi_access,
    )
    code, _ = await server.auth_code_manager.issue_code(organization_id, client, request)
    return code


@pytest.fixture
def verifier():
    return PKCEValidator.generate_code_verifier()


@pytest.fixture
def http_client(oauth2_server):
    """TestClient bound to the in-memory server."""
    with TestClient(create_app(oauth2_server, enable_metrics=False)) as client:
        yield client
