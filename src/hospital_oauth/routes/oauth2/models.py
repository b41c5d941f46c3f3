"""
OAuth2 provider data models.

This module defines the data models of the authorization server: client
applications, authorization codes, issued token records, hospital claims,
request/response bodies for the token, introspection and revocation
endpoints, and audit events.

Raw secrets never live on a stored model. Codes and tokens are stored by
their SHA-256 hash, client secrets by their bcrypt hash.
"""

import hashlib
import re
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClientType(str, Enum):
    """OAuth2 client types as defined in RFC 6749."""

    CONFIDENTIAL = "confidential"  # Can securely store credentials (server-side apps)
    PUBLIC = "public"  # Cannot securely store credentials (mobile/SPA apps)


class GrantType(str, Enum):
    """Supported OAuth2 grant types."""

    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"
    CLIENT_CREDENTIALS = "client_credentials"


class TokenType(str, Enum):
    """OAuth2 token types."""

    BEARER = "Bearer"


class TokenKind(str, Enum):
    """Kinds of issued tokens; values match RFC 7009 token_type_hint."""

    ACCESS = "access_token"
    REFRESH = "refresh_token"


class PKCEMethod(str, Enum):
    """PKCE code challenge methods."""

    PLAIN = "plain"
    S256 = "S256"


class HospitalRole(str, Enum):
    """Roles a subject can hold inside an organization."""

    ADMINISTRATOR = "administrator"
    DOCTOR = "doctor"
    NURSE = "nurse"
    TECHNICIAN = "technician"
    VIEWER = "viewer"


# Scope Definitions
AVAILABLE_SCOPES = {
    "read": "Read non-clinical organization data",
    "write": "Create and update non-clinical organization data",
    "patients:read": "Read patient demographics and encounters",
    "patients:write": "Create and update patient records",
    "phi:read": "Read protected health information",
    "admin": "Administrative access to organization settings",
}

DEFAULT_CLIENT_SCOPES = ["read", "write"]
DEFAULT_CLIENT_GRANT_TYPES = [GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN]

# RFC 6749 Appendix A.4: scope-token = 1*( %x21 / %x23-5B / %x5D-7E )
_SCOPE_TOKEN_RE = re.compile(r"^[\x21\x23-\x5B\x5D-\x7E]+$")


def parse_scope(scope: Optional[str]) -> Optional[List[str]]:
    """
    Split a space-delimited scope parameter into an ordered, de-duplicated list.

    Returns None when the parameter is absent or blank.

    Raises:
        ValueError: If a scope token contains characters RFC 6749 forbids
    """
    if scope is None or not scope.strip():
        return None
    scopes: List[str] = []
    for token in scope.split(" "):
        if not token:
            continue
        if not _SCOPE_TOKEN_RE.match(token):
            raise ValueError(f"Malformed scope token: {token!r}")
        if token not in scopes:
            scopes.append(token)
    return scopes


def format_scope(scopes: List[str]) -> str:
    return " ".join(scopes)


def validate_scopes(requested_scopes: List[str]) -> List[str]:
    """
    Validate scopes against the catalog of known scopes.

    Raises:
        ValueError: If any scope is unknown
    """
    for scope in requested_scopes:
        if scope not in AVAILABLE_SCOPES:
            raise ValueError(f"Invalid scope: {scope}")
    return list(dict.fromkeys(requested_scopes))


def hash_secret_value(value: str) -> str:
    """SHA-256 hex digest used as the storage key for codes and tokens."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# Utility Functions
def generate_client_id() -> str:
    """Generate a client ID (``hos_`` + 32 hex chars)."""
    return f"hos_{secrets.token_hex(16)}"


def generate_client_secret() -> str:
    """Generate a client secret (256 bits, base64url)."""
    return secrets.token_urlsafe(32)


def generate_authorization_code() -> str:
    return secrets.token_urlsafe(32)


def generate_access_token() -> str:
    return f"at_{secrets.token_urlsafe(32)}"


def generate_refresh_token() -> str:
    return f"rt_{secrets.token_urlsafe(32)}"


# Client Models

def validate_redirect_uris(uris: List[str]) -> List[str]:
    """
    Validate redirect URIs are properly formatted.

    Raises:
        ValueError: If a URI is neither HTTPS nor loopback, or carries a fragment
    """
    for uri in uris:
        if not uri.startswith(("https://", "http://localhost", "http://127.0.0.1")):
            raise ValueError(f"Invalid redirect URI: {uri}. Must use HTTPS or localhost")
        if "#" in uri:
            raise ValueError(f"Invalid redirect URI: {uri}. Fragments are not allowed")
    return list(dict.fromkeys(uris))


def normalize_departments(departments: List[str]) -> List[str]:
    cleaned = [d.strip() for d in departments]
    if any(not d for d in cleaned):
        raise ValueError("Department ids cannot be empty")
    return list(dict.fromkeys(cleaned))


class OAuthClient(BaseModel):
    """
    OAuth2 client document.

    Clients are owned by one organization and are never deleted; disabling
    sets ``is_active`` to False. The secret only changes through rotation.
    An empty ``allowed_departments`` list means no department restriction.
    """

    client_id: str = Field(..., description="Unique client identifier")
    organization_id: str = Field(..., min_length=1, description="Owning organization")
    client_secret_hash: Optional[str] = Field(None, description="bcrypt hash of the client secret")
    name: str = Field(..., description="Human-readable client name")
    description: Optional[str] = Field(None, description="Client description")
    client_type: ClientType = Field(..., description="Client type")
    allowed_grant_types: List[GrantType] = Field(
        default_factory=lambda: list(DEFAULT_CLIENT_GRANT_TYPES), description="Grant types this client may use"
    )
    redirect_uris: List[str] = Field(default_factory=list, description="Registered redirect URIs")
    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_CLIENT_SCOPES), description="Allowed scopes")
    allowed_departments: List[str] = Field(
        default_factory=list, description="Departments codes may be issued for; empty means any"
    )
    phi_access: bool = Field(default=False, description="Whether tokens for this client may carry PHI access")
    audit_required: bool = Field(default=True, description="Whether activity of this client must be audited")
    access_token_ttl: Optional[int] = Field(None, gt=0, description="Access token lifetime override (seconds)")
    refresh_token_ttl: Optional[int] = Field(None, gt=0, description="Refresh token lifetime override (seconds)")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update timestamp")
    is_active: bool = Field(default=True, description="Whether client is active")

    @property
    def is_confidential(self) -> bool:
        return self.client_type == ClientType.CONFIDENTIAL

    def allows_grant(self, grant_type: GrantType) -> bool:
        return grant_type in self.allowed_grant_types

    def allows_department(self, department_id: Optional[str]) -> bool:
        if not self.allowed_departments or department_id is None:
            return True
        return department_id in self.allowed_departments


class OAuthClientRegistration(BaseModel):
    """Client registration request accepted by the admin API."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    client_type: ClientType = ClientType.CONFIDENTIAL
    redirect_uris: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_CLIENT_SCOPES))
    allowed_grant_types: List[GrantType] = Field(default_factory=lambda: list(DEFAULT_CLIENT_GRANT_TYPES))
    allowed_departments: List[str] = Field(default_factory=list)
    phi_access: bool = False
    audit_required: bool = True
    access_token_ttl: Optional[int] = Field(None, gt=0)
    refresh_token_ttl: Optional[int] = Field(None, gt=0)

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: List[str]) -> List[str]:
        return validate_redirect_uris(v)

    @field_validator("scopes")
    @classmethod
    def validate_scope_catalog(cls, v: List[str]) -> List[str]:
        return validate_scopes(v)

    @field_validator("allowed_departments")
    @classmethod
    def validate_departments(cls, v: List[str]) -> List[str]:
        return normalize_departments(v)


class OAuthClientUpdate(BaseModel):
    """
    Partial client update accepted by the admin API.

    Only fields that are set are applied. The client type, the secret and
    the active flag cannot be changed here.
    """

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    redirect_uris: Optional[List[str]] = None
    scopes: Optional[List[str]] = None
    allowed_grant_types: Optional[List[GrantType]] = None
    allowed_departments: Optional[List[str]] = None
    phi_access: Optional[bool] = None
    audit_required: Optional[bool] = None
    access_token_ttl: Optional[int] = Field(None, gt=0)
    refresh_token_ttl: Optional[int] = Field(None, gt=0)

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return validate_redirect_uris(v) if v is not None else v

    @field_validator("scopes")
    @classmethod
    def validate_scope_catalog(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return validate_scopes(v) if v is not None else v

    @field_validator("allowed_departments")
    @classmethod
    def validate_departments(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_departments(v) if v is not None else v

    def changes(self) -> Dict[str, Any]:
        """Fields the caller set, excluding explicit nulls."""
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class OAuthClientResponse(BaseModel):
    """Registration/rotation response. ``client_secret`` is only ever shown here."""

    client_id: str
    client_secret: Optional[str] = None
    organization_id: str
    name: str
    client_type: ClientType
    redirect_uris: List[str]
    scopes: List[str]
    allowed_grant_types: List[GrantType]
    allowed_departments: List[str] = Field(default_factory=list)
    phi_access: bool
    audit_required: bool = True
    is_active: bool
    created_at: datetime

    @classmethod
    def from_client(cls, client: OAuthClient, client_secret: Optional[str] = None) -> "OAuthClientResponse":
        return cls(client_secret=client_secret, **client.model_dump(exclude={"client_secret_hash", "description"}))


# Claims

class TokenContext(BaseModel):
    """Hospital claims copied onto issued tokens."""

    hospital_role: Optional[HospitalRole] = None
    department_id: Optional[str] = None
    phi_access: bool = False


# Authorization Code Models

class AuthorizationCode(BaseModel):
    """
    Authorization code record.

    Only the SHA-256 hash of the code is stored. ``lineage_id`` is set when
    the code is consumed and names the token family it produced.
    """

    code_hash: str = Field(..., description="SHA-256 hash of the authorization code")
    client_id: str = Field(..., description="Client that requested the code")
    organization_id: str = Field(..., min_length=1, description="Owning organization")
    subject: str = Field(..., description="User who authorized the code")
    redirect_uri: str = Field(..., description="Redirect URI used in authorization")
    scopes: List[str] = Field(..., description="Granted scopes")
    code_challenge: Optional[str] = Field(None, description="PKCE code challenge")
    code_challenge_method: Optional[PKCEMethod] = Field(None, description="PKCE challenge method")
    context: TokenContext = Field(default_factory=TokenContext, description="Claims captured at authorization")
    expires_at: datetime = Field(..., description="Code expiration time")
    consumed: bool = Field(default=False, description="Whether code has been exchanged")
    consumed_at: Optional[datetime] = Field(None, description="When the code was exchanged")
    lineage_id: Optional[str] = Field(None, description="Token lineage issued from this code")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


# Token Models

class TokenRecord(BaseModel):
    """
    Issued token record (access or refresh).

    ``paired_token_hash`` links an access token and the refresh token
    issued with it; ``lineage_id`` groups every token descended from one
    authorization.
    """

    token_hash: str = Field(..., description="SHA-256 hash of the token")
    kind: TokenKind = Field(..., description="Access or refresh token")
    client_id: str = Field(..., description="Client the token was issued to")
    organization_id: str = Field(..., min_length=1, description="Owning organization")
    subject: Optional[str] = Field(None, description="User or service the token acts for")
    scopes: List[str] = Field(default_factory=list, description="Granted scopes")
    context: TokenContext = Field(default_factory=TokenContext, description="Hospital claims")
    lineage_id: str = Field(..., description="Token family identifier")
    paired_token_hash: Optional[str] = Field(None, description="Hash of the token issued alongside")
    issued_at: datetime = Field(default_factory=utc_now, description="Issue time")
    expires_at: datetime = Field(..., description="Expiration time")
    revoked: bool = Field(default=False, description="Whether the token has been revoked")
    revoked_reason: Optional[str] = Field(None, description="Why the token was revoked")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


class IssuedTokenPair(BaseModel):
    """Raw tokens plus the records persisted for them."""

    access_token: str
    access_record: TokenRecord
    refresh_token: Optional[str] = None
    refresh_record: Optional[TokenRecord] = None

    @property
    def records(self) -> List[TokenRecord]:
        records = [self.access_record]
        if self.refresh_record is not None:
            records.append(self.refresh_record)
        return records


# Request / Response Models

class ClientCredentials(BaseModel):
    """Client credentials from HTTP Basic authentication, already decoded."""

    client_id: str
    client_secret: str


class TokenRequest(BaseModel):
    """
    OAuth2 token request.

    ``grant_type`` is kept as a plain string so unsupported values are
    reported as ``unsupported_grant_type`` rather than a validation error.
    """

    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    code_verifier: Optional[str] = None


class TokenResponse(BaseModel):
    """OAuth2 token response with hospital claims."""

    access_token: str
    token_type: TokenType = TokenType.BEARER
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str
    hospital_role: Optional[HospitalRole] = None
    department_id: Optional[str] = None
    phi_access: Optional[bool] = None


class IntrospectionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = None
    token_type_hint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection response; inactive responses carry only ``active``."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    sub: Optional[str] = None
    token_type: Optional[TokenKind] = None
    iss: Optional[str] = None
    hospital_role: Optional[HospitalRole] = None
    department_id: Optional[str] = None
    phi_access: Optional[bool] = None


class RevocationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = None
    token_type_hint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class AuthorizationGrantRequest(BaseModel):
    """
    Code issuance request sent by the host application after it has
    authenticated the user and collected consent.
    """

    client_id: str
    redirect_uri: str
    subject: str = Field(..., min_length=1)
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[PKCEMethod] = None
    hospital_role: Optional[HospitalRole] = None
    department_id: Optional[str] = None
    phi_access: bool = False


# OAuth2 Error Models

class OAuth2Error(BaseModel):
    """OAuth2 error response following RFC 6749 section 5.2."""

    error: str
    error_description: Optional[str] = None


# Audit

class AuditEvent(BaseModel):
    """
    Audit record handed to the audit sink.

    Serialized with camelCase keys (``organizationId``, ``resourceId``...).
    ``metadata`` never contains raw tokens or secrets, only fingerprints.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    organization_id: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    def to_sink_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
