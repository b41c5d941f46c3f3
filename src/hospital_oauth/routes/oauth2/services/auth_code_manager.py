"""
OAuth2 authorization code issuance.

The host application authenticates the user and collects consent, then asks
this service for a code. The code is bound to the client, the redirect URI,
the granted scopes, the PKCE challenge and the hospital claims of the user
at that moment. Only the code's hash is stored.
"""

from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from hospital_oauth.managers.logging_manager import get_logger

from ..error_handler import (
    invalid_request_error,
    invalid_scope_error,
    unauthorized_client_error,
)
from ..logging_utils import token_fingerprint
from ..models import (
    AuthorizationCode,
    AuthorizationGrantRequest,
    GrantType,
    OAuthClient,
    PKCEMethod,
    TokenContext,
    generate_authorization_code,
    hash_secret_value,
    parse_scope,
    utc_now,
)
from .pkce_validator import PKCEValidationError, PKCEValidator
from .store import OAuth2Store, bounded

logger = get_logger(prefix="[OAuth2 AuthCode]")

# Default authorization code expiration (10 minutes as per RFC 6749)
DEFAULT_AUTH_CODE_TTL = 600


class AuthorizationCodeManager:
    """
    Issues authorization codes.

    Validation order matters to the caller: ``redirect_uri`` problems must
    never be sent to the redirect URI, so they are raised as
    ``invalid_request`` before anything else is checked.
    """

    def __init__(
        self,
        store: OAuth2Store,
        code_ttl: int = DEFAULT_AUTH_CODE_TTL,
        default_scopes: Optional[List[str]] = None,
        allow_plain_pkce: bool = False,
        store_timeout: float = 5.0,
        clock: Callable = utc_now,
    ):
        self.store = store
        self.code_ttl = code_ttl
        self.default_scopes = default_scopes or ["read"]
        self.allow_plain_pkce = allow_plain_pkce
        self.store_timeout = store_timeout
        self.clock = clock
        self.logger = logger

    def validate_redirect_uri(self, client: OAuthClient, redirect_uri: str) -> None:
        """Exact string match against the registered URIs (RFC 6749 section 3.1.2.3)."""
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            raise invalid_request_error("redirect_uri is not registered for this client")

    def resolve_scopes(self, client: OAuthClient, scope: Optional[str]) -> List[str]:
        try:
            requested = parse_scope(scope)
        except ValueError:
            raise invalid_scope_error("The requested scope is malformed")
        if requested is None:
            requested = [s for s in self.default_scopes if s in client.scopes]
            if not requested:
                raise invalid_scope_error("No default scope is allowed for this client")
            return requested
        not_allowed = [s for s in requested if s not in client.scopes]
        if not_allowed:
            raise invalid_scope_error(f"Scope not allowed for this client: {' '.join(not_allowed)}")
        return requested

    def resolve_pkce(
        self, client: OAuthClient, challenge: Optional[str], method: Optional[PKCEMethod]
    ) -> Tuple[Optional[str], Optional[PKCEMethod]]:
        if not challenge:
            if method is not None:
                raise invalid_request_error("code_challenge_method without code_challenge")
            if not client.is_confidential:
                raise invalid_request_error("PKCE code_challenge is required for public clients")
            return None, None
        # RFC 7636 section 4.3: the method defaults to plain
        method = method or PKCEMethod.PLAIN
        if method == PKCEMethod.PLAIN and not self.allow_plain_pkce:
            raise invalid_request_error("code_challenge_method must be S256")
        try:
            PKCEValidator.validate_challenge_format(challenge, method.value)
        except PKCEValidationError as e:
            raise invalid_request_error(f"Invalid code_challenge: {e}")
        return challenge, method

    async def issue_code(
        self,
        organization_id: str,
        client: OAuthClient,
        request: AuthorizationGrantRequest,
    ) -> Tuple[str, AuthorizationCode]:
        """
        Validate an authorization request and persist a new code.

        Returns:
            Tuple of the raw code (sent to the client once) and its record

        Raises:
            OAuth2Exception: ``invalid_request`` (including a department outside the
                client's allowed departments), ``unauthorized_client`` or ``invalid_scope``
            StoreError: If the store fails or times out
        """
        self.validate_redirect_uri(client, request.redirect_uri)
        if not client.allows_grant(GrantType.AUTHORIZATION_CODE):
            raise unauthorized_client_error("Client is not allowed to use the authorization_code grant")
        scopes = self.resolve_scopes(client, request.scope)
        challenge, method = self.resolve_pkce(client, request.code_challenge, request.code_challenge_method)
        if not client.allows_department(request.department_id):
            raise invalid_request_error(f"Client is not allowed to act for department {request.department_id}")

        context = TokenContext(
            hospital_role=request.hospital_role,
            department_id=request.department_id,
            phi_access=request.phi_access and client.phi_access,
        )
        now = self.clock()
        code = generate_authorization_code()
        record = AuthorizationCode(
            code_hash=hash_secret_value(code),
            client_id=client.client_id,
            organization_id=organization_id,
            subject=request.subject,
            redirect_uri=request.redirect_uri,
            scopes=scopes,
            code_challenge=challenge,
            code_challenge_method=method,
            context=context,
            expires_at=now + timedelta(seconds=self.code_ttl),
            created_at=now,
        )
        await bounded(self.store.create_code(organization_id, record), self.store_timeout, "create_code")
        self.logger.info(
            f"Issued authorization code {token_fingerprint(code)} to client {client.client_id} "
            f"for subject {request.subject} (org: {organization_id})"
        )
        return code, record
