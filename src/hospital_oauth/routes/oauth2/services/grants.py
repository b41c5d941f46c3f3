"""
OAuth2 grant handlers.

One handler per supported grant type. A handler receives an already
authenticated client that is allowed to use the grant, validates the grant
itself, and persists the issued tokens through the store's atomic
operations. Failures are raised as ``OAuth2Exception``; store failures
propagate as ``StoreError`` and become ``server_error`` in the token
service.

Replay handling: presenting a consumed authorization code or a revoked
refresh token (including losing a concurrent exchange or rotation) revokes
every token of the lineage issued from that grant.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from hospital_oauth.managers.logging_manager import get_logger

from ..error_handler import (
    OAuth2ErrorSeverity,
    invalid_grant_error,
    invalid_request_error,
    invalid_scope_error,
    unauthorized_client_error,
)
from ..logging_utils import OAuth2EventType, oauth2_logger
from ..models import (
    AuthorizationCode,
    GrantType,
    IssuedTokenPair,
    OAuthClient,
    PKCEMethod,
    TokenContext,
    TokenKind,
    TokenRequest,
    parse_scope,
)
from .claims import CodeBoundClaimsProvider, SubjectClaimsProvider
from .pkce_validator import PKCEValidationError, PKCEValidator
from .store import GrantNotFoundError, GrantReplayError, OAuth2Store, bounded
from .token_manager import TokenManager

logger = get_logger(prefix="[OAuth2 Grants]")


def requested_scopes(scope: Optional[str]) -> Optional[List[str]]:
    try:
        return parse_scope(scope)
    except ValueError:
        raise invalid_scope_error("The requested scope is malformed")


def cap_phi_access(context: TokenContext, client: OAuthClient) -> TokenContext:
    """PHI access is only ever granted to clients registered for it."""
    if context.phi_access and not client.phi_access:
        return context.model_copy(update={"phi_access": False})
    return context


class GrantHandler(ABC):
    """Base class of grant handlers."""

    grant_type: GrantType

    def __init__(self, store: OAuth2Store, token_manager: TokenManager, store_timeout: float = 5.0):
        self.store = store
        self.token_manager = token_manager
        self.store_timeout = store_timeout
        self.logger = logger

    @abstractmethod
    async def handle(
        self, organization_id: str, client: OAuthClient, request: TokenRequest, now: datetime
    ) -> IssuedTokenPair:
        """
        Validate the grant and persist the issued tokens.

        Raises:
            OAuth2Exception: On any grant validation failure
            StoreError: If the store fails or times out
        """

    async def _call(self, awaitable, operation: str):
        return await bounded(awaitable, self.store_timeout, operation)

    async def _reject_replay(
        self,
        organization_id: str,
        client: OAuthClient,
        lineage_id: Optional[str],
        event_type: OAuth2EventType,
        description: str,
    ) -> None:
        """Revoke the lineage of a replayed grant, then raise ``invalid_grant``."""
        revoked = 0
        if lineage_id:
            revoked = await self._call(
                self.store.revoke_lineage(organization_id, lineage_id, reason=event_type.value), "revoke_lineage"
            )
        oauth2_logger.log_security_event(
            event_type,
            organization_id,
            client.client_id,
            description,
            severity="high",
            additional_context={"lineage_id": lineage_id, "revoked_tokens": revoked},
        )
        raise invalid_grant_error(
            description,
            security_event=event_type.value,
            metadata={"lineage_revoked": bool(lineage_id), "lineage_id": lineage_id, "revoked_tokens": revoked},
        )


class AuthorizationCodeGrant(GrantHandler):
    """authorization_code grant (RFC 6749 section 4.1.3, RFC 7636 section 4.6)."""

    grant_type = GrantType.AUTHORIZATION_CODE

    def __init__(
        self,
        store: OAuth2Store,
        token_manager: TokenManager,
        claims_provider: Optional[SubjectClaimsProvider] = None,
        allow_plain_pkce: bool = False,
        store_timeout: float = 5.0,
    ):
        super().__init__(store, token_manager, store_timeout)
        self.claims_provider = claims_provider or CodeBoundClaimsProvider()
        self.allow_plain_pkce = allow_plain_pkce

    async def handle(
        self, organization_id: str, client: OAuthClient, request: TokenRequest, now: datetime
    ) -> IssuedTokenPair:
        if not request.code:
            raise invalid_request_error("Missing required parameter: code")
        if not request.redirect_uri:
            raise invalid_request_error("Missing required parameter: redirect_uri")

        code_hash = self.token_manager.hash_token(request.code)
        code = await self._call(self.store.lookup_code(organization_id, code_hash), "lookup_code")
        if code is None:
            raise invalid_grant_error("Invalid authorization code", detail="unknown code")
        if code.client_id != client.client_id:
            raise invalid_grant_error("Invalid authorization code", detail="code was issued to another client")
        if code.consumed:
            await self._reject_replay(
                organization_id,
                client,
                code.lineage_id,
                OAuth2EventType.CODE_REPLAY,
                "Authorization code has already been used",
            )
        if code.is_expired(now):
            raise invalid_grant_error("Authorization code has expired")
        if code.redirect_uri != request.redirect_uri:
            raise invalid_grant_error("redirect_uri does not match the authorization request")
        self._verify_pkce(organization_id, client, code, request.code_verifier)

        context = await self._call(
            self.claims_provider.resolve(organization_id, code.subject, code.context), "resolve_claims"
        )
        tokens = self.token_manager.build_token_pair(
            client, code.subject, code.scopes, cap_phi_access(context, client), now
        )
        try:
            await self._call(self.store.consume_code(organization_id, code_hash, tokens, now), "consume_code")
        except GrantReplayError as e:
            await self._reject_replay(
                organization_id,
                client,
                e.lineage_id,
                OAuth2EventType.CODE_REPLAY,
                "Authorization code has already been used",
            )
        except GrantNotFoundError:
            raise invalid_grant_error("Invalid authorization code", detail="code vanished before consumption")
        return tokens

    def _verify_pkce(
        self, organization_id: str, client: OAuthClient, code: AuthorizationCode, verifier: Optional[str]
    ) -> None:
        if not code.code_challenge:
            if verifier:
                raise invalid_grant_error("code_verifier was sent but no code_challenge was recorded")
            if not client.is_confidential:
                raise invalid_grant_error("PKCE is required for public clients")
            return
        if not verifier:
            raise invalid_grant_error("Missing code_verifier")

        method = code.code_challenge_method or PKCEMethod.S256
        if method == PKCEMethod.PLAIN and not self.allow_plain_pkce:
            raise invalid_grant_error("PKCE method plain is not allowed")
        try:
            valid = PKCEValidator.validate_code_challenge(verifier, code.code_challenge, method.value)
        except PKCEValidationError as e:
            self.logger.debug(f"Malformed code_verifier from client {client.client_id}: {e}")
            valid = False
        if not valid:
            oauth2_logger.log_security_event(
                OAuth2EventType.PKCE_VALIDATION_FAILED,
                organization_id,
                client.client_id,
                "PKCE code verifier validation failed",
                severity="medium",
                additional_context={"code_challenge_method": method.value},
            )
            raise invalid_grant_error(
                "PKCE code verifier validation failed",
                severity=OAuth2ErrorSeverity.MEDIUM,
            )


class RefreshTokenGrant(GrantHandler):
    """refresh_token grant with rotation (RFC 6749 section 6)."""

    grant_type = GrantType.REFRESH_TOKEN

    async def handle(
        self, organization_id: str, client: OAuthClient, request: TokenRequest, now: datetime
    ) -> IssuedTokenPair:
        if not request.refresh_token:
            raise invalid_request_error("Missing required parameter: refresh_token")

        token_hash = self.token_manager.hash_token(request.refresh_token)
        record = await self._call(self.store.lookup_token(organization_id, token_hash), "lookup_token")
        if record is None or record.kind != TokenKind.REFRESH:
            raise invalid_grant_error("Invalid refresh token", detail="unknown refresh token")
        if record.client_id != client.client_id:
            raise invalid_grant_error("Invalid refresh token", detail="refresh token was issued to another client")
        if record.revoked:
            await self._reject_replay(
                organization_id,
                client,
                record.lineage_id,
                OAuth2EventType.REFRESH_TOKEN_REPLAY,
                "Refresh token has already been used or revoked",
            )
        if record.is_expired(now):
            raise invalid_grant_error("Refresh token has expired")

        scopes = requested_scopes(request.scope)
        if scopes is None:
            scopes = list(record.scopes)
        else:
            exceeding = [s for s in scopes if s not in record.scopes]
            if exceeding:
                raise invalid_scope_error(f"Scope exceeds the original grant: {' '.join(exceeding)}")

        tokens = self.token_manager.build_token_pair(
            client,
            record.subject,
            scopes,
            cap_phi_access(record.context, client),
            now,
            lineage_id=record.lineage_id,
        )
        try:
            await self._call(
                self.store.rotate_refresh_token(organization_id, token_hash, tokens, now), "rotate_refresh_token"
            )
        except GrantReplayError as e:
            await self._reject_replay(
                organization_id,
                client,
                e.lineage_id or record.lineage_id,
                OAuth2EventType.REFRESH_TOKEN_REPLAY,
                "Refresh token has already been used or revoked",
            )
        except GrantNotFoundError:
            raise invalid_grant_error("Invalid refresh token", detail="refresh token vanished before rotation")

        oauth2_logger.log_client_event(
            OAuth2EventType.TOKEN_REFRESH, organization_id, client.client_id, {"lineage_id": record.lineage_id}
        )
        return tokens


class ClientCredentialsGrant(GrantHandler):
    """client_credentials grant (RFC 6749 section 4.4); no refresh token, no hospital claims."""

    grant_type = GrantType.CLIENT_CREDENTIALS

    async def handle(
        self, organization_id: str, client: OAuthClient, request: TokenRequest, now: datetime
    ) -> IssuedTokenPair:
        if not client.is_confidential:
            raise unauthorized_client_error("Public clients cannot use the client_credentials grant")

        scopes = requested_scopes(request.scope)
        if scopes is None:
            scopes = list(client.scopes)
        else:
            not_allowed = [s for s in scopes if s not in client.scopes]
            if not_allowed:
                raise invalid_scope_error(f"Scope not allowed for this client: {' '.join(not_allowed)}")

        tokens = self.token_manager.build_token_pair(
            client, client.client_id, scopes, TokenContext(), now, include_refresh_token=False
        )
        await self._call(self.store.create_token_pair(organization_id, tokens), "create_token_pair")
        return tokens


def build_grant_handlers(
    store: OAuth2Store,
    token_manager: TokenManager,
    claims_provider: Optional[SubjectClaimsProvider] = None,
    allow_plain_pkce: bool = False,
    store_timeout: float = 5.0,
) -> Dict[GrantType, GrantHandler]:
    """Handlers for every supported grant type, keyed by grant type."""
    handlers: List[GrantHandler] = [
        AuthorizationCodeGrant(
            store,
            token_manager,
            claims_provider=claims_provider,
            allow_plain_pkce=allow_plain_pkce,
            store_timeout=store_timeout,
        ),
        RefreshTokenGrant(store, token_manager, store_timeout=store_timeout),
        ClientCredentialsGrant(store, token_manager, store_timeout=store_timeout),
    ]
    return {handler.grant_type: handler for handler in handlers}
