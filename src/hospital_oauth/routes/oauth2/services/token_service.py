"""
OAuth2 token endpoint orchestrator.

``TokenService.handle`` runs one token request end to end: grant type
check, client authentication, grant authorization, dispatch to the grant
handler, response shaping and auditing. It never touches HTTP; the route
turns the returned ``OAuth2Response`` into a framework response.
"""

from typing import Callable, Dict, Optional, Tuple

from pydantic.alias_generators import to_camel

from hospital_oauth.managers.logging_manager import get_logger

from ..audit_manager import AuditAction, AuditEmitter, AuditResource
from ..client_manager import ClientRegistry
from ..error_handler import (
    GENERIC_SERVER_ERROR_DESCRIPTION,
    OAuth2ErrorCode,
    OAuth2ErrorSeverity,
    OAuth2Exception,
    OAuth2Response,
    invalid_request_error,
    oauth2_error_handler,
    success_response,
    unauthorized_client_error,
)
from ..logging_utils import oauth2_logger, token_fingerprint
from ..models import (
    ClientCredentials,
    GrantType,
    IssuedTokenPair,
    OAuthClient,
    TokenRequest,
    TokenResponse,
    format_scope,
    utc_now,
)
from .grants import GrantHandler
from .store import StoreError, bounded

logger = get_logger(prefix="[OAuth2 Token Service]")


class TokenService:
    """
    Token endpoint orchestrator.

    Every call produces exactly one audit event: ``oauth.token.issued`` on
    success, ``oauth.token.failed`` otherwise.
    """

    def __init__(
        self,
        client_registry: ClientRegistry,
        grant_handlers: Dict[GrantType, GrantHandler],
        audit_emitter: AuditEmitter,
        store_timeout: float = 5.0,
        clock: Callable = utc_now,
    ):
        self.client_registry = client_registry
        self.grant_handlers = grant_handlers
        self.audit = audit_emitter
        self.store_timeout = store_timeout
        self.clock = clock
        self.logger = logger

    async def handle(
        self,
        organization_id: str,
        request: TokenRequest,
        basic_credentials: Optional[ClientCredentials] = None,
    ) -> OAuth2Response:
        """
        Process a token request.

        Args:
            organization_id: Tenant resolved by the HTTP layer
            request: Parsed token request body
            basic_credentials: Decoded HTTP Basic credentials, if any

        Returns:
            OAuth2Response: token response or RFC 6749 error response
        """
        client_id = basic_credentials.client_id if basic_credentials else request.client_id
        grant_type = request.grant_type
        oauth2_logger.log_token_request(organization_id, client_id, grant_type)

        try:
            client, tokens = await self._issue(organization_id, request, basic_credentials)
        except OAuth2Exception as e:
            response = oauth2_error_handler.from_exception(
                e, client_id=client_id, organization_id=organization_id, additional_context={"grant_type": grant_type}
            )
            await self._audit_failure(
                organization_id,
                client_id,
                grant_type,
                e.error_code,
                e.detail or e.description,
                {"security_event": e.security_event, **e.metadata},
            )
            return response
        except StoreError as e:
            return await self._server_error(organization_id, client_id, grant_type, f"Storage failure: {e}")
        except Exception as e:
            self.logger.error(f"Unexpected error in token endpoint (org: {organization_id}): {e}", exc_info=True)
            return await self._server_error(
                organization_id, client_id, grant_type, f"Unexpected {type(e).__name__}: {e}"
            )

        return await self._success(organization_id, client, grant_type, tokens)

    async def _issue(
        self,
        organization_id: str,
        request: TokenRequest,
        basic_credentials: Optional[ClientCredentials],
    ) -> Tuple[OAuthClient, IssuedTokenPair]:
        if not request.grant_type:
            raise invalid_request_error("Missing required parameter: grant_type")
        try:
            grant_type = GrantType(request.grant_type)
        except ValueError:
            grant_type = None
        handler = self.grant_handlers.get(grant_type) if grant_type else None
        if handler is None:
            raise OAuth2Exception(
                OAuth2ErrorCode.UNSUPPORTED_GRANT_TYPE,
                f"Grant type '{request.grant_type}' is not supported",
            )

        client = await bounded(
            self.client_registry.authenticate(
                organization_id, request.client_id, request.client_secret, basic_credentials
            ),
            self.store_timeout,
            "authenticate_client",
        )
        if not client.allows_grant(grant_type):
            raise unauthorized_client_error(f"Client is not allowed to use the {grant_type.value} grant")

        tokens = await handler.handle(organization_id, client, request, self.clock())
        return client, tokens

    async def _success(
        self, organization_id: str, client: OAuthClient, grant_type: str, tokens: IssuedTokenPair
    ) -> OAuth2Response:
        access = tokens.access_record
        expires_in = int((access.expires_at - access.issued_at).total_seconds())
        with_claims = grant_type != GrantType.CLIENT_CREDENTIALS.value
        body = TokenResponse(
            access_token=tokens.access_token,
            expires_in=expires_in,
            refresh_token=tokens.refresh_token,
            scope=format_scope(access.scopes),
            hospital_role=access.context.hospital_role if with_claims else None,
            department_id=access.context.department_id if with_claims else None,
            phi_access=access.context.phi_access if with_claims else None,
        )
        access_fp = token_fingerprint(tokens.access_token)
        oauth2_logger.log_token_issued(
            organization_id,
            client.client_id,
            access.subject,
            access.scopes,
            expires_in,
            tokens.refresh_token is not None,
            access_token_fingerprint=access_fp,
            additional_context={"grant_type": grant_type, "lineage_id": access.lineage_id},
        )
        await self.audit.emit(
            organization_id,
            AuditAction.TOKEN_ISSUED,
            AuditResource.TOKEN,
            success=True,
            resource_id=client.client_id,
            metadata={
                "grantType": grant_type,
                "scope": body.scope,
                "subject": access.subject,
                "accessToken": access_fp,
                "refreshToken": token_fingerprint(tokens.refresh_token),
                "lineageId": access.lineage_id,
                "phiAccess": body.phi_access,
            },
        )
        return success_response(body.model_dump(mode="json", exclude_none=True))

    async def _server_error(
        self, organization_id: str, client_id: Optional[str], grant_type: Optional[str], detail: str
    ) -> OAuth2Response:
        response = oauth2_error_handler.token_error(
            OAuth2ErrorCode.SERVER_ERROR,
            GENERIC_SERVER_ERROR_DESCRIPTION,
            client_id=client_id,
            organization_id=organization_id,
            severity=OAuth2ErrorSeverity.CRITICAL,
            additional_context={"grant_type": grant_type, "detail": detail},
        )
        await self._audit_failure(organization_id, client_id, grant_type, OAuth2ErrorCode.SERVER_ERROR, detail)
        return response

    async def _audit_failure(
        self,
        organization_id: str,
        client_id: Optional[str],
        grant_type: Optional[str],
        error_code: OAuth2ErrorCode,
        error_message: str,
        extra: Optional[dict] = None,
    ) -> None:
        metadata = {"grantType": grant_type, "error": error_code.value}
        for key, value in (extra or {}).items():
            metadata[to_camel(key)] = value
        await self.audit.emit(
            organization_id,
            AuditAction.TOKEN_FAILED,
            AuditResource.TOKEN,
            success=False,
            resource_id=client_id,
            metadata=metadata,
            error_message=error_message,
        )
