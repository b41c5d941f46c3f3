"""
OAuth2 token introspection orchestrator (RFC 7662).

Only authenticated confidential clients of the organization may
introspect. Unknown, expired, revoked and cross-tenant tokens all produce
the same ``{"active": false}`` response.
"""

from typing import Callable, Optional

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
)
from ..logging_utils import oauth2_logger, token_fingerprint
from ..models import (
    ClientCredentials,
    IntrospectionRequest,
    IntrospectionResponse,
    TokenRecord,
    format_scope,
    hash_secret_value,
    utc_now,
)
from .store import OAuth2Store, StoreError, bounded

logger = get_logger(prefix="[OAuth2 Introspection]")

INACTIVE_TOKEN_BODY = {"active": False}


class IntrospectionService:
    def __init__(
        self,
        client_registry: ClientRegistry,
        store: OAuth2Store,
        audit_emitter: AuditEmitter,
        issuer: str = "hospitalos",
        store_timeout: float = 5.0,
        clock: Callable = utc_now,
    ):
        self.client_registry = client_registry
        self.store = store
        self.audit = audit_emitter
        self.issuer = issuer
        self.store_timeout = store_timeout
        self.clock = clock
        self.logger = logger

    async def handle(
        self,
        organization_id: str,
        request: IntrospectionRequest,
        basic_credentials: Optional[ClientCredentials] = None,
    ) -> OAuth2Response:
        """
        Introspect a token on behalf of a resource server.

        ``token_type_hint`` is accepted and ignored; tokens are looked up by
        hash regardless of kind.
        """
        client_id = basic_credentials.client_id if basic_credentials else request.client_id
        token_fp = token_fingerprint(request.token)

        try:
            if not request.token:
                raise invalid_request_error("Missing required parameter: token")
            client = await bounded(
                self.client_registry.authenticate(
                    organization_id,
                    request.client_id,
                    request.client_secret,
                    basic_credentials,
                    require_confidential=True,
                ),
                self.store_timeout,
                "authenticate_client",
            )
            record = await bounded(
                self.store.lookup_token(organization_id, hash_secret_value(request.token)),
                self.store_timeout,
                "lookup_token",
            )
            active = await self._is_active(record, organization_id)
        except OAuth2Exception as e:
            response = oauth2_error_handler.from_exception(e, client_id=client_id, organization_id=organization_id)
            await self._audit_failure(organization_id, client_id, token_fp, e.error_code, e.detail or e.description)
            return response
        except StoreError as e:
            return await self._server_error(organization_id, client_id, token_fp, f"Storage failure: {e}")
        except Exception as e:
            self.logger.error(f"Unexpected error in introspection endpoint (org: {organization_id}): {e}", exc_info=True)
            return await self._server_error(organization_id, client_id, token_fp, f"Unexpected {type(e).__name__}: {e}")

        oauth2_logger.log_introspection(organization_id, client.client_id, active, token_fp)
        if not active:
            return success_response(dict(INACTIVE_TOKEN_BODY))

        body = self._active_body(record)
        await self.audit.emit(
            organization_id,
            AuditAction.INTROSPECTION_SUCCESS,
            AuditResource.TOKEN,
            success=True,
            resource_id=client.client_id,
            metadata={
                "token": token_fp,
                "tokenType": record.kind.value,
                "tokenClientId": record.client_id,
                "subject": record.subject,
                "scope": body["scope"],
            },
        )
        return success_response(body)

    async def _is_active(self, record: Optional[TokenRecord], organization_id: str) -> bool:
        if record is None or record.organization_id != organization_id:
            return False
        if not record.is_active(self.clock()):
            return False
        # Tokens of a disabled or deleted client are no longer honoured
        owner = await bounded(
            self.client_registry.lookup(organization_id, record.client_id),
            self.store_timeout,
            "lookup_client",
        )
        return owner is not None

    def _active_body(self, record: TokenRecord) -> dict:
        response = IntrospectionResponse(
            active=True,
            scope=format_scope(record.scopes),
            client_id=record.client_id,
            exp=int(record.expires_at.timestamp()),
            iat=int(record.issued_at.timestamp()),
            sub=record.subject,
            token_type=record.kind,
            iss=self.issuer,
            hospital_role=record.context.hospital_role,
            department_id=record.context.department_id,
            phi_access=record.context.phi_access,
        )
        return response.model_dump(mode="json", exclude_none=True)

    async def _server_error(
        self, organization_id: str, client_id: Optional[str], token_fp: Optional[str], detail: str
    ) -> OAuth2Response:
        response = oauth2_error_handler.token_error(
            OAuth2ErrorCode.SERVER_ERROR,
            GENERIC_SERVER_ERROR_DESCRIPTION,
            client_id=client_id,
            organization_id=organization_id,
            severity=OAuth2ErrorSeverity.CRITICAL,
            additional_context={"detail": detail},
        )
        await self._audit_failure(organization_id, client_id, token_fp, OAuth2ErrorCode.SERVER_ERROR, detail)
        return response

    async def _audit_failure(
        self,
        organization_id: str,
        client_id: Optional[str],
        token_fp: Optional[str],
        error_code: OAuth2ErrorCode,
        error_message: str,
    ) -> None:
        await self.audit.emit(
            organization_id,
            AuditAction.INTROSPECTION_FAILED,
            AuditResource.TOKEN,
            success=False,
            resource_id=client_id,
            metadata={"token": token_fp, "error": error_code.value},
            error_message=error_message,
        )
