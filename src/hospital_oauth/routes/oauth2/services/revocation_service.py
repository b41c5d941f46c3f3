"""
OAuth2 token revocation orchestrator (RFC 7009).

An authenticated confidential client may revoke tokens issued to itself.
The response is ``200`` with an empty body whether or not the token was
found, so revocation reveals nothing about other clients' tokens.

Revoking a refresh token revokes its whole lineage (every access and
refresh token descended from the same authorization); revoking an access
token revokes that token only.
"""

from typing import Optional

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
from ..logging_utils import OAuth2EventType, oauth2_logger, token_fingerprint
from ..models import ClientCredentials, RevocationRequest, TokenKind, hash_secret_value
from .store import OAuth2Store, StoreError, bounded

logger = get_logger(prefix="[OAuth2 Revocation]")


class RevocationService:
    def __init__(
        self,
        client_registry: ClientRegistry,
        store: OAuth2Store,
        audit_emitter: AuditEmitter,
        store_timeout: float = 5.0,
    ):
        self.client_registry = client_registry
        self.store = store
        self.audit = audit_emitter
        self.store_timeout = store_timeout
        self.logger = logger

    async def handle(
        self,
        organization_id: str,
        request: RevocationRequest,
        basic_credentials: Optional[ClientCredentials] = None,
    ) -> OAuth2Response:
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
            token_type, revoked = await self._revoke(organization_id, client.client_id, request.token)
        except OAuth2Exception as e:
            response = oauth2_error_handler.from_exception(e, client_id=client_id, organization_id=organization_id)
            await self._audit_failure(organization_id, client_id, token_fp, e.error_code.value, e.detail or e.description)
            return response
        except StoreError as e:
            return await self._server_error(organization_id, client_id, token_fp, f"Storage failure: {e}")
        except Exception as e:
            self.logger.error(f"Unexpected error in revocation endpoint (org: {organization_id}): {e}", exc_info=True)
            return await self._server_error(organization_id, client_id, token_fp, f"Unexpected {type(e).__name__}: {e}")

        if revoked:
            oauth2_logger.log_client_event(
                OAuth2EventType.TOKEN_REVOKED,
                organization_id,
                client.client_id,
                {"token": token_fp, "token_type": token_type, "revoked_tokens": revoked},
            )
        await self.audit.emit(
            organization_id,
            AuditAction.TOKEN_REVOKED,
            AuditResource.TOKEN,
            success=True,
            resource_id=client.client_id,
            metadata={"token": token_fp, "tokenType": token_type, "revokedTokens": revoked},
        )
        return success_response(None)

    async def _revoke(self, organization_id: str, client_id: str, token: str):
        """Returns the token kind (None when not revocable by this client) and the number of tokens revoked."""
        record = await bounded(
            self.store.lookup_token(organization_id, hash_secret_value(token)), self.store_timeout, "lookup_token"
        )
        if record is None or record.client_id != client_id:
            return None, 0
        if record.kind == TokenKind.REFRESH:
            revoked = await bounded(
                self.store.revoke_lineage(organization_id, record.lineage_id, reason="client_revoked"),
                self.store_timeout,
                "revoke_lineage",
            )
        else:
            revoked = int(
                await bounded(
                    self.store.revoke_token(organization_id, record.token_hash, reason="client_revoked"),
                    self.store_timeout,
                    "revoke_token",
                )
            )
        return record.kind.value, revoked

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
        await self._audit_failure(organization_id, client_id, token_fp, OAuth2ErrorCode.SERVER_ERROR.value, detail)
        return response

    async def _audit_failure(
        self, organization_id: str, client_id: Optional[str], token_fp: Optional[str], error: str, error_message: str
    ) -> None:
        await self.audit.emit(
            organization_id,
            AuditAction.TOKEN_REVOCATION_FAILED,
            AuditResource.TOKEN,
            success=False,
            resource_id=client_id,
            metadata={"token": token_fp, "error": error},
            error_message=error_message,
        )
