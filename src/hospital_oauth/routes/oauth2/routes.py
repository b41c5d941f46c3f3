"""
OAuth2 authorization server routes.

This module implements the HTTP surface of the authorization server:
- Token endpoint (/oauth2/token) for the authorization_code, refresh_token
  and client_credentials grants
- Introspection endpoint (/oauth2/introspect, RFC 7662)
- Revocation endpoint (/oauth2/revoke, RFC 7009)
- Internal code issuance (/oauth2/authorize) for the host application,
  which authenticates the user and collects consent itself
- Internal client administration (/oauth2/clients)
- Internal maintenance (/oauth2/maintenance/purge) and audit trail (/oauth2/audit)
- Authorization server metadata (/.well-known/oauth-authorization-server, RFC 8414)

Routes only parse requests, resolve the tenant and translate results; all
protocol decisions live in the services.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response

from hospital_oauth.managers.logging_manager import get_logger

from .audit_manager import AuditAction, AuditResource
from .error_handler import (
    GENERIC_SERVER_ERROR_DESCRIPTION,
    OAUTH2_NO_STORE_HEADERS,
    OAuth2ErrorCode,
    OAuth2ErrorSeverity,
    OAuth2Exception,
    OAuth2Response,
    invalid_request_error,
    oauth2_error_handler,
)
from .logging_utils import OAuth2EventType, oauth2_logger, token_fingerprint
from .models import (
    AuthorizationGrantRequest,
    IntrospectionRequest,
    OAuthClientRegistration,
    OAuthClientResponse,
    OAuthClientUpdate,
    RevocationRequest,
    TokenRequest,
)
from .server import OAuth2Server
from .services.store import StoreError
from .utils import build_redirect_url, parse_basic_authorization, parse_request_body, resolve_organization_id

logger = get_logger(prefix="[OAuth2 Routes]")

INTERNAL_API_KEY_HEADER = "X-Internal-Api-Key"

router = APIRouter(prefix="/oauth2", tags=["OAuth2"])
metadata_router = APIRouter(tags=["OAuth2"])


def get_oauth2_server(request: Request) -> OAuth2Server:
    server = getattr(request.app.state, "oauth2_server", None)
    if server is None:
        raise RuntimeError("OAuth2 server is not configured on the application")
    return server


def resolve_request_organization(request: Request, server: OAuth2Server) -> str:
    return resolve_organization_id(
        request.headers,
        header_name=server.config.ORGANIZATION_HEADER,
        reserved_subdomains=server.config.reserved_subdomains_list,
        base_domain=server.config.TENANT_BASE_DOMAIN,
    )


def to_http_response(result: OAuth2Response) -> Response:
    """Turn a transport-agnostic result into a FastAPI response."""
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


async def _reject(
    server: OAuth2Server, exc: OAuth2Exception, organization_id: Optional[str], action: str
) -> Response:
    """Error response for requests rejected before reaching a service."""
    result = oauth2_error_handler.from_exception(exc, organization_id=organization_id)
    if organization_id:
        await server.audit.emit(
            organization_id,
            action,
            AuditResource.TOKEN,
            success=False,
            metadata={"error": exc.error_code.value},
            error_message=exc.description,
        )
    return to_http_response(result)


async def require_internal_api_key(request: Request) -> None:
    """Guard for routes only the host application may call."""
    server = get_oauth2_server(request)
    expected = server.config.INTERNAL_API_KEY
    if expected is None or not expected.get_secret_value():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    provided = request.headers.get(INTERNAL_API_KEY_HEADER, "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.get_secret_value().encode("utf-8")):
        logger.warning(f"Rejected internal API call to {request.url.path}: invalid API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal API key")


def _organization_or_400(request: Request, server: OAuth2Server) -> str:
    try:
        return resolve_request_organization(request, server)
    except OAuth2Exception as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.description)


@router.post(
    "/token",
    summary="OAuth2 Token Endpoint",
    description="Exchange an authorization code, a refresh token or client credentials for tokens",
    responses={
        200: {"description": "Tokens issued"},
        400: {"description": "invalid_request, invalid_grant, invalid_scope or unsupported_grant_type"},
        401: {"description": "invalid_client"},
        403: {"description": "unauthorized_client"},
        500: {"description": "server_error"},
    },
)
async def token(request: Request):
    """
    OAuth2 token endpoint.

    Accepts ``application/x-www-form-urlencoded`` or JSON bodies. Client
    credentials may be sent in the body or with HTTP Basic, not both.
    """
    server = get_oauth2_server(request)
    organization_id = None
    try:
        organization_id = resolve_request_organization(request, server)
        basic_credentials = parse_basic_authorization(request.headers.get("authorization"))
        token_request = await parse_request_body(request, TokenRequest)
    except OAuth2Exception as e:
        return await _reject(server, e, organization_id, AuditAction.TOKEN_FAILED)

    result = await server.token_service.handle(organization_id, token_request, basic_credentials)
    return to_http_response(result)


@router.post(
    "/introspect",
    summary="OAuth2 Token Introspection",
    description="RFC 7662 token introspection for resource servers",
    responses={
        200: {"description": "Token status; inactive tokens only carry active=false"},
        400: {"description": "invalid_request"},
        401: {"description": "invalid_client"},
    },
)
async def introspect(request: Request):
    server = get_oauth2_server(request)
    organization_id = None
    try:
        organization_id = resolve_request_organization(request, server)
        basic_credentials = parse_basic_authorization(request.headers.get("authorization"))
        introspection_request = await parse_request_body(request, IntrospectionRequest)
    except OAuth2Exception as e:
        return await _reject(server, e, organization_id, AuditAction.INTROSPECTION_FAILED)

    result = await server.introspection_service.handle(organization_id, introspection_request, basic_credentials)
    return to_http_response(result)


@router.post(
    "/revoke",
    summary="OAuth2 Token Revocation",
    description="RFC 7009 token revocation; always 200 for authenticated clients",
    responses={
        200: {"description": "Token revoked, or unknown to this client"},
        400: {"description": "invalid_request"},
        401: {"description": "invalid_client"},
    },
)
async def revoke(request: Request):
    server = get_oauth2_server(request)
    organization_id = None
    try:
        organization_id = resolve_request_organization(request, server)
        basic_credentials = parse_basic_authorization(request.headers.get("authorization"))
        revocation_request = await parse_request_body(request, RevocationRequest)
    except OAuth2Exception as e:
        return await _reject(server, e, organization_id, AuditAction.TOKEN_REVOCATION_FAILED)

    result = await server.revocation_service.handle(organization_id, revocation_request, basic_credentials)
    return to_http_response(result)


@router.post(
    "/authorize",
    summary="Issue Authorization Code (internal)",
    description="Called by the host application after it authenticated the user and collected consent",
    dependencies=[Depends(require_internal_api_key)],
    responses={
        200: {"description": "Redirect URL carrying the code, or an error for the client"},
        400: {"description": "Unknown client or unregistered redirect_uri; never redirected"},
    },
)
async def authorize(request: Request, grant_request: AuthorizationGrantRequest):
    """
    Issue an authorization code.

    Errors about the client or the redirect URI are returned directly to
    the host application. Once the redirect URI is known to be registered,
    errors are reported to the client through ``redirect_url`` with
    ``error`` and ``state`` parameters (RFC 6749 section 4.1.2.1).
    """
    server = get_oauth2_server(request)
    organization_id = None
    try:
        organization_id = resolve_request_organization(request, server)
        client = await server.client_registry.lookup(organization_id, grant_request.client_id)
        if client is None:
            raise invalid_request_error("Unknown or inactive client")
        server.auth_code_manager.validate_redirect_uri(client, grant_request.redirect_uri)
    except OAuth2Exception as e:
        return await _authorize_failed(server, e, organization_id, grant_request.client_id)
    except StoreError as e:
        return await _authorize_server_error(server, organization_id, grant_request.client_id, str(e))

    try:
        code, record = await server.auth_code_manager.issue_code(organization_id, client, grant_request)
    except OAuth2Exception as e:
        await _audit_authorization_failure(server, organization_id, client.client_id, e.error_code.value, e.description)
        result = oauth2_error_handler.from_exception(e, client_id=client.client_id, organization_id=organization_id)
        redirect_url = build_redirect_url(grant_request.redirect_uri, {**result.body, "state": grant_request.state})
        return JSONResponse(
            content={"redirect_url": redirect_url, "error": e.error_code.value},
            headers=OAUTH2_NO_STORE_HEADERS,
        )
    except StoreError as e:
        return await _authorize_server_error(server, organization_id, client.client_id, str(e))

    oauth2_logger.log_client_event(
        OAuth2EventType.AUTHORIZATION_GRANTED,
        organization_id,
        client.client_id,
        {"subject": record.subject, "scopes": record.scopes, "pkce": record.code_challenge is not None},
    )
    await server.audit.emit(
        organization_id,
        AuditAction.AUTHORIZATION_CODE_GENERATED,
        AuditResource.AUTHORIZATION_CODE,
        success=True,
        resource_id=client.client_id,
        metadata={
            "code": token_fingerprint(code),
            "subject": record.subject,
            "scope": " ".join(record.scopes),
            "hospitalRole": record.context.hospital_role.value if record.context.hospital_role else None,
            "phiAccess": record.context.phi_access,
        },
    )
    redirect_url = build_redirect_url(grant_request.redirect_uri, {"code": code, "state": grant_request.state})
    return JSONResponse(
        content={
            "redirect_url": redirect_url,
            "expires_in": int((record.expires_at - record.created_at).total_seconds()),
        },
        headers=OAUTH2_NO_STORE_HEADERS,
    )


async def _audit_authorization_failure(
    server: OAuth2Server, organization_id: Optional[str], client_id: Optional[str], error: str, message: str
) -> None:
    if not organization_id:
        return
    await server.audit.emit(
        organization_id,
        AuditAction.AUTHORIZATION_CODE_FAILED,
        AuditResource.AUTHORIZATION_CODE,
        success=False,
        resource_id=client_id,
        metadata={"error": error},
        error_message=message,
    )


async def _authorize_failed(
    server: OAuth2Server, exc: OAuth2Exception, organization_id: Optional[str], client_id: Optional[str]
) -> Response:
    await _audit_authorization_failure(server, organization_id, client_id, exc.error_code.value, exc.description)
    result = oauth2_error_handler.from_exception(exc, client_id=client_id, organization_id=organization_id)
    return to_http_response(result)


async def _authorize_server_error(
    server: OAuth2Server, organization_id: Optional[str], client_id: Optional[str], detail: str
) -> Response:
    await _audit_authorization_failure(
        server, organization_id, client_id, OAuth2ErrorCode.SERVER_ERROR.value, f"Storage failure: {detail}"
    )
    result = oauth2_error_handler.token_error(
        OAuth2ErrorCode.SERVER_ERROR,
        GENERIC_SERVER_ERROR_DESCRIPTION,
        client_id=client_id,
        organization_id=organization_id,
        severity=OAuth2ErrorSeverity.CRITICAL,
        additional_context={"detail": detail},
    )
    return to_http_response(result)


# Client administration (internal)


@router.post(
    "/clients",
    response_model=OAuthClientResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register OAuth2 Client",
    description="Register a client in the organization; the secret is only returned here",
    dependencies=[Depends(require_internal_api_key)],
)
async def register_client(request: Request, registration: OAuthClientRegistration):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    try:
        client, client_secret = await server.client_registry.register_client(organization_id, registration)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError as e:
        logger.error(f"Failed to register client in org {organization_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to register client")

    await server.audit.emit(
        organization_id,
        AuditAction.CLIENT_CREATED,
        AuditResource.CLIENT,
        success=True,
        resource_id=client.client_id,
        metadata={
            "name": client.name,
            "clientType": client.client_type.value,
            "scopes": client.scopes,
            "grantTypes": [g.value for g in client.allowed_grant_types],
            "phiAccess": client.phi_access,
        },
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=OAuthClientResponse.from_client(client, client_secret).model_dump(mode="json"),
        headers=OAUTH2_NO_STORE_HEADERS,
    )


@router.get(
    "/clients",
    summary="List OAuth2 Clients",
    dependencies=[Depends(require_internal_api_key)],
)
async def list_clients(request: Request, include_inactive: bool = Query(False)):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    clients = await server.client_registry.list_clients(organization_id, include_inactive)
    return {
        "clients": [OAuthClientResponse.from_client(c).model_dump(mode="json", exclude_none=True) for c in clients],
        "total": len(clients),
    }


@router.patch(
    "/clients/{client_id}",
    response_model=OAuthClientResponse,
    response_model_exclude_none=True,
    summary="Update OAuth2 Client",
    description="Change the configuration of an active client; omitted fields are left unchanged",
    dependencies=[Depends(require_internal_api_key)],
)
async def update_client(request: Request, client_id: str, update: OAuthClientUpdate):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    try:
        client = await server.client_registry.update_client(organization_id, client_id, update)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError as e:
        logger.error(f"Failed to update client {client_id} in org {organization_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update client")
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Active client not found")

    await server.audit.emit(
        organization_id,
        AuditAction.CLIENT_UPDATED,
        AuditResource.CLIENT,
        success=True,
        resource_id=client_id,
        metadata={"changes": sorted(update.changes())},
    )
    return OAuthClientResponse.from_client(client)


@router.post(
    "/clients/{client_id}/rotate-secret",
    response_model=OAuthClientResponse,
    summary="Rotate OAuth2 Client Secret",
    dependencies=[Depends(require_internal_api_key)],
)
async def rotate_client_secret(request: Request, client_id: str):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    rotated = await server.client_registry.rotate_client_secret(organization_id, client_id)
    if rotated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Active confidential client not found")
    client, client_secret = rotated
    await server.audit.emit(
        organization_id, AuditAction.CLIENT_SECRET_ROTATED, AuditResource.CLIENT, success=True, resource_id=client_id
    )
    return JSONResponse(
        content=OAuthClientResponse.from_client(client, client_secret).model_dump(mode="json"),
        headers=OAUTH2_NO_STORE_HEADERS,
    )


@router.post(
    "/clients/{client_id}/disable",
    summary="Disable OAuth2 Client",
    dependencies=[Depends(require_internal_api_key)],
)
async def disable_client(request: Request, client_id: str):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    if not await server.client_registry.disable_client(organization_id, client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    await server.audit.emit(
        organization_id, AuditAction.CLIENT_DISABLED, AuditResource.CLIENT, success=True, resource_id=client_id
    )
    return {"client_id": client_id, "is_active": False}


# Maintenance and audit (internal)


@router.post(
    "/maintenance/purge",
    summary="Purge Expired Grants",
    description="Delete the organization's expired authorization codes and tokens",
    dependencies=[Depends(require_internal_api_key)],
)
async def purge_expired_grants(request: Request):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    try:
        removed = await server.purge_expired(organization_id)
    except StoreError as e:
        logger.error(f"Failed to purge expired grants in org {organization_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to purge expired grants")
    return {"organization_id": organization_id, "purged": removed}


@router.get(
    "/audit",
    summary="Organization Audit Trail",
    description="Most recent audit events of the organization, newest first",
    dependencies=[Depends(require_internal_api_key)],
)
async def audit_trail(request: Request, limit: int = Query(100, ge=1, le=1000)):
    server = get_oauth2_server(request)
    organization_id = _organization_or_400(request, server)
    try:
        events = await server.audit.audit_trail(organization_id, limit)
    except Exception as e:
        logger.error(f"Failed to read audit trail of org {organization_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read audit trail")
    if events is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit trail is not stored by this server")
    return {"events": events, "total": len(events)}


@metadata_router.get(
    "/.well-known/oauth-authorization-server",
    summary="OAuth2 Authorization Server Metadata",
    description="RFC 8414 authorization server metadata",
)
async def oauth2_authorization_server_metadata(request: Request):
    return get_oauth2_server(request).metadata()
