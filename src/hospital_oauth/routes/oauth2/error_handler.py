"""
OAuth2 error handling utilities.

This module provides the error taxonomy of the authorization server and the
transport-agnostic response type returned by every orchestrator. Errors
follow RFC 6749 section 5.2: a JSON body ``{error, error_description}`` with
a fixed HTTP status per error code.

Grant handlers and services raise ``OAuth2Exception``; orchestrators turn it
into an ``OAuth2Response`` through ``OAuth2ErrorHandler.token_error`` which
also logs the error at a level derived from its severity. The HTTP layer is
the only place that turns an ``OAuth2Response`` into a framework response.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from hospital_oauth.managers.logging_manager import get_logger

from .models import OAuth2Error

logger = get_logger(prefix="[OAuth2 Error Handler]")

# RFC 6749 section 5.1: token responses must not be cached
OAUTH2_NO_STORE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}

GENERIC_SERVER_ERROR_DESCRIPTION = "The authorization server encountered an unexpected condition"


class OAuth2ErrorCode(str, Enum):
    """
    Standard OAuth2 error codes as defined in RFC 6749 section 5.2.
    """

    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    INVALID_SCOPE = "invalid_scope"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    SERVER_ERROR = "server_error"


class OAuth2ErrorSeverity(str, Enum):
    """Error severity levels for logging and monitoring."""

    LOW = "low"  # User errors, validation failures
    MEDIUM = "medium"  # Client configuration or authentication issues
    HIGH = "high"  # Security violations (replay, lineage revocation)
    CRITICAL = "critical"  # System failures


HTTP_STATUS_BY_ERROR: Dict[OAuth2ErrorCode, int] = {
    OAuth2ErrorCode.INVALID_REQUEST: 400,
    OAuth2ErrorCode.INVALID_CLIENT: 401,
    OAuth2ErrorCode.INVALID_GRANT: 400,
    OAuth2ErrorCode.INVALID_SCOPE: 400,
    OAuth2ErrorCode.UNAUTHORIZED_CLIENT: 403,
    OAuth2ErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
    OAuth2ErrorCode.SERVER_ERROR: 500,
}

DEFAULT_SEVERITY_BY_ERROR: Dict[OAuth2ErrorCode, OAuth2ErrorSeverity] = {
    OAuth2ErrorCode.INVALID_CLIENT: OAuth2ErrorSeverity.MEDIUM,
    OAuth2ErrorCode.UNAUTHORIZED_CLIENT: OAuth2ErrorSeverity.MEDIUM,
    OAuth2ErrorCode.SERVER_ERROR: OAuth2ErrorSeverity.CRITICAL,
}


class OAuth2Exception(Exception):
    """
    Raised by grant handlers and services to abort a request with an OAuth2 error.

    Attributes:
        error_code: RFC 6749 error code
        description: Client-facing ``error_description``
        severity: Drives the log level
        security_event: Name of the security event when the error is one (e.g. ``code_replay``)
        detail: Internal detail for logs and audit, never sent to the client
        metadata: Extra audit metadata (e.g. the number of revoked tokens)
    """

    def __init__(
        self,
        error_code: OAuth2ErrorCode,
        description: str,
        severity: Optional[OAuth2ErrorSeverity] = None,
        security_event: Optional[str] = None,
        detail: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"{error_code.value}: {description}")
        self.error_code = error_code
        self.description = description
        if severity is None:
            severity = OAuth2ErrorSeverity.HIGH if security_event else DEFAULT_SEVERITY_BY_ERROR.get(
                error_code, OAuth2ErrorSeverity.LOW
            )
        self.severity = severity
        self.security_event = security_event
        self.detail = detail
        self.metadata = metadata or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_ERROR[self.error_code]


@dataclass
class OAuth2Response:
    """Transport-agnostic endpoint result: status, JSON body (or None), headers."""

    status_code: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=lambda: dict(OAUTH2_NO_STORE_HEADERS))

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    @property
    def error(self) -> Optional[str]:
        if self.body and self.is_error:
            return self.body.get("error")
        return None


def success_response(body: Optional[Dict[str, Any]], status_code: int = 200) -> OAuth2Response:
    return OAuth2Response(status_code=status_code, body=body)


class OAuth2ErrorHandler:
    """
    Centralized OAuth2 error handling and logging.

    Builds RFC 6749 error responses and logs each error with its context so
    token and introspection failures look the same in the logs.
    """

    def __init__(self):
        self.logger = get_logger(prefix="[OAuth2 Error Handler]")

    def token_error(
        self,
        error_code: OAuth2ErrorCode,
        error_description: str,
        client_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        severity: OAuth2ErrorSeverity = OAuth2ErrorSeverity.LOW,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> OAuth2Response:
        """
        Create an OAuth2 error response.

        Args:
            error_code: Standard OAuth2 error code
            error_description: Human-readable error description
            client_id: OAuth2 client identifier (for logging)
            organization_id: Tenant (for logging)
            severity: Error severity level
            additional_context: Additional context for logging

        Returns:
            OAuth2Response with the RFC 6749 error body and no-store headers
        """
        self._log_oauth2_error(
            error_code=error_code,
            error_description=error_description,
            client_id=client_id,
            organization_id=organization_id,
            severity=severity,
            additional_context=additional_context,
        )

        error_response = OAuth2Error(error=error_code.value, error_description=error_description)
        headers = dict(OAUTH2_NO_STORE_HEADERS)
        if error_code == OAuth2ErrorCode.INVALID_CLIENT:
            # RFC 6749 section 5.2: 401 responses carry the authentication scheme
            headers["WWW-Authenticate"] = 'Basic realm="oauth2"'
        return OAuth2Response(
            status_code=HTTP_STATUS_BY_ERROR[error_code],
            body=error_response.model_dump(exclude_none=True),
            headers=headers,
        )

    def from_exception(
        self,
        exc: OAuth2Exception,
        client_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> OAuth2Response:
        context = dict(additional_context or {})
        if exc.security_event:
            context["security_event"] = exc.security_event
        if exc.detail:
            context["detail"] = exc.detail
        return self.token_error(
            error_code=exc.error_code,
            error_description=exc.description,
            client_id=client_id,
            organization_id=organization_id,
            severity=exc.severity,
            additional_context=context,
        )

    def _log_oauth2_error(
        self,
        error_code: OAuth2ErrorCode,
        error_description: str,
        client_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        severity: OAuth2ErrorSeverity = OAuth2ErrorSeverity.LOW,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        log_context = {
            "error_code": error_code.value,
            "error_description": error_description,
            "severity": severity.value,
            "client_id": client_id,
            "organization_id": organization_id,
            **(additional_context or {}),
        }
        log_message = f"OAuth2 error: {error_code.value} - {error_description} (client={client_id}, org={organization_id})"

        if severity == OAuth2ErrorSeverity.CRITICAL:
            self.logger.critical(log_message, extra={"oauth2_context": log_context})
        elif severity == OAuth2ErrorSeverity.HIGH:
            self.logger.error(log_message, extra={"oauth2_context": log_context})
        elif severity == OAuth2ErrorSeverity.MEDIUM:
            self.logger.warning(log_message, extra={"oauth2_context": log_context})
        else:
            self.logger.info(log_message, extra={"oauth2_context": log_context})


# Global error handler instance
oauth2_error_handler = OAuth2ErrorHandler()


# Convenience constructors for common error scenarios
def invalid_request_error(description: str, **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.INVALID_REQUEST, description, **kwargs)


def invalid_client_error(description: str = "Client authentication failed", **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.INVALID_CLIENT, description, **kwargs)


def invalid_grant_error(description: str, **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.INVALID_GRANT, description, **kwargs)


def invalid_scope_error(description: str, **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.INVALID_SCOPE, description, **kwargs)


def unauthorized_client_error(description: str, **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.UNAUTHORIZED_CLIENT, description, **kwargs)


def server_error(description: str = GENERIC_SERVER_ERROR_DESCRIPTION, **kwargs) -> OAuth2Exception:
    return OAuth2Exception(OAuth2ErrorCode.SERVER_ERROR, description, **kwargs)
