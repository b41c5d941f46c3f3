"""
OAuth2 logging utilities.

Structured operational logging for token, introspection and revocation
traffic. Every event is logged with an ``oauth2_context`` extra so log
shippers (Loki) can index the fields.

Raw codes, tokens and secrets are never logged. ``token_fingerprint``
produces the only representation allowed in logs and audit records.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from hospital_oauth.managers.logging_manager import get_logger

FINGERPRINT_HEX_CHARS = 16


def token_fingerprint(value: Optional[str]) -> Optional[str]:
    """Truncated SHA-256 of a secret value, e.g. ``'3f2a9c0d11b4e7a2...'``."""
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:FINGERPRINT_HEX_CHARS] + "..."


class OAuth2EventType(str, Enum):
    """OAuth2 event types for structured logging."""

    AUTHORIZATION_GRANTED = "authorization_granted"
    TOKEN_REQUEST = "token_request"
    TOKEN_ISSUED = "token_issued"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_INTROSPECTED = "token_introspected"
    CLIENT_REGISTERED = "client_registered"
    CLIENT_SECRET_ROTATED = "client_secret_rotated"
    CLIENT_UPDATED = "client_updated"
    CLIENT_DISABLED = "client_disabled"
    CLIENT_AUTHENTICATION_FAILED = "client_authentication_failed"

    # Security events
    CODE_REPLAY = "code_replay"
    REFRESH_TOKEN_REPLAY = "refresh_token_replay"
    LINEAGE_REVOKED = "lineage_revoked"
    PKCE_VALIDATION_FAILED = "pkce_validation_failed"


class OAuth2Logger:
    """
    Specialized logger for OAuth2 operations.

    Provides structured logging with a consistent format for all OAuth2
    events.
    """

    def __init__(self):
        self.logger = get_logger(prefix="[OAuth2 Operations]")

    def log_token_request(
        self,
        organization_id: str,
        client_id: Optional[str],
        grant_type: Optional[str],
        scopes: Optional[List[str]] = None,
    ) -> None:
        context = self._context(
            OAuth2EventType.TOKEN_REQUEST,
            organization_id=organization_id,
            client_id=client_id,
            grant_type=grant_type,
            scopes=scopes,
        )
        self.logger.info(
            f"OAuth2 token request from client {client_id}, grant_type: {grant_type}, org: {organization_id}",
            extra={"oauth2_context": context},
        )

    def log_token_issued(
        self,
        organization_id: str,
        client_id: str,
        subject: Optional[str],
        scopes: List[str],
        access_token_expires_in: int,
        has_refresh_token: bool,
        access_token_fingerprint: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log successful OAuth2 token issuance.

        Args:
            organization_id: Tenant the tokens belong to
            client_id: OAuth2 client identifier
            subject: User (or service) the tokens act for
            scopes: Granted scopes
            access_token_expires_in: Access token expiration time in seconds
            has_refresh_token: Whether refresh token was issued
            access_token_fingerprint: Fingerprint of the issued access token
            additional_context: Additional context information
        """
        context = self._context(
            OAuth2EventType.TOKEN_ISSUED,
            organization_id=organization_id,
            client_id=client_id,
            subject=subject,
            scopes=scopes,
            access_token_expires_in=access_token_expires_in,
            has_refresh_token=has_refresh_token,
            access_token=access_token_fingerprint,
            **(additional_context or {}),
        )
        self.logger.info(
            f"OAuth2 tokens issued to client {client_id} for subject {subject} (org: {organization_id})",
            extra={"oauth2_context": context},
        )

    def log_introspection(self, organization_id: str, client_id: str, active: bool, token_fp: Optional[str]) -> None:
        context = self._context(
            OAuth2EventType.TOKEN_INTROSPECTED,
            organization_id=organization_id,
            client_id=client_id,
            active=active,
            token=token_fp,
        )
        self.logger.debug(
            f"OAuth2 introspection by client {client_id}: active={active}",
            extra={"oauth2_context": context},
        )

    def log_security_event(
        self,
        event_type: OAuth2EventType,
        organization_id: Optional[str],
        client_id: Optional[str],
        description: str,
        severity: str = "high",
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log OAuth2 security events (replay detection, lineage revocation).

        Args:
            event_type: Type of security event
            organization_id: Tenant, when known
            client_id: OAuth2 client identifier (if applicable)
            description: Event description
            severity: Event severity level
            additional_context: Additional context information
        """
        context = self._context(
            event_type,
            organization_id=organization_id,
            client_id=client_id,
            severity=severity,
            description=description,
            security_event=True,
            **(additional_context or {}),
        )
        message = f"OAuth2 security event: {event_type.value} - {description}"
        if severity == "critical":
            self.logger.critical(message, extra={"oauth2_context": context})
        elif severity == "high":
            self.logger.error(message, extra={"oauth2_context": context})
        elif severity == "medium":
            self.logger.warning(message, extra={"oauth2_context": context})
        else:
            self.logger.info(message, extra={"oauth2_context": context})

    def log_client_event(
        self,
        event_type: OAuth2EventType,
        organization_id: str,
        client_id: str,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = self._context(
            event_type, organization_id=organization_id, client_id=client_id, **(additional_context or {})
        )
        self.logger.info(
            f"OAuth2 client event: {event_type.value} for client {client_id} (org: {organization_id})",
            extra={"oauth2_context": context},
        )

    def _context(self, event_type: OAuth2EventType, **fields: Any) -> Dict[str, Any]:
        return {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }


# Global OAuth2 logger instance
oauth2_logger = OAuth2Logger()
