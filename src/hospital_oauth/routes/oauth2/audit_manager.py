"""
OAuth2 audit manager for audit trails and compliance.

Token issuance, introspection, revocation and client administration each
produce exactly one ``AuditEvent`` per request. Events are handed to an
``AuditSink``:

- ``LoggingAuditSink`` writes them to the structured log (and Loki),
- ``RedisAuditSink`` keeps them per organization in Redis with a retention TTL
  and can read them back for the internal audit trail route.

A failing sink never changes the outcome of the request that produced the
event; the failure is logged with its traceback instead.
"""

import json
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from hospital_oauth.managers.logging_manager import get_logger
from hospital_oauth.managers.redis_manager import RedisManager

from .models import AuditEvent

logger = get_logger(prefix="[OAuth2 Audit Manager]")

# HIPAA requires audit records to be retained for six years
DEFAULT_AUDIT_RETENTION_SECONDS = 6 * 365 * 24 * 3600


class AuditAction:
    """Audit action names."""

    TOKEN_ISSUED = "oauth.token.issued"
    TOKEN_FAILED = "oauth.token.failed"
    TOKEN_REVOKED = "oauth.token.revoked"
    TOKEN_REVOCATION_FAILED = "oauth.token.revocation_failed"
    INTROSPECTION_SUCCESS = "oauth.introspection.success"
    INTROSPECTION_FAILED = "oauth.introspection.failed"
    AUTHORIZATION_CODE_GENERATED = "oauth.authorization_code.generated"
    AUTHORIZATION_CODE_FAILED = "oauth.authorization_code.failed"
    CLIENT_CREATED = "oauth.client.created"
    CLIENT_SECRET_ROTATED = "oauth.client.secret_rotated"
    CLIENT_UPDATED = "oauth.client.updated"
    CLIENT_DISABLED = "oauth.client.disabled"


class AuditResource:
    TOKEN = "oauth_token"
    AUTHORIZATION_CODE = "oauth_authorization_code"
    CLIENT = "oauth_client"


class AuditSink(ABC):
    """Destination for audit events."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist one audit event."""

    async def get_audit_trail(self, organization_id: str, limit: int = 100) -> Optional[List[Dict[str, Any]]]:
        """Recent events of one organization, newest first; None when the sink cannot read back."""
        return None


class LoggingAuditSink(AuditSink):
    """Writes audit events to the application log as JSON."""

    def __init__(self):
        self.logger = get_logger(prefix="[OAuth2 Audit]")

    async def record(self, event: AuditEvent) -> None:
        payload = event.to_sink_payload()
        self.logger.info(
            f"Audit {event.action} success={event.success} org={event.organization_id}: "
            f"{json.dumps(payload, default=str)}",
            extra={"audit_event": payload},
        )


class RedisAuditSink(AuditSink):
    """
    Stores audit events in Redis, one sorted-set index per organization.

    Keys:
        oauth2:{org}:audit:{event_id}   JSON payload with retention TTL
        oauth2:{org}:audit:index        sorted set of event ids by timestamp

    Index entries older than the retention window are trimmed on every
    write, so the index never outlives the payloads it points to.
    """

    def __init__(self, redis_manager: RedisManager, retention_seconds: int = DEFAULT_AUDIT_RETENTION_SECONDS):
        self.redis_manager = redis_manager
        self.retention_seconds = retention_seconds

    def _event_key(self, organization_id: str, event_id: str) -> str:
        return f"oauth2:{organization_id}:audit:{event_id}"

    def _index_key(self, organization_id: str) -> str:
        return f"oauth2:{organization_id}:audit:index"

    async def record(self, event: AuditEvent) -> None:
        redis_client = await self.redis_manager.get_redis()
        score = event.timestamp.timestamp()
        # Random suffix keeps ids unique for events sharing a timestamp
        event_id = f"{event.action}:{score:.6f}:{event.resource_id or '-'}:{secrets.token_hex(4)}"
        index_key = self._index_key(event.organization_id)
        pipe = redis_client.pipeline(transaction=True)
        pipe.set(
            self._event_key(event.organization_id, event_id),
            json.dumps(event.to_sink_payload(), default=str),
            ex=self.retention_seconds,
        )
        pipe.zadd(index_key, {event_id: score})
        pipe.zremrangebyscore(index_key, "-inf", score - self.retention_seconds)
        pipe.expire(index_key, self.retention_seconds)
        await pipe.execute()

    async def get_audit_trail(self, organization_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent audit events of one organization, newest first."""
        redis_client = await self.redis_manager.get_redis()
        event_ids = await redis_client.zrevrange(self._index_key(organization_id), 0, limit - 1)
        if not event_ids:
            return []
        raw_events = await redis_client.mget([self._event_key(organization_id, e) for e in event_ids])
        return [json.loads(raw) for raw in raw_events if raw]


class AuditEmitter:
    """
    Builds audit events and forwards them to the configured sink.
    """

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink = sink or LoggingAuditSink()
        self.logger = logger

    async def emit(
        self,
        organization_id: str,
        action: str,
        resource: str,
        success: bool,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            organization_id=organization_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None},
            success=success,
            error_message=error_message,
        )
        try:
            await self.sink.record(event)
        except Exception as e:
            self.logger.error(
                f"Failed to record audit event {action} for org {organization_id}: {e}",
                exc_info=True,
            )

    async def audit_trail(self, organization_id: str, limit: int = 100) -> Optional[List[Dict[str, Any]]]:
        return await self.sink.get_audit_trail(organization_id, limit)
