"""Logging utilities for request tracing and application lifecycle events.

Request logs never include query strings, bodies or the Authorization
header: token endpoint traffic carries codes, secrets and tokens.
"""

from datetime import datetime, timezone
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from hospital_oauth.config import settings
from hospital_oauth.managers.logging_manager import get_logger

SLOW_REQUEST_SECONDS = 1.0


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging middleware for FastAPI.

    Logs every request and response with timing, status code and the
    resolved tenant header, tagged with a short request id that is also
    returned in ``X-Request-Id``.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(name="Hospital_OAuth_Requests", prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        base = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path),
            "client_ip": self._get_client_ip(request),
            "organization_id": request.headers.get(settings.ORGANIZATION_HEADER),
            "process": os.getpid(),
            "app": settings.APP_NAME,
            "env": settings.ENV,
        }
        self.logger.info({"event": "request_received", "timestamp": _now(), **base})

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    "timestamp": _now(),
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                    **base,
                }
            )
            raise

        duration = time.time() - start_time
        response_log = {
            "event": "response_sent",
            "timestamp": _now(),
            "status_code": response.status_code,
            "duration": duration,
            **base,
        }
        self.logger.info(response_log)
        if duration > SLOW_REQUEST_SECONDS:
            self.logger.warning({**response_log, "event": "slow_request"})

        response.headers["X-Request-Id"] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request headers."""
        # Reverse proxy setups
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        return getattr(request.client, "host", "unknown")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """
    Log application lifecycle events (startup, shutdown, etc.).

    Args:
        event: Lifecycle event name
        details: Additional event details
    """
    logger = get_logger(name="Hospital_OAuth_Lifecycle", prefix="[LIFECYCLE]")

    event_data = {"event": event, "timestamp": _now()}
    if details:
        event_data.update(details)

    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """Log an error with its context and stack trace."""
    logger = get_logger(name="Hospital_OAuth_Errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": _now(),
        "stack_trace": traceback.format_exc(),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = context

    logger.error("ERROR OCCURRED: %s", error_data)
