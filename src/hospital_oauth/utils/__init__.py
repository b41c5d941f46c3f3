"""Utility modules for Hospital OAuth."""

from .logging_utils import RequestLoggingMiddleware, log_application_lifecycle, log_error_with_context

__all__ = [
    "RequestLoggingMiddleware",
    "log_application_lifecycle",
    "log_error_with_context",
]
