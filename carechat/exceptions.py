"""
Error taxonomy for the messaging service.

Every failure carries a stable machine-readable ``error_code`` and a
human-readable ``message``; ``main.py`` maps them to HTTP responses.
"""

from typing import Any, Dict, Optional


class MessagingError(Exception):
    """Base exception for messaging operations."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class InvalidArgument(MessagingError):
    """Raised when required input is missing or malformed."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVALID_ARGUMENT", details)


class NotFound(MessagingError):
    """Raised when a resource is absent or not visible to the caller."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class Forbidden(MessagingError):
    """Raised when the caller may not act on a resource."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "FORBIDDEN", details)


class Conflict(MessagingError):
    """Raised when a write collides with existing state."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class Unauthenticated(MessagingError):
    """Raised when no valid caller identity can be resolved."""

    status_code = 401

    def __init__(self, message: str = "Authorization token required"):
        super().__init__(message, "UNAUTHENTICATED")
