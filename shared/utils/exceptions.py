"""
shared/utils/exceptions.py
Service-level error taxonomy. Each error carries the HTTP status the
API layer maps it to; services never raise HTTPException themselves.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for errors raised by the activity and notification services."""

    status_code: int = 500
    default_message: str = "Service error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Missing or malformed input. Nothing was persisted."""

    status_code = 400
    default_message = "Validation failed"


class AccessDeniedError(ServiceError):
    """Caller's role does not permit the requested slice of data."""

    status_code = 403
    default_message = "Access denied"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class PersistenceError(ServiceError):
    """Underlying store failure, or a write the append-only log refuses."""

    status_code = 500
    default_message = "Storage failure"
