"""
Error taxonomy shared by the stores, the coordinator and the HTTP layer.

Every error carries the HTTP status the boundary should answer with, so
`main.py` only needs one handler for the whole family.
"""
from typing import Optional


class ServiceError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Validation error"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not Found"


class DuplicateKey(ServiceError):
    status_code = 400
    default_message = "A user with that email already exists."


class InvalidQuery(ServiceError):
    status_code = 400
    default_message = "Invalid JSON in query params"


class TransientStoreError(ServiceError):
    """Transaction conflict or lost connection that survived the driver's retries."""

    status_code = 503
    default_message = "Service temporarily unavailable, please retry"


class InternalError(ServiceError):
    status_code = 500
    default_message = "Server error"
