"""
Domain error taxonomy.

Request handlers raise these; the exception handlers in ``alcpt.main`` turn
them into the common JSON error envelope.
"""
from typing import Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(AppError):
    status_code = 404
    error_type = "not_found"


class ValidationError(AppError):
    """Malformed submission or malformed generated artifact."""

    status_code = 400
    error_type = "validation_error"


class CollaboratorFailure(AppError):
    """An external generation service failed (network, quota, bad output)."""

    status_code = 502
    error_type = "collaborator_failure"

    def __init__(self, collaborator: str, message: str, *, detail: Optional[dict] = None):
        super().__init__(f"{collaborator}: {message}", detail=detail)
        self.collaborator = collaborator


class PersistenceFailure(AppError):
    status_code = 500
    error_type = "persistence_failure"
