# clinic_scheduler/errors.py
"""Typed failures raised by the scheduling core.

Every error carries a machine readable ``code`` and the HTTP status the API
layer answers with. The core never translates these into responses itself.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    default_code = "CONFLICT"


class InvalidStateError(AppError):
    status_code = 400
    default_code = "INVALID_STATUS"


class ValidationFailedError(AppError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class UpstreamError(AppError):
    """Messaging transport failure. Logged by callers, never unwinds state."""
    status_code = 502
    default_code = "UPSTREAM_ERROR"
