"""Application error types mapped onto HTTP responses by the API layer."""
from __future__ import annotations

from fastapi import status


class AppError(Exception):
    """Base class for errors whose message is safe to show to the caller."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "app_error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class RequestValidationFailed(AppError):
    """Raised when request input is malformed or refers to missing data."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthenticationError(AppError):
    """Raised when the caller identity is missing or invalid."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"


class NotFoundError(AppError):
    """Raised when an id does not match any row owned by the caller."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
