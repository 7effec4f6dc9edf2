from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    InvalidTransitionError,
    ConflictError,
    DuplicateError,
    ImmutableRecordError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "InvalidTransitionError",
    "ConflictError",
    "DuplicateError",
    "ImmutableRecordError",
]
