from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error. Raised before any state change."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message=message, status_code=401)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class InvalidTransitionError(AppException):
    """Transfer status transition not permitted from the current status."""

    def __init__(self, entity: str, current_status: str, target_status: str):
        message = (
            f"{entity} cannot move from {current_status} to {target_status}"
        )
        super().__init__(
            message=message,
            status_code=409,
            details={"current_status": current_status, "target_status": target_status},
        )


class ConflictError(AppException):
    """Concurrent modification detected; the caller must re-fetch and retry."""

    def __init__(self, message: str, field: str | None = None):
        details: dict[str, Any] = {"retry": True}
        if field:
            details["field"] = field
        super().__init__(message=message, status_code=409, details=details)


class DuplicateError(AppException):
    """Duplicate resource."""

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, status_code=409, details={"field": field, "value": value})


class ImmutableRecordError(AppException):
    """Attempt to change or remove an append-only record."""

    def __init__(self, entity: str, entity_id: Any, operation: str):
        message = f"{entity} with id={entity_id} is immutable and cannot be {operation}"
        super().__init__(message=message, status_code=409, details={"operation": operation})
