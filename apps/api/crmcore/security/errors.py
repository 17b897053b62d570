from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base error mapped onto the API error envelope by the exception handlers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(AppError):
    status_code = 401
    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "invalid or missing token", *, details: Any = None) -> None:
        super().__init__(message, details=details)


class AuthorizationError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class FinalizedEntityError(AuthorizationError):
    code = "ENTITY_FINALIZED"

    def __init__(self, message: str = "entity finalized", *, details: Any = None) -> None:
        super().__init__(message, details=details)


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "validation failed", *, errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(message, details=errors or [])

    @classmethod
    def for_field(cls, field: str, message: str, code: str = "invalid") -> ValidationError:
        return cls(message, errors=[{"field": field, "message": message, "code": code}])


class BulkLimitExceededError(AppError):
    status_code = 400
    code = "BULK_LIMIT_EXCEEDED"

    def __init__(self, limit: int, received: int) -> None:
        super().__init__("too many items", details={"limit": limit, "received": received})


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class QueryTimeoutError(AppError):
    status_code = 504
    code = "QUERY_TIMEOUT"

    def __init__(self, message: str = "query timed out", *, details: Any = None) -> None:
        super().__init__(message, details=details)


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
