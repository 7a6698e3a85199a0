"""
Error taxonomy shared by services and routers.

Services raise these; the handlers registered in ``codearena.main`` turn them
into the response envelope with the matching status code.
"""
from typing import Any, Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"


class RoleNotHeld(ValidationFailed):
    code = "ROLE_NOT_HELD"


class Unauthorized(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"


class InvariantViolation(Conflict):
    code = "INVARIANT_VIOLATION"


class LastAdmin(InvariantViolation):
    code = "LAST_ADMIN"


class UpstreamError(ApiError):
    status_code = 502
    code = "UPSTREAM_ERROR"
