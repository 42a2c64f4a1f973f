"""
Application error taxonomy.

Every failure the security subsystem reports is an ``AppError`` subclass with
a stable ``code`` and the HTTP status a host application should answer with.
Callers branch on the class (``except TokenReuseError``) rather than on
message text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes shared by logs, metrics and HTTP responses"""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INTERNAL: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}


def http_status(code: ErrorCode) -> int:
    """Map an error code to its HTTP status"""
    return _STATUS_MAP[code]


class AppError(Exception):
    """Base class for every expected failure in the system"""

    code: ErrorCode = ErrorCode.INTERNAL
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return http_status(self.code)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# --- 401 ---


class UnauthorizedError(AppError):
    code = ErrorCode.UNAUTHORIZED
    default_message = "Unauthorized"


class InvalidTokenError(UnauthorizedError):
    """Signature mismatch, wrong token type or missing claims"""

    default_message = "Invalid token"


class MalformedTokenError(UnauthorizedError):
    """Token is not structurally a JWT"""

    default_message = "Malformed token"


class TokenExpiredError(UnauthorizedError):
    default_message = "Token has expired"


class TokenRevokedError(UnauthorizedError):
    default_message = "Token has been revoked"


class FamilyRevokedError(UnauthorizedError):
    """Rotation attempted against a family that is already revoked"""

    default_message = "Refresh token family has been revoked"


class InvalidCredentialsError(UnauthorizedError):
    default_message = "Invalid credentials"


# --- 403 ---


class ForbiddenError(AppError):
    code = ErrorCode.FORBIDDEN
    default_message = "Forbidden"


class AccountLockedError(ForbiddenError):
    default_message = "Account locked due to too many failed attempts"

    def __init__(self, locked_until=None, message: Optional[str] = None) -> None:
        self.locked_until = locked_until
        details = {"locked_until": locked_until.isoformat()} if locked_until else None
        super().__init__(message, details)


class AccountDisabledError(ForbiddenError):
    default_message = "Account is not active"


# --- 404 ---


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    default_message = "Not found"

    def __init__(self, resource: str = "Resource", details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{resource} not found", details)


# --- 409 ---


class ConflictError(AppError):
    code = ErrorCode.CONFLICT
    default_message = "Conflict"


class TokenReuseError(ConflictError):
    """A superseded refresh token was presented; the family is now revoked"""

    default_message = "Refresh token reuse detected"

    def __init__(self, family_id: str, user_id: Optional[str] = None) -> None:
        self.family_id = family_id
        self.user_id = user_id
        super().__init__(details={"family_id": family_id})


# --- 5xx ---


class InternalError(AppError):
    code = ErrorCode.INTERNAL


class StorageError(InternalError):
    default_message = "Storage failure"


class ServiceUnavailableError(AppError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    default_message = "Service unavailable"
