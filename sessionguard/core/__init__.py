"""
Core package for sessionguard.

Re-exports the error taxonomy and settings so other modules (and host
applications) can import them from ``sessionguard.core`` without knowing the
internal module layout.
"""

from sessionguard.core.config import (
    CircuitBreakerSettings,
    LockoutSettings,
    RetrySettings,
    SessionSettings,
    TokenSettings,
    WebhookSettings,
)
from sessionguard.core.errors import (
    AccountDisabledError,
    AccountLockedError,
    AppError,
    ConflictError,
    ErrorCode,
    FamilyRevokedError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedTokenError,
    NotFoundError,
    ServiceUnavailableError,
    StorageError,
    TokenExpiredError,
    TokenReuseError,
    TokenRevokedError,
    UnauthorizedError,
    http_status,
)

__all__ = [
    "AccountDisabledError",
    "AccountLockedError",
    "AppError",
    "CircuitBreakerSettings",
    "ConflictError",
    "ErrorCode",
    "FamilyRevokedError",
    "ForbiddenError",
    "InternalError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "LockoutSettings",
    "MalformedTokenError",
    "NotFoundError",
    "RetrySettings",
    "ServiceUnavailableError",
    "SessionSettings",
    "StorageError",
    "TokenExpiredError",
    "TokenReuseError",
    "TokenRevokedError",
    "TokenSettings",
    "UnauthorizedError",
    "WebhookSettings",
    "http_status",
]
