"""
Base enums shared across the sessionguard models
"""

from enum import Enum


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    """Lifecycle status of an account, independent of its role"""

    ACTIVE = "active"
    BANNED = "banned"
    DISABLED = "disabled"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
