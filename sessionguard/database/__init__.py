"""SQLAlchemy persistence: tables plus async engine/session helpers"""

from sessionguard.database.connection import (
    DatabaseConfig,
    check_connection,
    create_engine,
    create_session_factory,
    init_models,
)
from sessionguard.database.models import (
    Base,
    LoginLockoutRecord,
    RefreshTokenFamilyRecord,
)

__all__ = [
    "Base",
    "DatabaseConfig",
    "LoginLockoutRecord",
    "RefreshTokenFamilyRecord",
    "check_connection",
    "create_engine",
    "create_session_factory",
    "init_models",
]
