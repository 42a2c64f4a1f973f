"""
Authentication-related Pydantic models
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from sessionguard.models.base import AccountStatus, UserRole


class TokenPayload(BaseModel):
    """Claims carried by a verified token"""

    model_config = ConfigDict(frozen=True)

    sub: str
    role: UserRole
    family_id: Optional[str] = None
    exp: Optional[datetime] = None


class TokenPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: str = Field(repr=False)
    token_type: str = "bearer"
    expires_in: int = 0  # access token lifetime, seconds


class RefreshTokenFamily(BaseModel):
    """One login session's lineage of rotated refresh tokens"""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    current_token_hash: str
    revoked: bool = False
    created_at: datetime
    updated_at: datetime


class LockoutRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


class UserAccount(BaseModel):
    """Account view consumed from the external user directory"""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    password_hash: str = Field(repr=False)
    role: UserRole = UserRole.USER
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
