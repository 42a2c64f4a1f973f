"""
Database models for sessionguard persistence adapters

Timestamps are stored as epoch milliseconds (BigInteger) so comparisons are
plain integer predicates on every backend.
"""

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RefreshTokenFamilyRecord(Base):
    """One login session's refresh-token lineage"""

    __tablename__ = "refresh_token_families"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    current_token_hash = Column(String(64), nullable=False, index=True)
    revoked = Column(Boolean, default=False, nullable=False)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_refresh_families_revoked_updated", "revoked", "updated_at"),
    )


class LoginLockoutRecord(Base):
    """Failed-login counter and time-boxed lock, keyed by email"""

    __tablename__ = "login_lockouts"

    email = Column(String(320), primary_key=True)
    failed_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(BigInteger, nullable=True)
