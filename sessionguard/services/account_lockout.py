"""
Brute-force login lockout keyed by normalised email

After ``max_attempts`` consecutive failures the account is locked for
``lockout_duration`` seconds. Locks are time boxed: the read path clears an
expired lock instead of waiting for a sweep. Unknown emails are never an error.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, runtime_checkable

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.core.config import LockoutSettings
from sessionguard.core.errors import StorageError
from sessionguard.database.models import LoginLockoutRecord
from sessionguard.models.auth import LockoutRecord
from sessionguard.utils.date_utils import Clock, from_epoch_ms, to_epoch_ms, utc_now

logger = structlog.get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@runtime_checkable
class AccountLockout(Protocol):
    async def record_failed_attempt(self, email: str) -> bool: ...

    async def reset_attempts(self, email: str) -> None: ...

    async def is_locked(self, email: str) -> Optional[datetime]: ...

    async def get_record(self, email: str) -> Optional[LockoutRecord]: ...


class InMemoryAccountLockout:
    def __init__(
        self,
        max_attempts: Optional[int] = None,
        lockout_duration: Optional[float] = None,
        clock: Clock = utc_now,
    ):
        defaults = LockoutSettings()
        self.max_attempts = max_attempts or defaults.max_attempts
        self.lockout_duration = timedelta(
            seconds=lockout_duration if lockout_duration is not None else defaults.lockout_duration
        )
        self._clock = clock
        self._records: Dict[str, LockoutRecord] = {}
        self._lock = asyncio.Lock()

    def _heal(self, key: str, now: datetime) -> Optional[LockoutRecord]:
        record = self._records.get(key)
        if record and record.locked_until is not None and record.locked_until <= now:
            record = LockoutRecord(email=key)
            self._records[key] = record
            logger.info("lockout.expired", email=key)
        return record

    async def record_failed_attempt(self, email: str) -> bool:
        key = normalize_email(email)
        now = self._clock()
        async with self._lock:
            record = self._heal(key, now) or LockoutRecord(email=key)
            if record.locked_until is not None:
                return True

            attempts = record.failed_attempts + 1
            locked_until = None
            if attempts >= self.max_attempts:
                locked_until = now + self.lockout_duration
            self._records[key] = LockoutRecord(
                email=key, failed_attempts=attempts, locked_until=locked_until
            )

        if locked_until is not None:
            logger.warning("lockout.locked", email=key, attempts=attempts)
            return True
        return False

    async def reset_attempts(self, email: str) -> None:
        key = normalize_email(email)
        async with self._lock:
            if key in self._records:
                self._records[key] = LockoutRecord(email=key)

    async def is_locked(self, email: str) -> Optional[datetime]:
        key = normalize_email(email)
        async with self._lock:
            record = self._heal(key, self._clock())
        return record.locked_until if record else None

    async def get_record(self, email: str) -> Optional[LockoutRecord]:
        async with self._lock:
            return self._records.get(normalize_email(email))


class SQLAlchemyAccountLockout:
    """Lockout state on the ``login_lockouts`` table"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: Optional[int] = None,
        lockout_duration: Optional[float] = None,
        clock: Clock = utc_now,
    ):
        defaults = LockoutSettings()
        self._session_factory = session_factory
        self.max_attempts = max_attempts or defaults.max_attempts
        self.lockout_duration = timedelta(
            seconds=lockout_duration if lockout_duration is not None else defaults.lockout_duration
        )
        self._clock = clock

    @staticmethod
    async def _clear_expired(session: AsyncSession, key: str, now_ms: int) -> int:
        table = LoginLockoutRecord
        result = await session.execute(
            update(table)
            .where(
                table.email == key,
                table.locked_until.is_not(None),
                table.locked_until <= now_ms,
            )
            .values(failed_attempts=0, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    async def _increment(session: AsyncSession, key: str) -> Optional[int]:
        # Increment and read back in one statement; a locked row is skipped
        table = LoginLockoutRecord
        result = await session.execute(
            update(table)
            .where(table.email == key, table.locked_until.is_(None))
            .values(failed_attempts=table.failed_attempts + 1)
            .returning(table.failed_attempts)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def record_failed_attempt(self, email: str) -> bool:
        key = normalize_email(email)
        now = self._clock()
        now_ms = to_epoch_ms(now)
        table = LoginLockoutRecord

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if await self._clear_expired(session, key, now_ms):
                        logger.info("lockout.expired", email=key)

                    attempts = await self._increment(session, key)
                    if attempts is None:
                        existing = (
                            await session.execute(select(table.email).where(table.email == key))
                        ).first()
                        if existing is not None:
                            # Row exists but is under an active lock
                            return True
                        try:
                            async with session.begin_nested():
                                await session.execute(
                                    insert(table).values(
                                        email=key, failed_attempts=1, locked_until=None
                                    )
                                )
                            attempts = 1
                        except IntegrityError:
                            # A concurrent first failure created the row
                            attempts = await self._increment(session, key)
                            if attempts is None:
                                return True

                    if attempts < self.max_attempts:
                        return False

                    await session.execute(
                        update(table)
                        .where(table.email == key)
                        .values(locked_until=to_epoch_ms(now + self.lockout_duration))
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as exc:
            logger.error("lockout.record_failed", email=key, error=str(exc))
            raise StorageError("Failed to record login attempt") from exc

        logger.warning("lockout.locked", email=key, attempts=attempts)
        return True

    async def reset_attempts(self, email: str) -> None:
        key = normalize_email(email)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(LoginLockoutRecord)
                        .where(LoginLockoutRecord.email == key)
                        .values(failed_attempts=0, locked_until=None)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as exc:
            raise StorageError("Failed to reset login attempts") from exc

    async def is_locked(self, email: str) -> Optional[datetime]:
        key = normalize_email(email)
        now_ms = to_epoch_ms(self._clock())
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if await self._clear_expired(session, key, now_ms):
                        logger.info("lockout.expired", email=key)
                        return None
                    locked_until = (
                        await session.execute(
                            select(LoginLockoutRecord.locked_until).where(
                                LoginLockoutRecord.email == key
                            )
                        )
                    ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read lockout state") from exc
        return from_epoch_ms(locked_until)

    async def get_record(self, email: str) -> Optional[LockoutRecord]:
        key = normalize_email(email)
        try:
            async with self._session_factory() as session:
                record = await session.get(LoginLockoutRecord, key)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read lockout state") from exc
        if record is None:
            return None
        return LockoutRecord(
            email=record.email,
            failed_attempts=record.failed_attempts,
            locked_until=from_epoch_ms(record.locked_until),
        )
