"""
Refresh token family store

A family is the lineage of refresh tokens issued within one login session.
Only the hash of the newest token is kept. Presenting any other token for a
live family proves that an older token leaked, so the whole family is revoked
before the caller hears about it.

Two adapters share the ``RefreshTokenStore`` contract:

- ``InMemoryRefreshTokenStore``: dict keyed by family id, guarded by an
  ``asyncio.Lock``
- ``SQLAlchemyRefreshTokenStore``: the ``refresh_token_families`` table; the
  rotation compare-and-swap is a single conditional UPDATE
"""

import asyncio
import secrets
from datetime import timedelta
from typing import Dict, Optional, Protocol, runtime_checkable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.core.errors import (
    FamilyRevokedError,
    NotFoundError,
    StorageError,
    TokenReuseError,
)
from sessionguard.database.models import RefreshTokenFamilyRecord
from sessionguard.models.auth import RefreshTokenFamily
from sessionguard.utils.date_utils import Clock, from_epoch_ms, to_epoch_ms, utc_now

logger = structlog.get_logger(__name__)


def new_family_id() -> str:
    return f"rtf_{secrets.token_hex(12)}"


@runtime_checkable
class RefreshTokenStore(Protocol):
    async def create_family(
        self, user_id: str, initial_hash: str, family_id: Optional[str] = None
    ) -> str: ...

    async def rotate(self, family_id: str, old_hash: str, new_hash: str) -> None: ...

    async def find_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenFamily]: ...

    async def get(self, family_id: str) -> Optional[RefreshTokenFamily]: ...

    async def revoke_family(self, family_id: str) -> None: ...

    async def revoke_all_for_user(self, user_id: str) -> int: ...

    async def prune(self, max_age: timedelta) -> int: ...


class InMemoryRefreshTokenStore:
    """Process-local store; every mutation runs under one lock"""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._families: Dict[str, RefreshTokenFamily] = {}
        self._lock = asyncio.Lock()

    async def create_family(
        self, user_id: str, initial_hash: str, family_id: Optional[str] = None
    ) -> str:
        family_id = family_id or new_family_id()
        now = self._clock()
        async with self._lock:
            if family_id in self._families:
                # Ids are never reused, so a revoked family stays revoked
                raise StorageError("Refresh token family already exists")
            self._families[family_id] = RefreshTokenFamily(
                id=family_id,
                user_id=user_id,
                current_token_hash=initial_hash,
                created_at=now,
                updated_at=now,
            )
        logger.debug("refresh_token.family_created", family_id=family_id, user_id=user_id)
        return family_id

    async def rotate(self, family_id: str, old_hash: str, new_hash: str) -> None:
        async with self._lock:
            family = self._families.get(family_id)
            if family is None:
                raise NotFoundError("Refresh token family")
            if family.revoked:
                raise FamilyRevokedError()
            if family.current_token_hash != old_hash:
                self._families[family_id] = family.model_copy(
                    update={"revoked": True, "updated_at": self._clock()}
                )
                logger.warning(
                    "refresh_token.reuse_detected",
                    family_id=family_id,
                    user_id=family.user_id,
                )
                raise TokenReuseError(family_id, user_id=family.user_id)
            self._families[family_id] = family.model_copy(
                update={"current_token_hash": new_hash, "updated_at": self._clock()}
            )

    async def find_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenFamily]:
        async with self._lock:
            for family in self._families.values():
                if family.current_token_hash == token_hash:
                    return family
        return None

    async def get(self, family_id: str) -> Optional[RefreshTokenFamily]:
        async with self._lock:
            return self._families.get(family_id)

    async def revoke_family(self, family_id: str) -> None:
        async with self._lock:
            family = self._families.get(family_id)
            if family is None:
                raise NotFoundError("Refresh token family")
            if family.revoked:
                return
            self._families[family_id] = family.model_copy(
                update={"revoked": True, "updated_at": self._clock()}
            )
        logger.info("refresh_token.family_revoked", family_id=family_id)

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = 0
        now = self._clock()
        async with self._lock:
            for family_id, family in self._families.items():
                if family.user_id == user_id and not family.revoked:
                    self._families[family_id] = family.model_copy(
                        update={"revoked": True, "updated_at": now}
                    )
                    revoked += 1
        if revoked:
            logger.info("refresh_token.user_families_revoked", user_id=user_id, count=revoked)
        return revoked

    async def prune(self, max_age: timedelta) -> int:
        cutoff = self._clock() - max_age
        async with self._lock:
            stale = [
                family_id
                for family_id, family in self._families.items()
                if family.revoked and family.updated_at < cutoff
            ]
            for family_id in stale:
                del self._families[family_id]
        return len(stale)


def _to_model(record: RefreshTokenFamilyRecord) -> RefreshTokenFamily:
    return RefreshTokenFamily(
        id=record.id,
        user_id=record.user_id,
        current_token_hash=record.current_token_hash,
        revoked=bool(record.revoked),
        created_at=from_epoch_ms(record.created_at),
        updated_at=from_epoch_ms(record.updated_at),
    )


class SQLAlchemyRefreshTokenStore:
    """Family store on the ``refresh_token_families`` table"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    async def create_family(
        self, user_id: str, initial_hash: str, family_id: Optional[str] = None
    ) -> str:
        family_id = family_id or new_family_id()
        now = self._now_ms()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        RefreshTokenFamilyRecord(
                            id=family_id,
                            user_id=user_id,
                            current_token_hash=initial_hash,
                            revoked=False,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except SQLAlchemyError as exc:
            logger.error("refresh_token.create_failed", user_id=user_id, error=str(exc))
            raise StorageError("Failed to create refresh token family") from exc
        logger.debug("refresh_token.family_created", family_id=family_id, user_id=user_id)
        return family_id

    async def rotate(self, family_id: str, old_hash: str, new_hash: str) -> None:
        table = RefreshTokenFamilyRecord
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    swapped = await session.execute(
                        update(table)
                        .where(
                            table.id == family_id,
                            table.current_token_hash == old_hash,
                            table.revoked.is_(False),
                        )
                        .values(current_token_hash=new_hash, updated_at=self._now_ms())
                        .execution_options(synchronize_session=False)
                    )
                    if swapped.rowcount == 1:
                        return

                    # The hash did not match a live family: either reuse, an
                    # already revoked family, or an unknown id
                    revoked = await session.execute(
                        update(table)
                        .where(table.id == family_id, table.revoked.is_(False))
                        .values(revoked=True, updated_at=self._now_ms())
                        .execution_options(synchronize_session=False)
                    )
                    row = (
                        await session.execute(
                            select(table.user_id).where(table.id == family_id)
                        )
                    ).first()
        except SQLAlchemyError as exc:
            logger.error("refresh_token.rotate_failed", family_id=family_id, error=str(exc))
            raise StorageError("Failed to rotate refresh token") from exc

        if row is None:
            raise NotFoundError("Refresh token family")
        if revoked.rowcount == 1:
            logger.warning(
                "refresh_token.reuse_detected", family_id=family_id, user_id=row.user_id
            )
            raise TokenReuseError(family_id, user_id=row.user_id)
        raise FamilyRevokedError()

    async def find_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenFamily]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RefreshTokenFamilyRecord).where(
                        RefreshTokenFamilyRecord.current_token_hash == token_hash
                    )
                )
                record = result.scalars().first()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to look up refresh token family") from exc
        return _to_model(record) if record else None

    async def get(self, family_id: str) -> Optional[RefreshTokenFamily]:
        try:
            async with self._session_factory() as session:
                record = await session.get(RefreshTokenFamilyRecord, family_id)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to load refresh token family") from exc
        return _to_model(record) if record else None

    async def revoke_family(self, family_id: str) -> None:
        table = RefreshTokenFamilyRecord
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(table)
                        .where(table.id == family_id, table.revoked.is_(False))
                        .values(revoked=True, updated_at=self._now_ms())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        exists = (
                            await session.execute(select(table.id).where(table.id == family_id))
                        ).first()
                        if exists is None:
                            raise NotFoundError("Refresh token family")
                        return
        except SQLAlchemyError as exc:
            raise StorageError("Failed to revoke refresh token family") from exc
        logger.info("refresh_token.family_revoked", family_id=family_id)

    async def revoke_all_for_user(self, user_id: str) -> int:
        table = RefreshTokenFamilyRecord
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(table)
                        .where(table.user_id == user_id, table.revoked.is_(False))
                        .values(revoked=True, updated_at=self._now_ms())
                        .execution_options(synchronize_session=False)
                    )
                    count = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorageError("Failed to revoke user refresh token families") from exc
        if count:
            logger.info("refresh_token.user_families_revoked", user_id=user_id, count=count)
        return count

    async def prune(self, max_age: timedelta) -> int:
        cutoff = to_epoch_ms(self._clock() - max_age)
        table = RefreshTokenFamilyRecord
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(table)
                        .where(table.revoked.is_(True), table.updated_at < cutoff)
                        .execution_options(synchronize_session=False)
                    )
                    count = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorageError("Failed to prune refresh token families") from exc
        logger.info("refresh_token.pruned", count=count)
        return count
