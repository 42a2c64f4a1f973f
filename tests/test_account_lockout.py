import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.database import (
    DatabaseConfig,
    LoginLockoutRecord,
    create_engine,
    init_models,
)
from sessionguard.services.account_lockout import AccountLockout, SQLAlchemyAccountLockout


class FirstInsertLosesRace(AsyncSession):
    """Session where another writer commits the row just before our first insert"""

    @asynccontextmanager
    async def _raced(self):
        await self.execute(
            insert(LoginLockoutRecord).values(
                email="alice@example.com", failed_attempts=1, locked_until=None
            )
        )
        async with AsyncSession.begin_nested(self):
            yield

    def begin_nested(self):
        return self._raced()


@pytest.mark.asyncio
async def test_adapters_satisfy_protocol(lockout):
    assert isinstance(lockout, AccountLockout)


@pytest.mark.asyncio
async def test_locks_on_fifth_failure(lockout, clock):
    results = [await lockout.record_failed_attempt("alice@example.com") for _ in range(5)]

    assert results == [False, False, False, False, True]
    locked_until = await lockout.is_locked("alice@example.com")
    assert locked_until is not None
    assert (locked_until - clock()).total_seconds() == 900


@pytest.mark.asyncio
async def test_attempts_during_lock_are_not_counted(lockout):
    for _ in range(5):
        await lockout.record_failed_attempt("alice@example.com")

    assert await lockout.record_failed_attempt("alice@example.com") is True
    record = await lockout.get_record("alice@example.com")
    assert record.failed_attempts == 5


@pytest.mark.asyncio
async def test_reset_clears_lock_immediately(lockout):
    for _ in range(5):
        await lockout.record_failed_attempt("alice@example.com")

    await lockout.reset_attempts("alice@example.com")

    assert await lockout.is_locked("alice@example.com") is None
    assert (await lockout.get_record("alice@example.com")).failed_attempts == 0
    assert await lockout.record_failed_attempt("alice@example.com") is False


@pytest.mark.asyncio
async def test_expired_lock_self_heals_on_read(lockout, clock):
    for _ in range(5):
        await lockout.record_failed_attempt("alice@example.com")

    clock.advance(seconds=899)
    assert await lockout.is_locked("alice@example.com") is not None

    clock.advance(seconds=1)
    assert await lockout.is_locked("alice@example.com") is None
    record = await lockout.get_record("alice@example.com")
    assert record.locked_until is None

    assert await lockout.record_failed_attempt("alice@example.com") is False
    assert (await lockout.get_record("alice@example.com")).failed_attempts == 1


@pytest.mark.asyncio
async def test_expired_lock_resets_counter_on_next_failure(lockout, clock):
    for _ in range(5):
        await lockout.record_failed_attempt("alice@example.com")
    clock.advance(minutes=16)

    # No read in between: the write path heals too
    assert await lockout.record_failed_attempt("alice@example.com") is False
    assert (await lockout.get_record("alice@example.com")).failed_attempts == 1


@pytest.mark.asyncio
async def test_emails_are_normalised(lockout):
    await lockout.record_failed_attempt("  Alice@Example.COM ")
    await lockout.record_failed_attempt("alice@example.com")

    record = await lockout.get_record("ALICE@example.com")
    assert record.email == "alice@example.com"
    assert record.failed_attempts == 2


@pytest.mark.asyncio
async def test_unknown_email_is_never_an_error(lockout):
    assert await lockout.is_locked("ghost@example.com") is None
    assert await lockout.get_record("ghost@example.com") is None
    await lockout.reset_attempts("ghost@example.com")


@pytest.mark.asyncio
async def test_failures_are_tracked_per_email(lockout):
    for _ in range(5):
        await lockout.record_failed_attempt("alice@example.com")

    assert await lockout.is_locked("bob@example.com") is None
    assert await lockout.record_failed_attempt("bob@example.com") is False


@pytest.mark.asyncio
async def test_concurrent_failures_never_exceed_threshold(lockout):
    results = await asyncio.gather(
        *(lockout.record_failed_attempt("alice@example.com") for _ in range(12))
    )

    assert results.count(False) == 4
    assert results.count(True) == 8
    record = await lockout.get_record("alice@example.com")
    assert record.failed_attempts == 5
    assert record.locked_until is not None


@pytest.mark.asyncio
async def test_first_failure_racing_another_insert_increments(tmp_path, clock):
    engine = create_engine(DatabaseConfig(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}"))
    await init_models(engine)
    try:
        lockout = SQLAlchemyAccountLockout(
            async_sessionmaker(engine, class_=FirstInsertLosesRace, expire_on_commit=False),
            max_attempts=5,
            lockout_duration=900,
            clock=clock,
        )

        assert await lockout.record_failed_attempt("alice@example.com") is False

        record = await lockout.get_record("alice@example.com")
        assert record.failed_attempts == 2
        assert record.locked_until is None
    finally:
        await engine.dispose()
