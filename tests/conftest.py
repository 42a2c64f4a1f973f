"""Shared fixtures for the sessionguard test suite.

Time is faked everywhere: stores and services take a ``clock`` callable, the
circuit breaker a monotonic ``clock`` and the retry policy a ``sleep``. SQL
adapters run against a throwaway SQLite file per test.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Optional

import pytest

from sessionguard.core.config import TokenSettings
from sessionguard.database import (
    DatabaseConfig,
    create_engine,
    create_session_factory,
    init_models,
)
from sessionguard.models.auth import UserAccount
from sessionguard.services.account_lockout import (
    InMemoryAccountLockout,
    SQLAlchemyAccountLockout,
)
from sessionguard.services.task_registry import TaskRegistry
from sessionguard.services.token_manager import (
    InMemoryRefreshTokenStore,
    SQLAlchemyRefreshTokenStore,
)

# Whole seconds keep epoch-ms round trips exact; must not be in the future
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeUserDirectory:
    def __init__(self):
        self.users: Dict[str, UserAccount] = {}

    def add(self, user: UserAccount) -> UserAccount:
        self.users[user.email] = user
        return user

    async def get_by_email(self, email: str) -> Optional[UserAccount]:
        return self.users.get(email)


class FakePasswordVerifier:
    """Accepts a password when its stored hash is ``hashed:<password>``"""

    async def verify(self, plain_password: str, password_hash: str) -> bool:
        return password_hash == f"hashed:{plain_password}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def token_settings() -> TokenSettings:
    return TokenSettings(secret_key="test-secret-key-with-enough-entropy-0123456789")


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(DatabaseConfig(f"sqlite+aiosqlite:///{tmp_path / 'sessionguard.db'}"))
    await init_models(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture(params=["memory", "sqlalchemy"])
async def family_store(request, clock, tmp_path) -> AsyncIterator:
    if request.param == "memory":
        yield InMemoryRefreshTokenStore(clock=clock)
        return

    engine = create_engine(DatabaseConfig(f"sqlite+aiosqlite:///{tmp_path / 'families.db'}"))
    await init_models(engine)
    try:
        yield SQLAlchemyRefreshTokenStore(create_session_factory(engine), clock=clock)
    finally:
        await engine.dispose()


@pytest.fixture(params=["memory", "sqlalchemy"])
async def lockout(request, clock, tmp_path) -> AsyncIterator:
    if request.param == "memory":
        yield InMemoryAccountLockout(max_attempts=5, lockout_duration=900, clock=clock)
        return

    engine = create_engine(DatabaseConfig(f"sqlite+aiosqlite:///{tmp_path / 'lockouts.db'}"))
    await init_models(engine)
    try:
        yield SQLAlchemyAccountLockout(
            create_session_factory(engine),
            max_attempts=5,
            lockout_duration=900,
            clock=clock,
        )
    finally:
        await engine.dispose()


@pytest.fixture
def user_directory() -> FakeUserDirectory:
    return FakeUserDirectory()


@pytest.fixture
def password_verifier() -> FakePasswordVerifier:
    return FakePasswordVerifier()
