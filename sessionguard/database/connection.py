"""
Async engine and session factory for the SQLAlchemy adapters

Production runs on PostgreSQL through asyncpg; the test suite and small
deployments use SQLite through aiosqlite. Both go through the same
``create_engine`` so the stores never see a dialect difference.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sessionguard.database.models import Base

logger = structlog.get_logger(__name__)


def _postgres_url_from_env() -> str:
    user = os.getenv("PGUSER", "user")
    password = os.getenv("PGPASSWORD", "password")
    host = os.getenv("PGHOST", "localhost")
    port = os.getenv("PGPORT", "5432")
    name = os.getenv("PGDATABASE", "sessionguard")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@dataclass(frozen=True)
class DatabaseConfig:
    database_url: str
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    echo_sql: bool = False
    # Seconds SQLite waits on a locked database before failing
    sqlite_busy_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """``DATABASE_URL`` wins; otherwise the URL is assembled from PG* vars"""
        return cls(
            database_url=os.getenv("DATABASE_URL") or _postgres_url_from_env(),
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
            echo_sql=os.getenv("DB_ECHO_SQL", "false").lower() == "true",
            sqlite_busy_timeout=float(os.getenv("DB_SQLITE_BUSY_TIMEOUT", "15")),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def engine_kwargs(self) -> Dict[str, Any]:
        if self.is_sqlite:
            # SQLite has no server-side pool to size
            return {
                "echo": self.echo_sql,
                "connect_args": {"timeout": self.sqlite_busy_timeout},
            }
        return {
            "echo": self.echo_sql,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
            "connect_args": {"server_settings": {"application_name": "sessionguard"}},
        }


def _enable_sqlite_wal(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
    finally:
        cursor.close()


def create_engine(config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    config = config or DatabaseConfig.from_env()
    engine = create_async_engine(config.database_url, **config.engine_kwargs())
    if config.is_sqlite:
        # WAL lets readers proceed while one writer holds the lock
        event.listen(engine.sync_engine, "connect", _enable_sqlite_wal)
    logger.info("database.engine_created", dialect=engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded rows usable after commit; stores never autoflush"""
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create the sessionguard tables if missing"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables_ready")


async def check_connection(engine: AsyncEngine) -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database.connection_check_failed", error=str(exc))
        return False
    return True
