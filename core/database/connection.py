# Async SQLAlchemy engine and session management
import asyncio
import time
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from core.logging import get_database_logger_safe, get_error_logger_safe, get_performance_logger_safe

db_logger = get_database_logger_safe("database_manager")
error_logger = get_error_logger_safe("database_manager")
perf_logger = get_performance_logger_safe("database_manager")

Base = declarative_base()

SLOW_SESSION_MS = 5000


def _engine_options(db_url: str, echo: bool) -> dict:
    if db_url.startswith("sqlite"):
        # One shared connection, otherwise every session sees a new in-memory database
        return {"echo": echo, "connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"echo": echo, "pool_pre_ping": True, "pool_size": 20, "max_overflow": 30, "pool_recycle": 3600}


class DatabaseManager:
    """Owns the engine; repositories borrow sessions from it and commit themselves."""

    def __init__(self, db_url: str, environment: str = "development",
                 schema_management: str = "auto", echo: bool = False):
        self._engine = create_async_engine(db_url, **_engine_options(db_url, echo))
        self._session_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self._environment = environment
        self._schema_management = schema_management

    async def init(self):
        if self._schema_management == "skip":
            db_logger.info("Schema management skipped", environment=self._environment)
            return
        from core.database import models  # noqa: F401  (registers tables on Base.metadata)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        db_logger.info("Database tables ensured", environment=self._environment)

    async def ping(self) -> bool:
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            error_logger.error("Database ping failed", error=str(e))
            return False
        return True

    async def wait_for_ready(self, timeout: float = 30, check_interval: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await self.ping():
            if loop.time() >= deadline:
                raise RuntimeError(f"Database not ready after {timeout} seconds")
            db_logger.info("Waiting for database", retry_in=check_interval)
            await asyncio.sleep(check_interval)

    async def shutdown(self):
        await self._engine.dispose()
        db_logger.info("Database engine disposed")

    @asynccontextmanager
    async def get_session(self) -> AsyncSession:
        """Session without auto-commit; rolled back if the block raises."""
        started = time.monotonic()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as e:
                await session.rollback()
                error_logger.error("Database session rolled back", error=str(e),
                                   environment=self._environment, exc_info=True)
                raise
            finally:
                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > SLOW_SESSION_MS:
                    perf_logger.warning("Slow database session", session_duration_ms=round(elapsed_ms, 1),
                                        threshold_ms=SLOW_SESSION_MS)
