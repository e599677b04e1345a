"""Database connection and session management."""
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from subscription_billing.config import Settings
from subscription_billing.database.models import Base


class Database:
    """
    Owns the async engine and session factory for one application instance.

    Created once by the application factory (or a worker) and handed to the
    components that need it; nothing is kept at module level.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """
        Build the engine from settings.

        Pool sizing only applies to server databases; SQLite gets a longer
        busy timeout so concurrent writers wait instead of failing.
        """
        if settings.is_sqlite:
            engine = create_async_engine(
                settings.database_url,
                echo=settings.database_echo,
                connect_args={"timeout": 30},
            )
        else:
            engine = create_async_engine(
                settings.database_url,
                echo=settings.database_echo,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        return cls(engine)

    async def create_all(self) -> None:
        """Create all tables defined in models if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting database sessions.

    Commits when the handler returns, rolls back when it raises.

    Example:
        @router.get("/subscriptions/me")
        async def my_subscription(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
