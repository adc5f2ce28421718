"""Async engine, session factory and table setup."""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ridepool.config import settings

logger = logging.getLogger(__name__)


def make_engine(url: str | None = None) -> AsyncEngine:
    """URL must use an async driver (asyncpg in production, aiosqlite locally)."""
    url = url or settings.DATABASE_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=settings.DEBUG, connect_args=connect_args)


engine = make_engine()

# Shared by get_db and by the stores built in main.lifespan
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_models(bind: AsyncEngine = engine, reset: bool = False) -> None:
    """Create missing tables. reset=True drops everything first (all data is lost)."""
    from ridepool.models import Base

    async with bind.begin() as conn:
        if reset:
            logger.warning("Dropping all tables before startup")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
