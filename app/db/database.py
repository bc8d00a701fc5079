"""
Database Connection and Session Management

Production runs on PostgreSQL (asyncpg); a local SQLite file (aiosqlite)
is enough for development.
"""
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite מריץ את החיבור ב-thread משלו
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    return create_async_engine(url, echo=settings.DEBUG, **engine_options(url))


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create missing tables (the rides table only; there are no migrations)"""
    from app.db.models import RideRecord  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        yield session
