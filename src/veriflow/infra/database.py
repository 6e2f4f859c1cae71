"""Async engine, session factory and the FastAPI session dependency.

Services only ``flush``; the route that owns the request decides when to
commit. A request that fails after a flush is rolled back here.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from veriflow.app.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for every VeriFlow table."""
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(url: str):
    """Engine for ``url``. SQLite connections get FK enforcement, WAL and a busy timeout."""
    if _is_sqlite(url):
        engine = create_async_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            # Customer reads keep going while a verifier decision is written
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        return engine

    return create_async_engine(url, pool_size=5, max_overflow=10, pool_pre_ping=True)


settings = get_settings()

engine = build_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create all tables (local dev and tests). Production schemas are managed separately."""
    import veriflow.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
