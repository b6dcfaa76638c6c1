"""SQLAlchemy async database setup and engine configuration.

SQLite gets special handling: an in-memory URL is pinned to a single
shared connection (otherwise every session would see an empty database),
and file databases run in WAL mode with a busy timeout so concurrent runs
checkpointing at the same time wait instead of failing with
"database is locked".
"""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings, get_settings

SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"))


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_db_engine(database_url: Optional[str] = None, settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the async engine for DATABASE_URL (or an explicit URL)."""
    settings = settings or get_settings()
    url = database_url or settings.DATABASE_URL

    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.SQLALCHEMY_ECHO, pool_pre_ping=True)

    if _is_memory_sqlite(url):
        return create_async_engine(
            url,
            echo=settings.SQLALCHEMY_ECHO,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    engine = create_async_engine(url, echo=settings.SQLALCHEMY_ECHO)
    event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Called once at application startup."""
    from db.base import Base
    import db.models  # noqa: F401  (registers the models)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    await engine.dispose()
