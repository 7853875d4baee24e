"""Database engine and session factory setup."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create async engine for PostgreSQL (psycopg) or SQLite (aiosqlite).

    Args:
        db_url: Connection URL (postgresql+psycopg://... or sqlite+aiosqlite:///...)
        pool_size: Maximum number of pooled connections (ignored for SQLite)

    Returns:
        Configured AsyncEngine
    """
    if make_url(db_url).get_backend_name() == "sqlite":
        # SQLite serializes writers; wait on the file lock instead of failing fast
        return create_async_engine(db_url, connect_args={"timeout": 30}, echo=False)

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # Don't log SQL queries (use structlog instead)
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    return async_sessionmaker(
        create_engine(db_url, pool_size),
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables from SQLModel metadata.

    Used for SQLite development databases and tests; PostgreSQL deployments
    use Alembic migrations instead.
    """
    # Register every table with the metadata before create_all
    import pawmotion.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
