from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(url: str) -> AsyncEngine:
    """Engine for one of the SQL-backed stores."""
    if make_url(url).get_backend_name() == "sqlite":
        # Local development and tests; wait on the file lock instead of failing fast
        return create_async_engine(url, echo=False, future=True, connect_args={"timeout": 30})
    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,  # Verify connections before using them
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
