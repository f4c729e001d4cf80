from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from taskflow_engine.config.settings import settings
from taskflow_engine.models.flow import Base


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {}
    # Connection pool configuration for better concurrency
    return {
        "pool_size": 50,           # Number of connections to maintain in the pool
        "max_overflow": 100,       # Additional connections beyond pool_size
        "pool_pre_ping": True,     # Validate connections before use
        "pool_recycle": 3600,      # Recycle connections after 1 hour
        "pool_timeout": 30,        # Timeout for getting connection from pool
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db(db_engine=None):
    """Initialize database tables if they don't exist."""
    # Import all models to ensure they're registered with SQLAlchemy
    from taskflow_engine.models import run, llm_call  # noqa: F401

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
