"""
Database configuration with connection pooling and async support
"""
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool
from sqlalchemy import text
from rag_grader.config import settings
from rag_grader.models import Base

# Create async engine with appropriate pooling
engine_kwargs = {
    "echo": settings.database_echo,
    "future": True,
    "pool_pre_ping": True,
}

if settings.is_production:
    engine_kwargs.update({
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_pool_size * 2,
    })
else:
    # NullPool in dev avoids stale connections across reloads
    engine_kwargs.update({
        "poolclass": NullPool,
    })

engine = create_async_engine(
    settings.database_url,
    **engine_kwargs
)

# Create async session factory
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


def dialect_name(session: AsyncSession) -> str:
    """Name of the SQL dialect a session is bound to (postgresql, sqlite, ...)"""
    return session.get_bind().dialect.name


async def init_models(target: AsyncEngine = engine):
    """Create the vector extension (PostgreSQL only) and any missing tables"""
    async with target.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
