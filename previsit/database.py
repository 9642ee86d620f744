"""
Single async engine and session factory for previsit.

Both stage endpoints share the same connection pool. Each invocation opens its
own session (``AsyncSessionLocal()``) and closes it when the stage returns, so
no session or ORM state survives between invocations.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from previsit.config import DATABASE_URL

# Connection timeout (seconds) so a stage invocation doesn't hang waiting for DB
_connect_args = {"timeout": 15} if "asyncpg" in (DATABASE_URL or "") else {}
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=_connect_args,
    pool_size=2,
    max_overflow=4,
    pool_pre_ping=True,
    pool_recycle=300,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()
