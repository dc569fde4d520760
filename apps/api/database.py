"""
Async database engine, session factory and request-scoped session dependency.
"""

from typing import Any, AsyncIterator, Dict, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


Base = declarative_base()


def _async_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


_database_url = (settings.DATABASE_URL or "").strip()
engine = create_async_engine(_async_database_url(_database_url), pool_pre_ping=True) if _database_url else None
async_session_maker: Optional[async_sessionmaker] = (
    async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False) if engine is not None else None
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session for one request; fail closed when no store is configured."""
    if async_session_maker is None:
        from services.errors import StoreUnavailableError

        raise StoreUnavailableError()
    async with async_session_maker() as session:
        yield session


async def insert_ignore(
    db: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    conflict_columns: Optional[Sequence[str]] = None,
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when a row was written.

    Without ``conflict_columns`` a clash on any unique constraint is ignored.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise RuntimeError(f"insert_ignore is not supported for dialect {dialect!r}")
    stmt = stmt.values(**values)
    if conflict_columns:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        stmt = stmt.on_conflict_do_nothing()
    result = await db.execute(stmt)
    return (result.rowcount or 0) > 0
