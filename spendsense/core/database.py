"""Async database engine and session factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spendsense.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


async def insert_or_ignore(
    db: AsyncSession,
    model: type,
    values: dict,
    conflict_columns: list[str],
) -> None:
    """INSERT ... ON CONFLICT DO NOTHING; the caller re-reads the row afterwards.

    Lets concurrent writers race on a unique key without either one failing.
    """
    if dialect_name(db) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert

    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    await db.execute(stmt)
