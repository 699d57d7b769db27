"""Database engine, session factory, and declarative base.

The mutation engine never holds one session across saga steps.  Each step
opens its own short transaction through ``session_scope()`` so a
failure in a later step can only be undone by an explicit compensation.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from nursery.config import settings
from nursery.exceptions import ConflictError, TransientStoreError

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    """Declarative base for every nursery table."""
    pass


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error.

    Store failures are translated into the lineage taxonomy:
    integrity violations become ``ConflictError`` and connectivity /
    lock-timeout failures become ``TransientStoreError``.
    """
    factory = factory or async_session
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(f"Conflicting write: {exc.orig}") from exc
        except (OperationalError, DBAPIError) as exc:
            await session.rollback()
            raise TransientStoreError(f"Store error: {exc.orig}") from exc
        except Exception:
            await session.rollback()
            raise
