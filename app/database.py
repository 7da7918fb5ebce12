"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a read session per request
  - get_session_factory(): FastAPI dependency that hands out the factory

Two session styles:
  Read-only endpoints take a request-scoped session from get_db().

  Money-moving endpoints never share one session across the whole request.
  Instead they receive the session *factory* and every business operation
  opens its own atomic unit (see app.services.ledger_store.atomic).
  The idempotency record, the balance mutation, and the settlement
  finalization are each committed independently, which is exactly what the
  exactly-once protocol needs: the provisional idempotency record must be
  durable before the transfer runs, and the gateway call must happen
  outside any database transaction.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


def build_engine(database_url: str, echo: bool = False):
    """
    Create an async engine for the given URL.

    SQLite gets a generous busy timeout so that concurrent writers on
    separate connections wait for the file lock instead of failing at once.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 15
    return create_async_engine(database_url, echo=echo, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# expire_on_commit=False prevents lazy-load errors after commit;
# without this, accessing attributes on a committed object would trigger
# a synchronous DB call, which fails in async context.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...

    The session is committed on success and rolled back on any exception,
    then closed when the request completes.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency returning the session factory for atomic units.

    Tests override this to point at their own database.
    """
    return AsyncSessionLocal
