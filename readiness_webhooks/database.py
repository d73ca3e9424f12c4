"""
Async database engine and session factory.

Delivery tasks outlive the request that triggered them, so code that
writes to the database opens its own short-lived session from
AsyncSessionLocal rather than borrowing a request-scoped one.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from readiness_webhooks.config import settings
from readiness_webhooks.models.base import Base
from readiness_webhooks.models import webhook  # noqa: F401


engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def create_all_tables(bind: AsyncEngine = engine) -> None:
    """Create every table registered on the declarative base."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

