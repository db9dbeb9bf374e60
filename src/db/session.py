"""
Database session management outside of request-scoped dependencies.

Usage in query handlers and workers:
    async with get_db_context() as db:
        result = await db.execute(select(Entity))
        entities = result.scalars().all()
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.base import AsyncSessionLocal


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Use this in:
    - Query endpoints, whose streaming bodies outlive the request scope
    - Celery workers
    - Tests

    The session is NOT auto-committed and is closed when exiting the
    context, even if an exception occurs.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
