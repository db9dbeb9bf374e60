"""
Cross-process lease locks backed by the database.

Workers on different hosts serialise writes to a project's graph through a
row in `app_locks`. A lease expires on its own if its owner dies, and a
background task renews it while the owner is working.

Usage:
    locks = LeaseLock()
    async with locks.hold(project_lock_key(project_id)):
        ...  # exclusive section

    try:
        async with locks.hold(STALE_SWEEP_KEY, wait=False):
            ...
    except LockBusyError:
        pass  # another worker is sweeping
"""

import asyncio
import random
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from uuid6 import uuid7

from src.core.config import settings
from src.core.exceptions import LockBusyError
from src.core.logging import get_logger
from src.db.base import AsyncSessionLocal, utcnow
from src.db.models import AppLock

logger = get_logger(__name__)

STALE_SWEEP_KEY = "sweep:stale"


def project_lock_key(project_id: uuid.UUID | str) -> str:
    """Lock key serialising graph writes of one project."""
    return f"project:{project_id}"


class LeaseLock:
    """
    Lease-based mutual exclusion keyed by string.

    Each acquisition gets its own owner token, so a lease that expired and
    was taken over is never released or renewed by its previous owner.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl_seconds: int | None = None,
        renew_seconds: int | None = None,
        poll_interval_ms: int | None = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.ttl = timedelta(seconds=ttl_seconds or settings.project_lock_ttl_seconds)
        self.renew_seconds = renew_seconds or settings.project_lock_renew_seconds
        self.poll_interval = (poll_interval_ms or settings.lock_poll_interval_ms) / 1000

    # =========================================================================
    # Primitives
    # =========================================================================

    async def try_acquire(self, key: str, token: str) -> bool:
        """Take the lease if it is free, expired, or already ours."""
        now = utcnow()
        expires_at = now + self.ttl
        stmt = (
            pg_insert(AppLock)
            .values(lock_key=key, locked_by=token, expires_at=expires_at)
            .on_conflict_do_update(
                index_elements=[AppLock.lock_key],
                set_={"locked_by": token, "expires_at": expires_at},
                where=(AppLock.expires_at < now) | (AppLock.locked_by == token),
            )
            .returning(AppLock.lock_key)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            acquired = result.scalar_one_or_none() is not None
            await session.commit()
        return acquired

    async def renew(self, key: str, token: str) -> bool:
        """Extend our lease; False if it was lost."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(AppLock)
                .where(AppLock.lock_key == key, AppLock.locked_by == token)
                .values(expires_at=utcnow() + self.ttl)
                .returning(AppLock.lock_key)
            )
            renewed = result.scalar_one_or_none() is not None
            await session.commit()
        return renewed

    async def release(self, key: str, token: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(AppLock).where(AppLock.lock_key == key, AppLock.locked_by == token)
            )
            await session.commit()

    # =========================================================================
    # Scoped acquisition
    # =========================================================================

    async def acquire(self, key: str, token: str, wait: bool = True, timeout: float | None = None) -> None:
        """
        Acquire or raise LockBusyError.

        With wait=True the call polls (with jitter) until the lease is free or
        `timeout` seconds have passed.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if await self.try_acquire(key, token):
                return
            if not wait or (deadline is not None and loop.time() >= deadline):
                logger.debug("Lock busy", lock_key=key)
                raise LockBusyError(key)
            await asyncio.sleep(self.poll_interval * (1 + random.random()))

    async def _renew_loop(self, key: str, token: str) -> None:
        while True:
            await asyncio.sleep(self.renew_seconds)
            if not await self.renew(key, token):
                logger.warning("Lock lease lost", lock_key=key)
                return

    @asynccontextmanager
    async def hold(self, key: str, wait: bool = True, timeout: float | None = None) -> AsyncIterator[str]:
        """Hold the lock for the body; released on every exit path."""
        token = str(uuid7())
        await self.acquire(key, token, wait=wait, timeout=timeout)
        logger.debug("Lock acquired", lock_key=key)
        renewer = asyncio.create_task(self._renew_loop(key, token))
        try:
            yield token
        finally:
            renewer.cancel()
            with suppress(asyncio.CancelledError):
                await renewer
            await self.release(key, token)
            logger.debug("Lock released", lock_key=key)
