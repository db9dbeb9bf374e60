"""Unit tests for lease locks."""

import asyncio
import uuid

import pytest

from src.core.exceptions import LockBusyError
from src.services.locks import STALE_SWEEP_KEY, project_lock_key

pytestmark = pytest.mark.asyncio

KEY = "project:test"


class TestLockKeys:
    """Tests for lock key naming."""

    async def test_project_key(self) -> None:
        project_id = uuid.UUID(int=7)
        assert project_lock_key(project_id) == f"project:{project_id}"
        assert project_lock_key(project_id) != STALE_SWEEP_KEY


# =============================================================================
# Acquisition
# =============================================================================


class TestHold:
    """Tests for scoped acquisition."""

    async def test_hold_and_release(self, locks) -> None:
        async with locks.hold(KEY) as token:
            assert locks.leases[KEY][0] == token
        assert KEY not in locks.leases

    async def test_released_on_error(self, locks) -> None:
        with pytest.raises(RuntimeError):
            async with locks.hold(KEY):
                raise RuntimeError("boom")
        assert KEY not in locks.leases

    async def test_busy_without_wait(self, locks) -> None:
        async with locks.hold(KEY):
            with pytest.raises(LockBusyError) as exc_info:
                async with locks.hold(KEY, wait=False):
                    pass
        assert exc_info.value.key == KEY

    async def test_wait_times_out(self, locks) -> None:
        async with locks.hold(KEY):
            with pytest.raises(LockBusyError):
                async with locks.hold(KEY, timeout=0.05):
                    pass

    async def test_waiter_gets_lock_after_release(self, locks) -> None:
        order: list[str] = []

        async def first() -> None:
            async with locks.hold(KEY):
                order.append("first in")
                await asyncio.sleep(0.05)
                order.append("first out")

        async def second() -> None:
            await asyncio.sleep(0.01)
            async with locks.hold(KEY, timeout=2):
                order.append("second in")

        await asyncio.gather(first(), second())

        assert order == ["first in", "first out", "second in"]

    async def test_different_keys_do_not_block(self, locks) -> None:
        async with locks.hold("project:a"), locks.hold("project:b", wait=False):
            assert set(locks.leases) == {"project:a", "project:b"}


# =============================================================================
# Leases
# =============================================================================


class TestLeases:
    """Tests for expiry, takeover and renewal."""

    async def test_expired_lease_is_taken_over(self, locks) -> None:
        assert await locks.try_acquire(KEY, "dead-worker")
        locks.expire(KEY)

        async with locks.hold(KEY, wait=False) as token:
            # The previous owner can neither renew nor release the new lease
            assert not await locks.renew(KEY, "dead-worker")
            await locks.release(KEY, "dead-worker")
            assert locks.leases[KEY][0] == token

    async def test_live_lease_is_not_taken_over(self, locks) -> None:
        assert await locks.try_acquire(KEY, "worker-a")
        assert not await locks.try_acquire(KEY, "worker-b")
        # Re-entrant for the same owner
        assert await locks.try_acquire(KEY, "worker-a")

    async def test_lease_is_renewed_while_held(self, locks) -> None:
        locks.renew_seconds = 0.01

        async with locks.hold(KEY):
            await asyncio.sleep(0.08)

        assert locks.renewals >= 1
        assert KEY not in locks.leases

    async def test_renewal_stops_when_lease_lost(self, locks) -> None:
        locks.renew_seconds = 0.01

        async with locks.hold(KEY):
            locks.leases[KEY] = ("someone-else", locks.leases[KEY][1])
            await asyncio.sleep(0.05)
            assert locks.renewals == 0

        # Not ours, so not released
        assert locks.leases[KEY][0] == "someone-else"
