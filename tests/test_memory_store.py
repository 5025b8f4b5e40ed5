import asyncio

import pytest

from reconciler.core.exceptions import LockTimeout
from reconciler.db.memory_store import InMemoryUserLocks


def test_idle_locks_are_dropped():
    async def scenario():
        locks = InMemoryUserLocks()
        for n in range(50):
            async with locks.hold(f"user-{n}", 1.0):
                assert locks.is_locked(f"user-{n}")

        assert locks.tracked_keys() == []

    asyncio.run(scenario())


def test_waiter_keeps_the_same_lock():
    async def scenario():
        locks = InMemoryUserLocks()
        order = []

        async def worker(name):
            async with locks.hold("44885683", 1.0):
                order.append(f"{name} in")
                await asyncio.sleep(0.01)
                order.append(f"{name} out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a in", "a out", "b in", "b out"]
        assert locks.tracked_keys() == []

    asyncio.run(scenario())


def test_timed_out_waiter_does_not_leak():
    async def scenario():
        locks = InMemoryUserLocks()
        async with locks.hold("44885683", 1.0):
            with pytest.raises(LockTimeout):
                async with locks.hold("44885683", 0.01):
                    pass
            assert locks.tracked_keys() == ["44885683"]

        assert locks.tracked_keys() == []

    asyncio.run(scenario())
