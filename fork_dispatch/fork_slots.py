"""Allocation of fork slot numbers to concurrently active workers."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager


class ForkSlotAllocator:
    """Hands out the lowest free slot number in ``1..capacity``.

    Checkout waits while every slot is taken. Each slot must be returned
    exactly once.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"Capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._in_use: set[int] = set()
        self._condition = asyncio.Condition()

    @property
    def in_use(self) -> frozenset[int]:
        """Slots currently checked out."""
        return frozenset(self._in_use)

    async def acquire(self) -> int:
        """Check out the lowest free slot, waiting until one is free."""
        async with self._condition:
            await self._condition.wait_for(lambda: len(self._in_use) < self.capacity)
            slot = min(set(range(1, self.capacity + 1)) - self._in_use)
            self._in_use.add(slot)
            return slot

    async def release(self, slot: int) -> None:
        """Return a slot to the pool."""
        async with self._condition:
            if slot not in self._in_use:
                raise ValueError(f"Fork slot {slot} is not checked out")
            self._in_use.remove(slot)
            self._condition.notify()

    @asynccontextmanager
    async def slot(self) -> AsyncGenerator[int, None]:
        """Hold a slot for the duration of the context."""
        number = await self.acquire()
        try:
            yield number
        finally:
            await self.release(number)
