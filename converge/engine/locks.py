"""
Per-resource locks.

One writer per resource at a time. The convergence engine waits for a
resource's lock; the release trigger only tries it and backs off when a
convergence action holds it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from converge.errors import ResourceBusy


class ResourceLocks:
    """Lazily created asyncio locks keyed by resource name."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        """Wait for the lock on `name` and hold it for the block."""
        async with self._lock(name):
            yield

    @asynccontextmanager
    async def try_hold(self, name: str) -> AsyncIterator[None]:
        """
        Hold the lock on `name` only if it is free right now.

        Raises:
            ResourceBusy: Another writer holds the resource
        """
        lock = self._lock(name)
        if lock.locked():
            raise ResourceBusy(name)
        # An unlocked lock is acquired without suspending
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
