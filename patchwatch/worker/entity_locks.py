"""Per-entity locks serializing mutation of a tracked title."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class EntityLockRegistry:
    """
    One ``asyncio.Lock`` per tracked title.

    Commits from the sweep and from approved reviews both go through
    ``hold`` so two writers never interleave a load-modify-save on one title.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, entity_id: str) -> asyncio.Lock:
        return self._locks[entity_id]

    @asynccontextmanager
    async def hold(self, entity_id: str):
        async with self._locks[entity_id]:
            yield

    def is_locked(self, entity_id: str) -> bool:
        lock = self._locks.get(entity_id)
        return lock is not None and lock.locked()

    def clear(self) -> None:
        """Drop idle locks."""
        for entity_id in [key for key, lock in self._locks.items() if not lock.locked()]:
            del self._locks[entity_id]
