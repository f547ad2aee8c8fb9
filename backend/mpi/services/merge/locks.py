"""
Per-identity mutual exclusion for merge operations.

Locks live in the worker process only; deployments with several workers
still need a higher layer to serialize requests for the same identities.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

logger = logging.getLogger(__name__)


class IdentityLockRegistry:
    """
    asyncio locks keyed by patient identity id.

    Locks for several identities are always acquired in sorted order so two
    operations naming the same pair in opposite roles cannot deadlock.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._holders: dict[UUID, int] = {}

    def _lock_for(self, identity_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(identity_id)
        if lock is None:
            lock = self._locks[identity_id] = asyncio.Lock()
        self._holders[identity_id] = self._holders.get(identity_id, 0) + 1
        return lock

    def _release_ref(self, identity_id: UUID) -> None:
        remaining = self._holders[identity_id] - 1
        if remaining:
            self._holders[identity_id] = remaining
        else:
            # Last user gone, drop the lock so the registry does not grow unbounded
            del self._holders[identity_id]
            del self._locks[identity_id]

    def is_locked(self, identity_id: UUID) -> bool:
        lock = self._locks.get(identity_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *identity_ids: UUID) -> AsyncIterator[None]:
        """Hold the locks of every given identity for the duration of the block."""
        if not self.enabled:
            yield
            return

        ordered = sorted(set(identity_ids), key=str)
        acquired: list[UUID] = []
        try:
            for identity_id in ordered:
                lock = self._lock_for(identity_id)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(identity_id)
                    raise
                acquired.append(identity_id)
            logger.debug("Acquired identity locks", extra={"identity_ids": [str(i) for i in ordered]})
            yield
        finally:
            for identity_id in reversed(acquired):
                self._locks[identity_id].release()
                self._release_ref(identity_id)
