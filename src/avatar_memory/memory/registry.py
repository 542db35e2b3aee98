"""Application-owned registry of initialized memories."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict

from .associative import AssociativeMemory
import logging

logger = logging.getLogger(__name__)

MemoryFactory = Callable[[], AssociativeMemory]


class MemoryRegistry:
    """
    Map keys (for example a store URI) to initialized :class:`AssociativeMemory`
    instances.

    Concurrent :meth:`get` calls for one key share a single initialization. A
    failed initialization is not cached, so the next call retries.
    """

    def __init__(self) -> None:
        self._memories: Dict[str, AssociativeMemory] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._memories

    async def get(self, key: str, factory: MemoryFactory, session_id: str) -> AssociativeMemory:
        memory = self._memories.get(key)
        if memory is not None:
            return memory

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._create(key, factory, session_id))
            self._pending[key] = task
        return await asyncio.shield(task)

    async def _create(self, key: str, factory: MemoryFactory, session_id: str) -> AssociativeMemory:
        try:
            memory = factory()
            await memory.initialize(session_id)
            self._memories[key] = memory
            logger.info("Registered memory %s", key)
            return memory
        finally:
            self._pending.pop(key, None)

    async def dispose(self, key: str) -> None:
        memory = self._memories.pop(key, None)
        if memory is not None:
            await memory.dispose()

    async def dispose_all(self) -> None:
        for key in list(self._memories):
            await self.dispose(key)


__all__ = ["MemoryRegistry", "MemoryFactory"]
