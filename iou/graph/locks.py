"""Sharded keyed lock table for per-entity write serialization."""

import asyncio
import zlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable


class KeyedLock:
    """
    A fixed table of asyncio locks addressed by string key.

    Keys hash onto shards, so two different keys may share a lock; that
    only costs concurrency, never correctness. ``hold_many`` acquires
    shards in ascending order, which rules out lock-order deadlocks.
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [asyncio.Lock() for _ in range(shards)]

    def shard_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        async with self._locks[self.shard_for(key)]:
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncGenerator[None, None]:
        shards = sorted({self.shard_for(k) for k in keys})
        acquired: list[asyncio.Lock] = []
        try:
            for shard in shards:
                lock = self._locks[shard]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
