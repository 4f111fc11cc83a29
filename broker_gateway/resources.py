"""Per-topic lazy resource cache with atomic get-or-create.

Adapters materialize broker resources (declared queues, resolved queue URLs,
job-queue pools, workers) the first time a topic is used and keep them for the
adapter lifetime. Two concurrent first uses of the same topic must create the
resource exactly once, while first uses of distinct topics must not wait on
each other. Each key therefore gets its own ``asyncio.Lock``; the map-level
lock is only held long enough to hand out that per-key lock.

Example:
    >>> cache = TopicResources("sqs", "queue_url")
    >>> url = await cache.get_or_create("orders", resolve_url)   # resolves once
    >>> url = await cache.get_or_create("orders", resolve_url)   # cached
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

from broker_gateway.metrics import TOPIC_RESOURCE_CREATED_TOTAL


T = TypeVar("T")


class TopicResources(Generic[T]):
    """Map of topic name -> resource with race-free first creation."""

    def __init__(self, broker: str, kind: str) -> None:
        self.broker = broker
        self.kind = kind
        self._items: Dict[str, T] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def _key_lock(self, topic: str) -> asyncio.Lock:
        async with self._lock:
            lock = self._key_locks.get(topic)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[topic] = lock
            return lock

    async def get_or_create(self, topic: str, factory: Callable[[str], Awaitable[T]]) -> T:
        """Return the resource for ``topic``, awaiting ``factory(topic)`` on first use only.

        If the factory raises, nothing is cached and the next call retries.
        """
        existing = self._items.get(topic)
        if existing is not None:
            return existing
        lock = await self._key_lock(topic)
        async with lock:
            existing = self._items.get(topic)
            if existing is not None:
                return existing
            created = await factory(topic)
            self._items[topic] = created
            TOPIC_RESOURCE_CREATED_TOTAL.labels(broker=self.broker, kind=self.kind).inc()
            return created

    def get(self, topic: str) -> Optional[T]:
        return self._items.get(topic)

    def items(self) -> Iterator[Tuple[str, T]]:
        return iter(list(self._items.items()))

    def clear(self) -> Dict[str, T]:
        """Forget every cached resource and return them so the caller can close them."""
        items = dict(self._items)
        self._items.clear()
        self._key_locks.clear()
        return items

    def __contains__(self, topic: str) -> bool:
        return topic in self._items

    def __len__(self) -> int:
        return len(self._items)
