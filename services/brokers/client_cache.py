"""Per-connection adapter cache with single-flight construction."""

import asyncio
from typing import Awaitable, Callable, Dict, Hashable, Optional

from core.logging import get_broker_logger_safe
from .base import BrokerAdapter

logger = get_broker_logger_safe("brokers.client_cache")


class AdapterClientCache:
    """Holds one live adapter per connection.

    Concurrent ``get_or_create`` calls for the same key share one construction;
    ``invalidate`` drops the entry so the next call rebuilds with fresh
    credentials.
    """

    def __init__(self):
        self._clients: Dict[Hashable, BrokerAdapter] = {}
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get(self, key: Hashable) -> Optional[BrokerAdapter]:
        return self._clients.get(key)

    async def get_or_create(self, key: Hashable,
                            factory: Callable[[], Awaitable[BrokerAdapter]]) -> BrokerAdapter:
        client = self._clients.get(key)
        if client is not None:
            return client
        async with self._lock_for(key):
            client = self._clients.get(key)
            if client is None:
                client = await factory()
                self._clients[key] = client
                logger.debug("Adapter client created", cache_key=str(key))
            return client

    def put(self, key: Hashable, client: BrokerAdapter) -> None:
        self._clients[key] = client

    async def invalidate(self, key: Hashable) -> None:
        client = self._clients.pop(key, None)
        lock = self._locks.get(key)
        # A held lock belongs to a construction in flight; it is dropped by a later invalidate
        if lock is not None and not lock.locked():
            del self._locks[key]
        if client is not None:
            await client.close()
            logger.info("Adapter client invalidated", cache_key=str(key))

    async def clear(self) -> None:
        for key in list(self._clients):
            await self.invalidate(key)
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._clients
