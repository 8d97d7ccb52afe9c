import asyncio
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.cache import caches

from modelsync.core.interfaces import AbstractStorage

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "modelsync"


class DjangoCacheStorage(AbstractStorage):
    """
    Persists store state in a Django cache.

    Caches cannot enumerate their keys, so the storage keeps an index entry
    listing every key it wrote; load_all() and clear() go through it.
    Index updates are serialized per storage instance.
    Entries never expire.

    The cache alias and key namespace default to the MODELSYNC_CACHE_ALIAS
    and MODELSYNC_CACHE_NAMESPACE settings.
    """

    def __init__(self, alias: Optional[str] = None, namespace: Optional[str] = None) -> None:
        self.alias = alias or getattr(settings, "MODELSYNC_CACHE_ALIAS", "default")
        self.namespace = namespace or getattr(
            settings, "MODELSYNC_CACHE_NAMESPACE", DEFAULT_NAMESPACE
        )
        self._index_lock: Optional[asyncio.Lock] = None

    @property
    def cache(self):
        return caches[self.alias]

    @property
    def index_key(self) -> str:
        return f"{self.namespace}:__index__"

    def _cache_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @property
    def index_lock(self) -> asyncio.Lock:
        if self._index_lock is None:
            self._index_lock = asyncio.Lock()
        return self._index_lock

    async def _index(self) -> list:
        return await self.cache.aget(self.index_key) or []

    async def save(self, key: str, value: Any) -> None:
        await self.cache.aset(self._cache_key(key), value, timeout=None)
        async with self.index_lock:
            index = await self._index()
            if key not in index:
                index.append(key)
                await self.cache.aset(self.index_key, index, timeout=None)

    async def load(self, key: str) -> Optional[Any]:
        return await self.cache.aget(self._cache_key(key))

    async def load_all(self) -> Dict[str, Any]:
        index = await self._index()
        if not index:
            return {}
        found = await self.cache.aget_many([self._cache_key(key) for key in index])
        prefix = len(self.namespace) + 1
        return {cache_key[prefix:]: value for cache_key, value in found.items()}

    async def delete(self, key: str) -> None:
        await self.cache.adelete(self._cache_key(key))
        async with self.index_lock:
            index = await self._index()
            if key in index:
                index.remove(key)
                await self.cache.aset(self.index_key, index, timeout=None)

    async def clear(self) -> None:
        async with self.index_lock:
            index = await self._index()
            if index:
                await self.cache.adelete_many([self._cache_key(key) for key in index])
            await self.cache.adelete(self.index_key)
        logger.debug("Cleared %d modelsync entries from cache '%s'", len(index), self.alias)
