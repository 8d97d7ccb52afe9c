"""
Best-effort persistence of store state.

Stores mutate synchronously; persistence is asynchronous. The adapter takes a
JSON snapshot of the value at call time and writes it in the background on
the running event loop. Writes made while no loop is running are queued
until flush(). Failed writes are logged and never block or roll back the
in-memory update.

Key layout:
    modelstore::<modelName>::<configKey>::operations
    modelstore::<modelName>::<configKey>::groundtruth
    <modelName>::<configKey>::querysetstore::<astHash>::operations
    <modelName>::<configKey>::querysetstore::<astHash>::groundtruth
"""
import asyncio
import copy
import logging
from typing import Any, Dict, Optional, Set

from fastapi.encoders import jsonable_encoder

from modelsync.core.classes import ModelClass
from modelsync.core.interfaces import AbstractStorage

logger = logging.getLogger(__name__)


class MemoryStorage(AbstractStorage):
    """In-process storage. Survives store re-creation, not process restarts."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def load(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def load_all(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def keys(self):
        return list(self._data.keys())


def model_operations_key(model_class: ModelClass) -> str:
    return f"modelstore::{model_class.store_key}::operations"


def model_ground_truth_key(model_class: ModelClass) -> str:
    return f"modelstore::{model_class.store_key}::groundtruth"


def queryset_store_key(model_class: ModelClass, ast_hash: str) -> str:
    return f"{model_class.store_key}::querysetstore::{ast_hash}"


def queryset_operations_key(model_class: ModelClass, ast_hash: str) -> str:
    return f"{queryset_store_key(model_class, ast_hash)}::operations"


def queryset_ground_truth_key(model_class: ModelClass, ast_hash: str) -> str:
    return f"{queryset_store_key(model_class, ast_hash)}::groundtruth"


class PersistenceAdapter:
    """Schedules snapshot writes to an AbstractStorage."""

    def __init__(self, storage: Optional[AbstractStorage] = None) -> None:
        self.storage: AbstractStorage = storage if storage is not None else MemoryStorage()
        self._tasks: Set[asyncio.Task] = set()
        self._queued: Dict[str, Any] = {}

    def schedule_save(self, key: str, value: Any) -> None:
        snapshot = jsonable_encoder(value)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Later queued writes to the same key replace earlier ones
            self._queued.pop(key, None)
            self._queued[key] = snapshot
            return

        task = loop.create_task(self._save(key, snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _save(self, key: str, snapshot: Any) -> None:
        try:
            await self.storage.save(key, snapshot)
        except Exception as e:
            logger.error("Failed to persist %s: %s", key, e)

    @property
    def pending(self) -> int:
        return len(self._tasks) + len(self._queued)

    async def flush(self) -> None:
        """Wait for every scheduled write and perform queued ones."""
        queued, self._queued = self._queued, {}
        for key, snapshot in queued.items():
            await self._save(key, snapshot)
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks)
            self._tasks.difference_update(tasks)

    async def load_all(self) -> Dict[str, Any]:
        try:
            return await self.storage.load_all() or {}
        except Exception as e:
            logger.error("Failed to load persisted store state: %s", e)
            return {}

    async def clear(self) -> None:
        await self.flush()
        try:
            await self.storage.clear()
        except Exception as e:
            logger.error("Failed to clear persisted store state: %s", e)
