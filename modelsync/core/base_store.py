from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Optional

from modelsync.core.classes import ModelClass
from modelsync.core.config import app_config
from modelsync.core.events import Subscribable
from modelsync.core.exceptions import describe_error
from modelsync.core.operation import Operation
from modelsync.core.persistence import PersistenceAdapter
from modelsync.core.types import DELETE_TYPES, StoreEvent

logger = logging.getLogger(__name__)


class BaseStore(Subscribable, ABC):
    """
    Operation log shared by ModelStore and QuerysetStore.

    Holds the ordered list of operations for one store, the status
    transitions on it, trimming, the sync guard and best-effort persistence
    of the log. Subclasses own their ground truth and rendering.
    """

    store_label = "Store"

    def __init__(
        self,
        model_class: ModelClass,
        fetch_fn: Optional[Callable[..., Any]] = None,
        initial_operations: Optional[Iterable[Any]] = None,
        persistence: Optional[PersistenceAdapter] = None,
    ) -> None:
        if model_class is None:
            raise ValueError(f"{self.store_label} requires a model_class")
        self.model_class = model_class
        self.fetch_fn = fetch_fn
        self.persistence = persistence
        self.is_syncing = False
        self.last_sync_error: Optional[BaseException] = None
        self.operations: List[Operation] = self._coerce_operations(initial_operations)
        self._init_subscribers()

    @property
    def pk_field(self) -> str:
        return self.model_class.primary_key_field

    @property
    def log_tag(self) -> str:
        return f"[{self.store_label} {self.model_class.model_name}]"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.model_class.registry_key}>"

    # operations

    def _coerce_operations(self, operations: Optional[Iterable[Any]]) -> List[Operation]:
        if operations is None:
            return []
        if not isinstance(operations, (list, tuple)):
            logger.warning(
                "%s Expected a list of operations, got %s. Using an empty list.",
                self.log_tag,
                type(operations).__name__,
            )
            return []

        coerced = []
        for item in operations:
            if isinstance(item, Operation):
                coerced.append(item)
                continue
            try:
                coerced.append(Operation.from_dict(item))
            except (TypeError, ValueError) as e:
                logger.warning("%s Skipping invalid operation %r: %s", self.log_tag, item, e)
        return coerced

    def _find_operation(self, operation_id: str) -> Optional[Operation]:
        for operation in self.operations:
            if operation.operation_id == operation_id:
                return operation
        return None

    def has_operation(self, operation_id: str) -> bool:
        return self._find_operation(operation_id) is not None

    def add_operation(self, operation: Operation) -> None:
        self.operations.append(operation)
        self._persist_operations()
        self._notify(StoreEvent.OPERATION_ADDED)

    def update_operation(self, operation: Operation) -> bool:
        """Replace the operation with the same id, keeping its position."""
        for index, existing in enumerate(self.operations):
            if existing.operation_id == operation.operation_id:
                self.operations[index] = operation
                self._persist_operations()
                self._notify(StoreEvent.OPERATION_UPDATED)
                return True
        return False

    def confirm(self, operation_id: str, instances: Any = None) -> None:
        operation = self._find_operation(operation_id)
        if operation is None:
            logger.warning(
                "%s Attempted to confirm non-existent operation: %s", self.log_tag, operation_id
            )
            return
        operation.confirm(instances)
        self._persist_operations()
        self._notify(StoreEvent.OPERATION_CONFIRMED)

    def reject(self, operation_id: str) -> None:
        operation = self._find_operation(operation_id)
        if operation is None:
            logger.warning(
                "%s Attempted to reject non-existent operation: %s", self.log_tag, operation_id
            )
            return
        operation.reject()
        self._persist_operations()
        self._notify(StoreEvent.OPERATION_REJECTED)

    def set_operations(self, operations: Iterable[Any]) -> None:
        self.operations = self._coerce_operations(
            operations if operations is not None else []
        )
        self._persist_operations()
        self._notify(StoreEvent.OPERATIONS_SET)

    def get_trimmed_operations(self) -> List[Operation]:
        cutoff = app_config.staleness_cutoff()
        return [op for op in self.operations if op.timestamp > cutoff]

    def relevant_operations(self) -> List[Operation]:
        cutoff = app_config.staleness_cutoff()
        return [op for op in self.operations if op.is_relevant(cutoff)]

    def was_deleted_locally(self, pk: Any) -> bool:
        """Delete-guard: a non-rejected delete in the log targets this pk."""
        return any(
            op.type in DELETE_TYPES and not op.is_rejected and op.targets(self.pk_field, pk)
            for op in self.operations
        )

    def _is_valid_instance(self, operation: Operation, instance: Any) -> bool:
        if isinstance(instance, dict) and self.pk_field in instance:
            return True
        logger.warning(
            "%s Skipping instance in operation %s due to missing PK field '%s' or invalid format.",
            self.log_tag,
            operation.operation_id,
            self.pk_field,
        )
        return False

    # persistence

    @abstractmethod
    def _operations_key(self) -> str:
        """Persistence key of the operation log."""
        pass

    @abstractmethod
    def _persist_ground_truth(self) -> None:
        pass

    @abstractmethod
    def _hydrate_ground_truth(self, ground_truth: Any) -> None:
        """Fold persisted ground truth under the in-memory one."""
        pass

    def hydrate(self, ground_truth: Any = None, operations: Any = None) -> None:
        """
        Fold state persisted by an earlier session into a store that was built
        before that state was loaded. In-memory state is newer: persisted
        operations go before the logged ones (known ids are skipped) and
        persisted ground truth goes under the current one. The merged state is
        written back.
        """
        persisted = [
            op
            for op in self._coerce_operations(operations if operations is not None else [])
            if not self.has_operation(op.operation_id)
        ]
        self.operations = persisted + self.operations
        if ground_truth is not None:
            self._hydrate_ground_truth(ground_truth)
        self._persist_ground_truth()
        self._persist_operations()
        self._notify(StoreEvent.HYDRATED)

    def _persist_operations(self) -> None:
        if self.persistence is None:
            return
        self.persistence.schedule_save(
            self._operations_key(), [op.to_dict() for op in self.operations]
        )

    # syncing with the server

    @abstractmethod
    async def _sync(self) -> None:
        """Fetch fresh ground truth and commit it together with the trimmed log."""
        pass

    async def sync(self) -> None:
        """
        Refresh ground truth from the server and trim stale operations.

        Never raises on fetch errors: they are logged, kept on
        last_sync_error, and the store keeps its pre-sync state.
        """
        if self.is_syncing:
            logger.warning("%s Already syncing, request ignored.", self.log_tag)
            return
        self.is_syncing = True
        self.last_sync_error = None
        logger.debug("%s Starting sync...", self.log_tag)

        try:
            await self._sync()
        except Exception as e:
            self.last_sync_error = e
            logger.error(
                "%s Failed to sync ground truth: %s", self.log_tag, describe_error(e)
            )
        else:
            logger.debug("%s Sync completed.", self.log_tag)
        finally:
            self.is_syncing = False

    def destroy(self) -> None:
        """Drop subscribers and in-memory state."""
        self._subscribers.clear()
        self.operations = []
