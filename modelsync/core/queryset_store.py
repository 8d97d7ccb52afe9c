from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from modelsync.core.base_store import BaseStore
from modelsync.core.classes import ModelClass
from modelsync.core.hashing import queryset_ast_hash
from modelsync.core.lookups import find_matching_entity, pks_of
from modelsync.core.model_store import new_entity_from_lookup
from modelsync.core.operation import Operation
from modelsync.core.persistence import (PersistenceAdapter,
                                        queryset_ground_truth_key,
                                        queryset_operations_key,
                                        queryset_store_key)
from modelsync.core.types import OperationType, PrimaryKey, StoreEvent

logger = logging.getLogger(__name__)

UPSERT_TYPES = frozenset(
    {OperationType.GET_OR_CREATE.value, OperationType.UPDATE_OR_CREATE.value}
)


def _default_model_store_resolver(model_class: ModelClass):
    from modelsync.core.registries import model_store_registry

    return model_store_registry.get_store(model_class)


class QuerysetStore(BaseStore):
    """
    Per-query membership cache.

    Ground truth is the ordered list of primary keys the server returned the
    last time the AST was materialized. Operations shape membership only;
    entity fields live in the ModelStore.

    Upserts with a lookup need the current entities to decide which row they
    hit. The ModelStore is resolved at use time through model_store_resolver
    (the process wide registry by default) rather than held as a reference.

    The fetch callback is called as ``await fetch_fn(ast=..., model_class=...)``
    and must return the full list of entities for the AST.
    """

    store_label = "QuerysetStore"

    def __init__(
        self,
        model_class: ModelClass,
        fetch_fn: Optional[Callable[..., Any]] = None,
        ast: Optional[Dict[str, Any]] = None,
        initial_ground_truth_pks: Optional[Iterable[PrimaryKey]] = None,
        initial_operations: Optional[Iterable[Any]] = None,
        persistence: Optional[PersistenceAdapter] = None,
        model_store_resolver: Optional[Callable[[ModelClass], Any]] = None,
    ) -> None:
        super().__init__(model_class, fetch_fn, initial_operations, persistence)
        self.ast: Dict[str, Any] = ast or {}
        self.ast_hash = queryset_ast_hash(self.ast)
        self.model_store_resolver = model_store_resolver or _default_model_store_resolver
        self.ground_truth_pks: List[PrimaryKey] = self._clean_pks(
            initial_ground_truth_pks if initial_ground_truth_pks is not None else []
        )
        # Set once membership is replaced by set_ground_truth or a sync
        self._ground_truth_replaced = False
        self._handlers = {
            OperationType.CREATE.value: self._apply_add,
            OperationType.GET_OR_CREATE.value: self._apply_add,
            OperationType.UPDATE_OR_CREATE.value: self._apply_add,
            OperationType.UPDATE.value: self._apply_update,
            OperationType.UPDATE_INSTANCE.value: self._apply_update,
            OperationType.DELETE.value: self._apply_delete,
            OperationType.DELETE_INSTANCE.value: self._apply_delete,
        }

    @property
    def log_tag(self) -> str:
        return f"[{self.store_label} {self.model_class.model_name} {self.ast_hash[:8]}]"

    @property
    def store_key(self) -> str:
        return queryset_store_key(self.model_class, self.ast_hash)

    # ground truth data

    def _clean_pks(self, pks: Any) -> List[PrimaryKey]:
        if not isinstance(pks, (list, tuple)):
            logger.warning(
                "%s Expected a list of primary keys, got %s. Using an empty list.",
                self.log_tag,
                type(pks).__name__,
            )
            return []
        return list(dict.fromkeys(pk for pk in pks if pk is not None))

    def set_ground_truth(self, pks: Iterable[PrimaryKey]) -> None:
        self.ground_truth_pks = self._clean_pks(pks)
        self._ground_truth_replaced = True
        self._persist_ground_truth()
        self._notify(StoreEvent.GROUND_TRUTH_SET)

    def get_ground_truth(self) -> List[PrimaryKey]:
        return self.ground_truth_pks

    @property
    def ground_truth_set(self) -> set:
        return set(self.ground_truth_pks)

    # rendering

    def render(self) -> List[PrimaryKey]:
        """
        Rendered membership: ground truth pks with every relevant operation
        applied in insertion order. Ground truth order is preserved; pks
        added by operations follow in operation order.
        """
        # dict as an insertion ordered set
        rendered: Dict[PrimaryKey, None] = dict.fromkeys(self.ground_truth_pks)
        created: Dict[PrimaryKey, Any] = {}
        for operation in self.relevant_operations():
            self.apply_operation(operation, rendered, created)
        return list(rendered)

    def apply_operation(
        self,
        operation: Operation,
        current: Dict[PrimaryKey, None],
        created: Optional[Dict[PrimaryKey, Any]] = None,
    ) -> Dict[PrimaryKey, None]:
        """
        Apply one operation to the membership in place. created collects the
        entities upserts made up during this render, so later lookups in the
        same render can match them.
        """
        if created is None:
            created = {}
        handler = self._handlers.get(operation.type)
        if handler is None:
            logger.warning(
                "%s Unknown operation type '%s' in operation %s, skipping.",
                self.log_tag,
                operation.type,
                operation.operation_id,
            )
            return current

        valid = [i for i in operation.instances if self._is_valid_instance(operation, i)]
        if not valid:
            logger.warning(
                "%s Operation %s has no valid instances, skipping.",
                self.log_tag,
                operation.operation_id,
            )
            return current

        if operation.type in UPSERT_TYPES and operation.args and operation.args.lookup:
            self._apply_upsert_lookup(operation, current, valid, created)
            return current

        for instance in valid:
            handler(operation, current, instance[self.pk_field])
        return current

    def _apply_add(self, operation, current, pk) -> None:
        current.setdefault(pk, None)

    def _apply_update(self, operation, current, pk) -> None:
        if pk not in current and not self.was_deleted_locally(pk):
            current[pk] = None

    def _apply_delete(self, operation, current, pk) -> None:
        current.pop(pk, None)

    def _current_entities(self, pks: List[PrimaryKey]) -> Dict[PrimaryKey, Any]:
        try:
            model_store = self.model_store_resolver(self.model_class)
        except Exception as e:
            logger.warning("%s Could not resolve ModelStore for lookup: %s", self.log_tag, e)
            return {}
        if model_store is None:
            return {}
        return model_store.render_map(pks)

    def _apply_upsert_lookup(self, operation, current, instances, created) -> None:
        lookup = operation.args.lookup
        entities = self._current_entities(list(current))
        for pk, entity in created.items():
            if pk in current:
                entities.setdefault(pk, entity)

        for instance in instances:
            pk = instance[self.pk_field]
            match = find_matching_entity(entities, lookup)
            if match is not None:
                current.setdefault(match[0], None)
            else:
                current.setdefault(pk, None)
                entities[pk] = created[pk] = new_entity_from_lookup(
                    lookup, operation.args.defaults, self.pk_field, pk
                )

    # persistence

    def _operations_key(self) -> str:
        return queryset_operations_key(self.model_class, self.ast_hash)

    def _persist_ground_truth(self) -> None:
        if self.persistence is None:
            return
        self.persistence.schedule_save(
            queryset_ground_truth_key(self.model_class, self.ast_hash), self.ground_truth_pks
        )

    def _hydrate_ground_truth(self, pks: Any) -> None:
        # Membership from this session is newer than the persisted one
        if not self._ground_truth_replaced:
            self.ground_truth_pks = self._clean_pks(pks)

    # syncing with the server

    async def _sync(self) -> None:
        if self.fetch_fn is None:
            logger.warning("%s No fetch function configured, skipping sync.", self.log_tag)
            return

        fresh = await self.fetch_fn(ast=self.ast, model_class=self.model_class)
        if not isinstance(fresh, (list, tuple)):
            logger.warning(
                "%s Sync fetch returned %s instead of a list, treating as empty.",
                self.log_tag,
                type(fresh).__name__,
            )
            fresh = []

        valid_pks = pks_of(fresh, self.pk_field)
        if len(valid_pks) != len(fresh):
            logger.warning("%s Sync fetch returned some invalid instances.", self.log_tag)

        self.ground_truth_pks = self._clean_pks(valid_pks)
        self._ground_truth_replaced = True
        self.operations = self.get_trimmed_operations()
        self._persist_ground_truth()
        self._persist_operations()
        self._notify(StoreEvent.SYNCED)

    def destroy(self) -> None:
        super().destroy()
        self.ground_truth_pks = []
