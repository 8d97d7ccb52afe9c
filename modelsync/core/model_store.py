from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from cytoolz import keyfilter, merge

from modelsync.core.base_store import BaseStore
from modelsync.core.classes import ModelClass
from modelsync.core.lookups import find_matching_entity, pks_of
from modelsync.core.operation import Operation
from modelsync.core.persistence import (PersistenceAdapter,
                                        model_ground_truth_key,
                                        model_operations_key)
from modelsync.core.types import Entity, OperationType, PrimaryKey, StoreEvent

logger = logging.getLogger(__name__)


def _as_pk_set(pks: Any) -> Optional[set]:
    if pks is None:
        return None
    if isinstance(pks, (set, frozenset)):
        return set(pks)
    if isinstance(pks, (list, tuple)):
        return set(pks)
    return {pks}


def _merge_by_pk(
    base: List[Entity], incoming: Dict[PrimaryKey, Entity], pk_field: str
) -> List[Entity]:
    """Field-wise merge of incoming into base; unknown pks are appended."""
    incoming = dict(incoming)
    merged: List[Entity] = []
    for existing in base:
        pk = existing[pk_field]
        merged.append(merge(existing, incoming.pop(pk)) if pk in incoming else existing)
    merged.extend(incoming.values())
    return merged


def new_entity_from_lookup(
    lookup: Dict[str, Any], defaults: Dict[str, Any], pk_field: str, pk: PrimaryKey
) -> Entity:
    """
    The entity an upsert creates when its lookup matches nothing: lookup
    fields, overridden by defaults, with the operation's primary key.
    Lookups with a "__" operator (e.g. status__in) are not field values and
    are left out, as the server does.
    """
    plain_lookup = keyfilter(lambda key: "__" not in key, lookup)
    return merge(plain_lookup, defaults, {pk_field: pk})


class ModelStore(BaseStore):
    """
    Per-model entity cache.

    Ground truth is the ordered list of entities the server last reported
    (deduplicated by primary key). render() folds the relevant operations,
    in insertion order, over a map built from ground truth.

    The fetch callback is called as ``await fetch_fn(pks=..., model_class=...)``
    and must return the up-to-date entities for those primary keys.
    """

    store_label = "ModelStore"

    def __init__(
        self,
        model_class: ModelClass,
        fetch_fn: Optional[Callable[..., Any]] = None,
        initial_ground_truth: Optional[Iterable[Entity]] = None,
        initial_operations: Optional[Iterable[Any]] = None,
        persistence: Optional[PersistenceAdapter] = None,
    ) -> None:
        super().__init__(model_class, fetch_fn, initial_operations, persistence)
        self.ground_truth: List[Entity] = self._clean_ground_truth(
            initial_ground_truth if initial_ground_truth is not None else []
        )
        self._handlers = {
            OperationType.CREATE.value: self._apply_create,
            OperationType.GET_OR_CREATE.value: self._apply_get_or_create,
            OperationType.UPDATE.value: self._apply_update,
            OperationType.UPDATE_INSTANCE.value: self._apply_update,
            OperationType.UPDATE_OR_CREATE.value: self._apply_update_or_create,
            OperationType.DELETE.value: self._apply_delete,
            OperationType.DELETE_INSTANCE.value: self._apply_delete,
        }

    # ground truth data

    def _clean_ground_truth(self, entities: Any) -> List[Entity]:
        if not isinstance(entities, (list, tuple)):
            logger.warning(
                "%s Expected a list of entities for ground truth, got %s. Using an empty list.",
                self.log_tag,
                type(entities).__name__,
            )
            return []

        by_pk: Dict[PrimaryKey, Entity] = {}
        for entity in entities:
            if not isinstance(entity, dict) or self.pk_field not in entity:
                logger.warning(
                    "%s Skipping invalid ground truth instance: %r", self.log_tag, entity
                )
                continue
            by_pk[entity[self.pk_field]] = entity
        return list(by_pk.values())

    def set_ground_truth(self, entities: Iterable[Entity]) -> None:
        self.ground_truth = self._clean_ground_truth(entities)
        self._persist_ground_truth()
        self._notify(StoreEvent.GROUND_TRUTH_SET)

    def get_ground_truth(self) -> List[Entity]:
        return self.ground_truth

    @property
    def ground_truth_pks(self) -> List[PrimaryKey]:
        return pks_of(self.ground_truth, self.pk_field)

    def add_to_ground_truth(self, entities: Iterable[Entity]) -> None:
        """
        Merge entities into ground truth by primary key.

        Known entities are updated field-wise in place, unknown ones are
        appended in the given order. Items without the primary key field are
        skipped with a warning.
        """
        if not isinstance(entities, (list, tuple)):
            logger.warning(
                "%s Expected a list of entities in add_to_ground_truth, got %s.",
                self.log_tag,
                type(entities).__name__,
            )
            return
        if not entities:
            return

        incoming: Dict[PrimaryKey, Entity] = {}
        for entity in entities:
            if isinstance(entity, dict) and self.pk_field in entity:
                pk = entity[self.pk_field]
                incoming[pk] = merge(incoming[pk], entity) if pk in incoming else entity
            else:
                logger.warning(
                    "%s Skipping invalid instance in add_to_ground_truth: %r",
                    self.log_tag,
                    entity,
                )

        if not incoming:
            return

        self.ground_truth = _merge_by_pk(self.ground_truth, incoming, self.pk_field)
        self._persist_ground_truth()
        self._notify(StoreEvent.GROUND_TRUTH_MERGED)

    # rendering

    def _filtered_ground_truth(self, pks: Optional[set]) -> Dict[PrimaryKey, Entity]:
        return {
            entity[self.pk_field]: entity
            for entity in self.ground_truth
            if pks is None or entity[self.pk_field] in pks
        }

    def _filtered_operations(self, pks: Optional[set]) -> List[Operation]:
        operations = self.relevant_operations()
        if pks is None:
            return operations

        filtered = []
        for operation in operations:
            instances = [
                instance
                for instance in operation.instances
                if isinstance(instance, dict) and instance.get(self.pk_field) in pks
            ]
            if instances:
                filtered.append(operation.with_instances(instances))
        return filtered

    def render(self, pks: Any = None) -> List[Entity]:
        """
        The optimistic view: ground truth with every relevant operation
        applied in insertion order, optionally restricted to a set of pks.

        Ground truth order is preserved; entities inserted by operations
        follow in operation order. Entities are shallow copies, so changing
        one never reaches ground truth or the operation log.
        """
        pk_set = _as_pk_set(pks)
        rendered = self._filtered_ground_truth(pk_set)
        for operation in self._filtered_operations(pk_set):
            self.apply_operation(operation, rendered)
        return [dict(entity) for entity in rendered.values()]

    def render_map(self, pks: Any = None) -> Dict[PrimaryKey, Entity]:
        return {entity[self.pk_field]: entity for entity in self.render(pks)}

    def apply_operation(
        self, operation: Operation, current: Dict[PrimaryKey, Entity]
    ) -> Dict[PrimaryKey, Entity]:
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

        for instance in valid:
            handler(operation, current, instance, instance[self.pk_field])
        return current

    def _apply_create(self, operation, current, instance, pk) -> None:
        if pk not in current:
            current[pk] = instance

    def _apply_update(self, operation, current, instance, pk) -> None:
        if pk in current:
            current[pk] = merge(current[pk], instance)
        elif not self.was_deleted_locally(pk):
            current[pk] = instance

    def _apply_delete(self, operation, current, instance, pk) -> None:
        current.pop(pk, None)

    def _apply_get_or_create(self, operation, current, instance, pk) -> None:
        lookup = operation.args.lookup if operation.args else None
        if not lookup:
            self._apply_create(operation, current, instance, pk)
            return

        if find_matching_entity(current, lookup) is None:
            current[pk] = new_entity_from_lookup(
                lookup, operation.args.defaults, self.pk_field, pk
            )

    def _apply_update_or_create(self, operation, current, instance, pk) -> None:
        lookup = operation.args.lookup if operation.args else None
        if not lookup:
            current[pk] = merge(current[pk], instance) if pk in current else instance
            return

        match = find_matching_entity(current, lookup)
        if match is not None:
            match_pk, match_entity = match
            current[match_pk] = merge(match_entity, operation.args.defaults)
        else:
            current[pk] = new_entity_from_lookup(
                lookup, operation.args.defaults, self.pk_field, pk
            )

    # persistence

    def _operations_key(self) -> str:
        return model_operations_key(self.model_class)

    def _persist_ground_truth(self) -> None:
        if self.persistence is None:
            return
        self.persistence.schedule_save(
            model_ground_truth_key(self.model_class), self.ground_truth
        )

    def _hydrate_ground_truth(self, entities: Any) -> None:
        current = {entity[self.pk_field]: entity for entity in self.ground_truth}
        self.ground_truth = _merge_by_pk(
            self._clean_ground_truth(entities), current, self.pk_field
        )

    # syncing with the server

    async def _sync(self) -> None:
        current_pks = self.ground_truth_pks
        if not current_pks:
            self.set_operations(self.get_trimmed_operations())
            return

        if self.fetch_fn is None:
            logger.warning("%s No fetch function configured, skipping sync.", self.log_tag)
            return

        fresh = await self.fetch_fn(pks=current_pks, model_class=self.model_class)

        # Commit only after the fetch succeeded
        self.ground_truth = self._clean_ground_truth(fresh if fresh is not None else [])
        self.operations = self.get_trimmed_operations()
        self._persist_ground_truth()
        self._persist_operations()
        self._notify(StoreEvent.SYNCED)

    def destroy(self) -> None:
        super().destroy()
        self.ground_truth = []
