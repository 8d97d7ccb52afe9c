"""
Process wide registries mapping identities to stores.

Registries construct stores on first access and return the same instance
afterwards; they are the single source of store identity. clear() destroys
every store and drops the references (used between tests).

Keys:
    ModelStoreRegistry     <configKey>::<modelName>
    QuerysetStoreRegistry  <configKey>::<modelName>::<astHash>
    MetricStoreRegistry    <configKey>::<modelName>::<metricHash>::<metricType>[::<field>]
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from cytoolz import merge

from modelsync.core.classes import ModelClass
from modelsync.core.hashing import metric_ast_hash, queryset_ast_hash
from modelsync.core.metric_store import MetricStore
from modelsync.core.model_store import ModelStore
from modelsync.core.queryset_store import QuerysetStore
from modelsync.core.types import (Entity, FetchMetricValue, FetchModels,
                                  FetchQueryset, MetricType, PrimaryKey)

logger = logging.getLogger(__name__)


def _require_model_class(model_class: Optional[ModelClass]) -> ModelClass:
    if model_class is None:
        raise ValueError("A model_class is required")
    return model_class


def join_entities(
    pks: Iterable[PrimaryKey], entities: Dict[PrimaryKey, Entity], pk_field: str
) -> List[Entity]:
    """Entities for pks in pk order; unknown pks become {pk_field: pk} stubs."""
    return [entities.get(pk, {pk_field: pk}) for pk in pks]


class ModelStoreRegistry:
    """One ModelStore per (config_key, model_name)."""

    def __init__(self, fetch_fn: Optional[FetchModels] = None) -> None:
        self.fetch_fn = fetch_fn
        self._stores: Dict[str, ModelStore] = {}

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, model_class: ModelClass) -> bool:
        return model_class.registry_key in self._stores

    def get_store(
        self, model_class: ModelClass, fetch_fn: Optional[FetchModels] = None
    ) -> ModelStore:
        model_class = _require_model_class(model_class)
        key = model_class.registry_key
        store = self._stores.get(key)
        if store is None:
            store = ModelStore(model_class, fetch_fn=fetch_fn or self.fetch_fn)
            self._stores[key] = store
            logger.debug("Created %r", store)
        elif fetch_fn is not None:
            store.fetch_fn = fetch_fn
        return store

    def get_entity(self, model_class: ModelClass, pk: PrimaryKey) -> Optional[Entity]:
        """Rendered entity for pk, or None if it is absent or deleted."""
        rendered = self.get_store(model_class).render([pk])
        return rendered[0] if rendered else None

    def get_entities(
        self, model_class: ModelClass, pks: Optional[Iterable[PrimaryKey]] = None
    ) -> List[Entity]:
        return self.get_store(model_class).render(None if pks is None else list(pks))

    def set_entity(self, model_class: ModelClass, pk: PrimaryKey, data: Entity) -> None:
        """Write one entity into ground truth, merging over any known fields."""
        store = self.get_store(model_class)
        store.add_to_ground_truth([merge(data, {store.pk_field: pk})])

    async def sync(self, model_class: ModelClass) -> None:
        await self.get_store(model_class).sync()

    async def sync_all(self) -> None:
        await asyncio.gather(*(store.sync() for store in list(self._stores.values())))

    def clear(self) -> None:
        for store in self._stores.values():
            store.destroy()
        self._stores.clear()


class QuerysetStoreRegistry:
    """
    One QuerysetStore per (config_key, model_name, ast_hash).

    Stores resolve their ModelStore through model_registry at use time.
    """

    def __init__(
        self,
        fetch_fn: Optional[FetchQueryset] = None,
        model_registry: Optional[ModelStoreRegistry] = None,
    ) -> None:
        self.fetch_fn = fetch_fn
        self.model_registry = model_registry if model_registry is not None else ModelStoreRegistry()
        self._stores: Dict[str, QuerysetStore] = {}

    def __len__(self) -> int:
        return len(self._stores)

    @staticmethod
    def make_key(model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> str:
        return f"{model_class.registry_key}::{queryset_ast_hash(ast)}"

    def get_store(
        self,
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        fetch_fn: Optional[FetchQueryset] = None,
    ) -> QuerysetStore:
        model_class = _require_model_class(model_class)
        key = self.make_key(model_class, ast)
        store = self._stores.get(key)
        if store is None:
            store = QuerysetStore(
                model_class,
                fetch_fn=fetch_fn or self.fetch_fn,
                ast=ast,
                model_store_resolver=self.model_registry.get_store,
            )
            self._stores[key] = store
            logger.debug("Created %r", store)
        elif fetch_fn is not None:
            store.fetch_fn = fetch_fn
        return store

    def get_entity(self, model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> List[PrimaryKey]:
        """Rendered primary keys of the queryset."""
        return self.get_store(model_class, ast).render()

    def get_entities(
        self, model_class: ModelClass, ast: Optional[Dict[str, Any]]
    ) -> List[Entity]:
        """Rendered membership joined with rendered entities from the model registry."""
        pks = self.get_entity(model_class, ast)
        entities = self.model_registry.get_store(model_class).render_map(pks)
        return join_entities(pks, entities, model_class.primary_key_field)

    def set_entity(
        self, model_class: ModelClass, ast: Optional[Dict[str, Any]], pks: List[PrimaryKey]
    ) -> None:
        self.get_store(model_class, ast).set_ground_truth(pks)

    async def sync(self, model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> None:
        await self.get_store(model_class, ast).sync()

    async def sync_all(self) -> None:
        await asyncio.gather(*(store.sync() for store in list(self._stores.values())))

    def clear(self) -> None:
        for store in self._stores.values():
            store.destroy()
        self._stores.clear()


class MetricStoreRegistry:
    """
    One MetricStore per (config_key, model_name, metric_hash, metric_type, field).

    Keeps a reverse index from a queryset (model plus metric hash) to its
    metric keys so every metric over one queryset can be refreshed at once.
    """

    def __init__(
        self,
        queryset_registry: Optional[QuerysetStoreRegistry] = None,
        model_registry: Optional[ModelStoreRegistry] = None,
    ) -> None:
        if model_registry is None:
            model_registry = (
                queryset_registry.model_registry if queryset_registry is not None
                else ModelStoreRegistry()
            )
        self.model_registry = model_registry
        self.queryset_registry = (
            queryset_registry if queryset_registry is not None
            else QuerysetStoreRegistry(model_registry=model_registry)
        )
        self._stores: Dict[str, MetricStore] = {}
        self._queryset_index: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._stores)

    @staticmethod
    def _metric_name(metric_type: Union[str, MetricType]) -> str:
        if isinstance(metric_type, MetricType):
            return metric_type.value
        return str(metric_type).lower()

    @staticmethod
    def queryset_key(model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> str:
        return f"{model_class.registry_key}::{metric_ast_hash(ast)}"

    def make_key(
        self,
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        field: Optional[str] = None,
    ) -> str:
        key = f"{self.queryset_key(model_class, ast)}::{self._metric_name(metric_type)}"
        return f"{key}::{field}" if field else key

    def get_store(
        self,
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        field: Optional[str] = None,
        fetch_metric_value: Optional[FetchMetricValue] = None,
        initial_value: Any = None,
    ) -> MetricStore:
        model_class = _require_model_class(model_class)
        key = self.make_key(metric_type, model_class, ast, field)
        store = self._stores.get(key)
        if store is None:
            store = MetricStore(
                fetch_metric_value,
                metric_type,
                model_class,
                field=field,
                initial_value=initial_value,
            )
            self._stores[key] = store
            self._queryset_index.setdefault(self.queryset_key(model_class, ast), []).append(key)
            logger.debug("Created %r", store)
        elif fetch_metric_value is not None:
            store.fetch_metric_value = fetch_metric_value
        return store

    def get_stores_for_queryset(
        self, model_class: ModelClass, ast: Optional[Dict[str, Any]]
    ) -> List[MetricStore]:
        keys = self._queryset_index.get(self.queryset_key(model_class, ast), [])
        return [self._stores[key] for key in keys if key in self._stores]

    def get_entity(
        self,
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        field: Optional[str] = None,
    ) -> Any:
        """Rendered metric value, or None if the metric was never registered."""
        store = self._stores.get(self.make_key(metric_type, model_class, ast, field))
        return store.render() if store is not None else None

    def get_entities(self, model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Every rendered metric of a queryset:
        {"count": 3, "sum": {"price": 30}, ...}
        """
        result: Dict[str, Any] = {}
        for store in self.get_stores_for_queryset(model_class, ast):
            value = store.render()
            if store.field:
                result.setdefault(store.metric_type, {})[store.field] = value
            else:
                result[store.metric_type] = value
        return result

    def set_entity(
        self,
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        value: Any,
        field: Optional[str] = None,
    ) -> None:
        self.get_store(metric_type, model_class, ast, field).set_value(value)

    def update_data_for_queryset(
        self,
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        ground_truth_slice: List[Entity],
        optimistic_slice: List[Entity],
    ) -> None:
        for store in self.get_stores_for_queryset(model_class, ast):
            store.set_slices(ground_truth_slice, optimistic_slice)

    def refresh_slices(self, model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> None:
        """
        Derive both slices of every metric over a queryset from the queryset
        and model registries: the ground truth slice is the server's rows for
        the queryset's ground truth pks, the optimistic slice is the rendered
        queryset joined with rendered entities.
        """
        stores = self.get_stores_for_queryset(model_class, ast)
        if not stores:
            return

        pk_field = model_class.primary_key_field
        queryset_store = self.queryset_registry.get_store(model_class, ast)
        model_store = self.model_registry.get_store(model_class)

        known = {entity[pk_field]: entity for entity in model_store.get_ground_truth()}
        ground_truth_slice = join_entities(queryset_store.get_ground_truth(), known, pk_field)
        optimistic_slice = self.queryset_registry.get_entities(model_class, ast)

        for store in stores:
            store.set_slices(ground_truth_slice, optimistic_slice)

    async def sync(
        self,
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]],
        field: Optional[str] = None,
    ) -> None:
        store = self._stores.get(self.make_key(metric_type, model_class, ast, field))
        if store is None:
            logger.warning(
                "No %s metric registered for %s, nothing to sync.",
                self._metric_name(metric_type),
                model_class,
            )
            return
        await store.sync()

    async def sync_queryset(self, model_class: ModelClass, ast: Optional[Dict[str, Any]]) -> None:
        await asyncio.gather(
            *(store.sync() for store in self.get_stores_for_queryset(model_class, ast))
        )

    async def sync_all(self) -> None:
        await asyncio.gather(*(store.sync() for store in list(self._stores.values())))

    def clear(self) -> None:
        for store in self._stores.values():
            store.destroy()
        self._stores.clear()
        self._queryset_index.clear()


model_store_registry = ModelStoreRegistry()
queryset_store_registry = QuerysetStoreRegistry(model_registry=model_store_registry)
metric_store_registry = MetricStoreRegistry(
    queryset_registry=queryset_store_registry, model_registry=model_store_registry
)
