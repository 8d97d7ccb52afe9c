from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from modelsync.core.classes import ModelClass
from modelsync.core.exceptions import ConfigError
from modelsync.core.hashing import queryset_ast_hash
from modelsync.core.model_store import ModelStore
from modelsync.core.operation import Operation
from modelsync.core.persistence import (PersistenceAdapter,
                                        model_ground_truth_key,
                                        model_operations_key,
                                        queryset_ground_truth_key,
                                        queryset_operations_key,
                                        queryset_store_key)
from modelsync.core.queryset_store import QuerysetStore
from modelsync.core.registries import join_entities
from modelsync.core.types import (AGGREGATE_QUERY_TYPES, Entity, FetchModels,
                                  FetchQueryset, PrimaryKey)

logger = logging.getLogger(__name__)

ModelRegistry = Union[Dict[str, ModelClass], Iterable[ModelClass]]


class Store:
    """
    The stores of one backend.

    Owns a ModelStore per model and a QuerysetStore per (model, AST), builds
    them lazily and hydrates them from persisted state. API responses are
    pushed in through ingest().

    Persisted state is loaded once in the background when the Store is
    created on a running event loop, or on the first ``await when_ready()``
    otherwise. Stores created before hydration completes start empty; the
    persisted state is merged into them once it has loaded.

    Example:
        store = Store({"app.book": book}, "default", fetch_models=..., fetch_queryset=...)
        await store.when_ready()
        store.ingest(response, ast)
        books = store.get_queryset_entities(ast, book)
    """

    def __init__(
        self,
        registry: ModelRegistry,
        backend_name: str,
        fetch_models: Optional[FetchModels] = None,
        fetch_queryset: Optional[FetchQueryset] = None,
        persistence: Optional[PersistenceAdapter] = None,
    ) -> None:
        if not backend_name:
            raise ConfigError("Store requires a backend_name")
        self.backend_name = backend_name
        self.model_registry: Dict[str, ModelClass] = self._build_model_registry(registry)
        self.fetch_models = fetch_models
        self.fetch_queryset = fetch_queryset
        self.persistence = persistence if persistence is not None else PersistenceAdapter()

        self.model_stores: Dict[str, ModelStore] = {}
        self.queryset_stores: Dict[str, QuerysetStore] = {}

        self.is_ready = False
        self._cache: Dict[str, Any] = {}
        self._ready_task: Optional[asyncio.Future] = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._ready_task = loop.create_task(self._hydrate())

    def _build_model_registry(self, registry: ModelRegistry) -> Dict[str, ModelClass]:
        if registry is None:
            raise ConfigError("Store requires a model registry")
        items = registry.values() if isinstance(registry, dict) else registry

        models: Dict[str, ModelClass] = {}
        for model_class in items:
            if not isinstance(model_class, ModelClass):
                raise ConfigError(f"Invalid model class in registry: {model_class!r}")
            if model_class.config_key != self.backend_name:
                raise ConfigError(
                    f"Model {model_class.model_name} belongs to backend "
                    f"'{model_class.config_key}', not '{self.backend_name}'"
                )
            models[model_class.model_name] = model_class
        return models

    def __repr__(self) -> str:
        return f"<Store {self.backend_name}>"

    # hydration

    async def _hydrate(self) -> None:
        self._cache = await self.persistence.load_all()
        self.is_ready = True
        logger.debug("%r hydrated %d persisted entries", self, len(self._cache))

        # Stores built while loading started empty
        for store in self.model_stores.values():
            self._hydrate_early_store(
                store,
                model_ground_truth_key(store.model_class),
                model_operations_key(store.model_class),
            )
        for store in self.queryset_stores.values():
            self._hydrate_early_store(
                store,
                queryset_ground_truth_key(store.model_class, store.ast_hash),
                queryset_operations_key(store.model_class, store.ast_hash),
            )

    def _hydrate_early_store(self, store, ground_truth_key: str, operations_key: str) -> None:
        if ground_truth_key not in self._cache and operations_key not in self._cache:
            return
        logger.debug("%r merging persisted state into %r", self, store)
        store.hydrate(self._cache.get(ground_truth_key), self._cache.get(operations_key))

    async def when_ready(self) -> None:
        """Wait until persisted state has been loaded."""
        if self._ready_task is None:
            self._ready_task = asyncio.ensure_future(self._hydrate())
        await self._ready_task

    # accessors

    def get_model_class(self, model_name: str) -> ModelClass:
        model_class = self.model_registry.get(model_name)
        if model_class is None:
            raise ConfigError(
                f"Model '{model_name}' is not registered for backend '{self.backend_name}'"
            )
        return model_class

    def _check_model_class(self, model_class: Optional[ModelClass]) -> ModelClass:
        if model_class is None:
            raise ConfigError("A model_class is required")
        if self.model_registry.get(model_class.model_name) != model_class:
            raise ConfigError(
                f"Model '{model_class.model_name}' is not registered for backend "
                f"'{self.backend_name}'"
            )
        return model_class

    def get_model_store(self, model_class: ModelClass) -> ModelStore:
        model_class = self._check_model_class(model_class)
        store = self.model_stores.get(model_class.model_name)
        if store is None:
            if not self.is_ready:
                logger.debug("%r creating ModelStore for %s before hydration", self, model_class)
            store = ModelStore(
                model_class,
                fetch_fn=self.fetch_models,
                initial_ground_truth=self._cache.get(model_ground_truth_key(model_class)),
                initial_operations=self._cache.get(model_operations_key(model_class)),
                persistence=self.persistence,
            )
            self.model_stores[model_class.model_name] = store
        return store

    def get_queryset_store(
        self, ast: Optional[Dict[str, Any]], model_class: ModelClass
    ) -> QuerysetStore:
        model_class = self._check_model_class(model_class)
        ast_hash = queryset_ast_hash(ast)
        key = queryset_store_key(model_class, ast_hash)
        store = self.queryset_stores.get(key)
        if store is None:
            store = QuerysetStore(
                model_class,
                fetch_fn=self.fetch_queryset,
                ast=ast,
                initial_ground_truth_pks=self._cache.get(
                    queryset_ground_truth_key(model_class, ast_hash)
                ),
                initial_operations=self._cache.get(
                    queryset_operations_key(model_class, ast_hash)
                ),
                persistence=self.persistence,
                model_store_resolver=self.get_model_store,
            )
            self.queryset_stores[key] = store
        return store

    def _queryset_stores_for(self, model_class: ModelClass) -> List[QuerysetStore]:
        return [
            store for store in self.queryset_stores.values() if store.model_class == model_class
        ]

    # ingestion

    def ingest(
        self,
        response: Dict[str, Any],
        ast: Optional[Dict[str, Any]],
        model_class: Optional[ModelClass] = None,
    ) -> None:
        """
        Push an API response into the stores.

        Only materialized, non-aggregate queries are ingested. Entities in
        response["included"] are merged into their ModelStore's ground truth;
        when response["data"] is a list its primary keys become the ground
        truth of the AST's QuerysetStore. The model of the data is taken from
        the first item's "type", falling back to model_class (needed for an
        empty result).
        """
        if not ast or ast.get("materialized") is not True:
            return
        if ast.get("type") in AGGREGATE_QUERY_TYPES:
            return
        if not isinstance(response, dict):
            logger.warning(
                "%r Ignoring response of type %s, expected a dict.", self, type(response).__name__
            )
            return

        included = response.get("included") or {}
        for model_name, entities in included.items():
            included_class = self.model_registry.get(model_name)
            if included_class is None:
                logger.warning("%r Skipping included entities of unknown model '%s'.", self, model_name)
                continue
            if isinstance(entities, dict):
                entities = list(entities.values())
            self.get_model_store(included_class).add_to_ground_truth(entities)

        data = response.get("data")
        if not isinstance(data, list):
            return

        data_class = model_class
        if data and isinstance(data[0], dict) and data[0].get("type") in self.model_registry:
            data_class = self.model_registry[data[0]["type"]]
        if data_class is None:
            logger.warning("%r Cannot tell the model of the response data, skipping.", self)
            return

        pk_field = data_class.primary_key_field
        pks = [item[pk_field] for item in data if isinstance(item, dict) and pk_field in item]
        self.get_queryset_store(ast, data_class).set_ground_truth(pks)
        logger.info(
            "%r Ingested %d %s rows (%d included models)",
            self,
            len(pks),
            data_class,
            len(included),
        )

    # reading

    def get_models(self, pks: Any, model_class: ModelClass) -> List[Entity]:
        return self.get_model_store(model_class).render(pks)

    def get_queryset(self, ast: Optional[Dict[str, Any]], model_class: ModelClass) -> List[PrimaryKey]:
        return self.get_queryset_store(ast, model_class).render()

    def get_queryset_entities(
        self, ast: Optional[Dict[str, Any]], model_class: ModelClass
    ) -> List[Entity]:
        """Rendered queryset members with their rendered entities."""
        pks = self.get_queryset(ast, model_class)
        entities = self.get_model_store(model_class).render_map(pks)
        return join_entities(pks, entities, model_class.primary_key_field)

    # operations

    def add_operation(
        self,
        operation: Operation,
        model_class: ModelClass,
        ast: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a mutation on the model, and on the queryset of ast if given."""
        self.get_model_store(model_class).add_operation(operation)
        if ast is not None:
            self.get_queryset_store(ast, model_class).add_operation(operation)

    def confirm(
        self, operation_id: str, model_class: ModelClass, instances: Any = None
    ) -> None:
        self.get_model_store(model_class).confirm(operation_id, instances)
        for store in self._queryset_stores_for(model_class):
            if store.has_operation(operation_id):
                store.confirm(operation_id, instances)

    def reject(self, operation_id: str, model_class: ModelClass) -> None:
        self.get_model_store(model_class).reject(operation_id)
        for store in self._queryset_stores_for(model_class):
            if store.has_operation(operation_id):
                store.reject(operation_id)

    # syncing

    async def sync_all(self) -> None:
        stores = list(self.model_stores.values()) + list(self.queryset_stores.values())
        await asyncio.gather(*(store.sync() for store in stores))

    def destroy(self) -> None:
        for store in list(self.model_stores.values()) + list(self.queryset_stores.values()):
            store.destroy()
        self.model_stores.clear()
        self.queryset_stores.clear()


_stores: Dict[str, Store] = {}


def get_store(backend_name: str, registry: Optional[ModelRegistry] = None, **kwargs) -> Store:
    """
    The Store of a backend, created on first use. The model registry (and
    any Store keyword arguments) are only needed the first time.
    """
    store = _stores.get(backend_name)
    if store is None:
        if registry is None:
            raise ConfigError(
                f"No store exists for backend '{backend_name}' and no model registry was given"
            )
        store = Store(registry, backend_name, **kwargs)
        _stores[backend_name] = store
    return store


def clear_stores() -> None:
    for store in _stores.values():
        store.destroy()
    _stores.clear()
