"""
modelsync: client-side optimistic sync core for a Django-style remote ORM API.
"""

from modelsync.core.classes import ModelClass
from modelsync.core.config import SyncConfig, app_config
from modelsync.core.exceptions import (ConfigError, DoesNotExist,
                                       ModelSyncError, MultipleObjectsReturned,
                                       NetworkError, PermissionDenied,
                                       ValidationError, describe_error)
from modelsync.core.interfaces import AbstractMetricStrategy, AbstractStorage
from modelsync.core.metric_store import MetricStore
from modelsync.core.metric_strategies import MetricStrategyFactory, strategy_factory
from modelsync.core.model_store import ModelStore
from modelsync.core.operation import Operation
from modelsync.core.persistence import MemoryStorage, PersistenceAdapter
from modelsync.core.queryset_store import QuerysetStore
from modelsync.core.registries import (MetricStoreRegistry,
                                       ModelStoreRegistry,
                                       QuerysetStoreRegistry,
                                       metric_store_registry,
                                       model_store_registry,
                                       queryset_store_registry)
from modelsync.core.store import Store, clear_stores, get_store
from modelsync.core.types import (MetricType, OperationStatus, OperationType,
                                  StoreEvent)

__all__ = [
    # Types
    "MetricType",
    "OperationStatus",
    "OperationType",
    "StoreEvent",
    # Configuration
    "ModelClass",
    "SyncConfig",
    "app_config",
    # Errors
    "ModelSyncError",
    "ValidationError",
    "DoesNotExist",
    "PermissionDenied",
    "MultipleObjectsReturned",
    "NetworkError",
    "ConfigError",
    "describe_error",
    # Stores
    "Operation",
    "ModelStore",
    "QuerysetStore",
    "MetricStore",
    "MetricStrategyFactory",
    "strategy_factory",
    "Store",
    "get_store",
    "clear_stores",
    # Registries
    "ModelStoreRegistry",
    "QuerysetStoreRegistry",
    "MetricStoreRegistry",
    "model_store_registry",
    "queryset_store_registry",
    "metric_store_registry",
    # Persistence
    "AbstractStorage",
    "AbstractMetricStrategy",
    "MemoryStorage",
    "PersistenceAdapter",
]

__version__ = "0.1.0"
