from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

Entity = Dict[str, Any]
PrimaryKey = Union[str, int]

# Injected fetch callbacks, see Store / ModelStore / QuerysetStore
FetchModels = Callable[..., Awaitable[List[Entity]]]
FetchQueryset = Callable[..., Awaitable[List[Entity]]]
FetchMetricValue = Callable[[], Awaitable[Any]]


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UPDATE_INSTANCE = "update_instance"
    DELETE_INSTANCE = "delete_instance"
    GET_OR_CREATE = "get_or_create"
    UPDATE_OR_CREATE = "update_or_create"


class OperationStatus(str, Enum):
    INFLIGHT = "inflight"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class MetricType(str, Enum):
    COUNT = "count"
    SUM = "sum"
    MIN = "min"
    MAX = "max"


class StoreEvent(str, Enum):
    OPERATION_ADDED = "operation_added"
    OPERATION_UPDATED = "operation_updated"
    OPERATION_CONFIRMED = "operation_confirmed"
    OPERATION_REJECTED = "operation_rejected"
    OPERATIONS_SET = "operations_set"
    GROUND_TRUTH_SET = "ground_truth_set"
    GROUND_TRUTH_MERGED = "ground_truth_merged"
    SYNCED = "synced"
    HYDRATED = "hydrated"
    VALUE_SET = "value_set"
    SLICES_SET = "slices_set"


DELETE_TYPES = frozenset({OperationType.DELETE.value, OperationType.DELETE_INSTANCE.value})

# Query types whose responses are scalars and never ingested into the stores
AGGREGATE_QUERY_TYPES = frozenset({"sum", "min", "max", "avg", "count"})
