from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from modelsync.core.classes import ModelClass
from modelsync.core.events import Subscribable
from modelsync.core.exceptions import describe_error
from modelsync.core.interfaces import AbstractMetricStrategy
from modelsync.core.metric_strategies import MetricStrategyFactory, strategy_factory
from modelsync.core.types import Entity, FetchMetricValue, MetricType, StoreEvent

logger = logging.getLogger(__name__)

FIELD_METRICS = frozenset({MetricType.SUM.value, MetricType.MIN.value, MetricType.MAX.value})


class MetricStore(Subscribable):
    """
    One scalar aggregate over a queryset, rendered optimistically.

    ground_truth_value is the last value the server returned. The two slices
    are the queryset's entities as the server reported them and after the
    operation overlay; the strategy turns the difference between them into an
    adjustment of the server value.

    The strategy is resolved from the factory at render time unless one is
    passed explicitly, so overrides registered later still apply.
    """

    def __init__(
        self,
        fetch_metric_value: Optional[FetchMetricValue],
        metric_type: Union[str, MetricType],
        model_class: ModelClass,
        field: Optional[str] = None,
        initial_value: Any = None,
        name: Optional[str] = None,
        strategy: Optional[AbstractMetricStrategy] = None,
        factory: Optional[MetricStrategyFactory] = None,
    ) -> None:
        if model_class is None:
            raise ValueError("MetricStore requires a model_class")
        self.metric_type = (
            metric_type.value if isinstance(metric_type, MetricType) else str(metric_type).lower()
        )
        if self.metric_type in FIELD_METRICS and not field:
            raise ValueError(f"Field parameter is required for {self.metric_type} metric")

        self.fetch_metric_value = fetch_metric_value
        self.model_class = model_class
        self.field = field
        self.name = name or self._default_name()
        self.ground_truth_value = initial_value
        self.ground_truth_slice: List[Entity] = []
        self.optimistic_slice: List[Entity] = []
        self.is_syncing = False
        self.last_sync_error: Optional[BaseException] = None
        self._strategy = strategy
        self._factory = factory or strategy_factory
        self._init_subscribers()

    def _default_name(self) -> str:
        suffix = f"_{self.field}" if self.field else ""
        return f"{self.model_class.model_name}_{self.metric_type}{suffix}"

    @property
    def log_tag(self) -> str:
        return f"[MetricStore {self.name}]"

    def __repr__(self) -> str:
        return f"<MetricStore {self.name}>"

    @property
    def strategy(self) -> AbstractMetricStrategy:
        if self._strategy is not None:
            return self._strategy
        return self._factory.get_strategy(self.metric_type, self.model_class)

    # ground truth data

    def get_value(self) -> Any:
        return self.ground_truth_value

    def get_ground_truth(self) -> Any:
        return self.ground_truth_value

    def set_value(self, value: Any) -> None:
        self.ground_truth_value = value
        self._notify(StoreEvent.VALUE_SET)

    def _clean_slice(self, data: Any, label: str) -> List[Entity]:
        if data is None:
            return []
        if not isinstance(data, (list, tuple)):
            logger.warning(
                "%s Expected a list for the %s slice, got %s. Using an empty list.",
                self.log_tag,
                label,
                type(data).__name__,
            )
            return []
        return list(data)

    def set_ground_truth_data(self, data: Any) -> None:
        self.ground_truth_slice = self._clean_slice(data, "ground truth")
        self._notify(StoreEvent.SLICES_SET)

    def set_optimistic_data(self, data: Any) -> None:
        self.optimistic_slice = self._clean_slice(data, "optimistic")
        self._notify(StoreEvent.SLICES_SET)

    def set_slices(self, ground_truth_slice: Any, optimistic_slice: Any) -> None:
        """Replace both slices with a single notification."""
        self.ground_truth_slice = self._clean_slice(ground_truth_slice, "ground truth")
        self.optimistic_slice = self._clean_slice(optimistic_slice, "optimistic")
        self._notify(StoreEvent.SLICES_SET)

    # rendering

    def render(self) -> Any:
        return self.strategy.calculate(
            self.ground_truth_value,
            self.ground_truth_slice,
            self.optimistic_slice,
            self.field,
        )

    # syncing with the server

    async def sync(self) -> None:
        """Fetch the server value. Errors are logged and the old value kept."""
        if self.is_syncing:
            logger.warning("%s Already syncing, request ignored.", self.log_tag)
            return
        if self.fetch_metric_value is None:
            logger.warning("%s No fetch function configured, skipping sync.", self.log_tag)
            return

        self.is_syncing = True
        self.last_sync_error = None
        logger.debug("%s Starting sync...", self.log_tag)
        try:
            value = await self.fetch_metric_value()
        except Exception as e:
            self.last_sync_error = e
            logger.error(
                "%s Failed to sync metric value: %s", self.log_tag, describe_error(e)
            )
        else:
            self.ground_truth_value = value
            logger.debug("%s Sync completed, value %r.", self.log_tag, value)
            self._notify(StoreEvent.SYNCED)
        finally:
            self.is_syncing = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "metric_type": self.metric_type,
            "field": self.field,
            "value": self.ground_truth_value,
            "optimistic_value": self.render(),
        }

    def destroy(self) -> None:
        self._subscribers.clear()
        self.ground_truth_value = None
        self.ground_truth_slice = []
        self.optimistic_slice = []
