"""
Optimistic calculation strategies for aggregate metrics.

A strategy turns the server's last aggregate value plus two views of the same
rows (as the server reported them, and after the local operation overlay)
into an optimistic aggregate.
"""
import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from modelsync.core.classes import ModelClass
from modelsync.core.interfaces import AbstractMetricStrategy
from modelsync.core.types import MetricType

logger = logging.getLogger(__name__)

Number = Union[int, float]


def parse_number(value: Any) -> Optional[Number]:
    """Coerce numerics and numeric strings; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def get_numeric_values(data: List[Dict[str, Any]], field: Optional[str]) -> List[Number]:
    if not field or not data:
        return []
    values = []
    for item in data:
        if not isinstance(item, dict):
            continue
        number = parse_number(item.get(field))
        if number is not None:
            values.append(number)
    return values


def calculate_sum(data, field) -> Number:
    return sum(get_numeric_values(data, field))


def calculate_min(data, field) -> Optional[Number]:
    values = get_numeric_values(data, field)
    return min(values) if values else None


def calculate_max(data, field) -> Optional[Number]:
    values = get_numeric_values(data, field)
    return max(values) if values else None


def _require_field(strategy_name: str, field: Optional[str]) -> None:
    if not field:
        raise ValueError(f"{strategy_name} requires a field parameter")


class CountStrategy(AbstractMetricStrategy):
    def calculate(self, ground_truth_value, ground_truth_slice, optimistic_slice, field=None):
        ground_truth_slice = ground_truth_slice or []
        optimistic_slice = optimistic_slice or []
        if field:
            def counted(items):
                return sum(
                    1 for item in items
                    if isinstance(item, dict) and item.get(field) is not None
                )
        else:
            counted = len

        difference = counted(optimistic_slice) - counted(ground_truth_slice)
        base = parse_number(ground_truth_value)
        return max(0, (base if base is not None else 0) + difference)


class SumStrategy(AbstractMetricStrategy):
    def calculate(self, ground_truth_value, ground_truth_slice, optimistic_slice, field=None):
        _require_field("SumStrategy", field)
        difference = calculate_sum(optimistic_slice, field) - calculate_sum(
            ground_truth_slice, field
        )
        base = parse_number(ground_truth_value)
        return (base if base is not None else 0) + difference


class MinStrategy(AbstractMetricStrategy):
    def calculate(self, ground_truth_value, ground_truth_slice, optimistic_slice, field=None):
        _require_field("MinStrategy", field)
        optimistic_min = calculate_min(optimistic_slice, field)

        # Nothing to guess from
        if optimistic_min is None:
            return ground_truth_value
        if ground_truth_value is None:
            return optimistic_min
        base = parse_number(ground_truth_value)
        if base is None:
            return ground_truth_value
        # Only a strictly lower value is a confident new minimum until the next sync
        if optimistic_min < base:
            return optimistic_min
        return ground_truth_value


class MaxStrategy(AbstractMetricStrategy):
    def calculate(self, ground_truth_value, ground_truth_slice, optimistic_slice, field=None):
        _require_field("MaxStrategy", field)
        optimistic_max = calculate_max(optimistic_slice, field)

        if optimistic_max is None:
            return ground_truth_value
        if ground_truth_value is None:
            return optimistic_max
        base = parse_number(ground_truth_value)
        if base is None:
            return ground_truth_value
        if optimistic_max > base:
            return optimistic_max
        return ground_truth_value


GENERIC_MODEL = "*"


class MetricStrategyFactory:
    """
    Resolves the optimistic strategy for a metric.

    Precedence: an override for (metric_type, model_class), then an override
    for (metric_type, *), then the default for the metric type. Unknown
    metric types fall back to counting.
    """

    _defaults = {
        MetricType.COUNT.value: CountStrategy,
        MetricType.SUM.value: SumStrategy,
        MetricType.MIN.value: MinStrategy,
        MetricType.MAX.value: MaxStrategy,
    }

    def __init__(self) -> None:
        self._custom_strategies: Dict[str, AbstractMetricStrategy] = {}

    @staticmethod
    def _metric_name(metric_type: Union[str, MetricType]) -> str:
        if isinstance(metric_type, MetricType):
            return metric_type.value
        return str(metric_type).lower()

    def _key(self, metric_type, model_class: Optional[ModelClass]) -> str:
        if model_class is None:
            return f"{self._metric_name(metric_type)}::{GENERIC_MODEL}::{GENERIC_MODEL}"
        return (
            f"{self._metric_name(metric_type)}::{model_class.config_key}::{model_class.model_name}"
        )

    def override_strategy(
        self,
        metric_type: Union[str, MetricType],
        model_class: Optional[ModelClass],
        strategy: AbstractMetricStrategy,
    ) -> None:
        """Override the strategy for one model, or for every model when model_class is None."""
        if not metric_type or strategy is None:
            raise ValueError("override_strategy requires metric_type and strategy")
        if not isinstance(strategy, AbstractMetricStrategy):
            raise ValueError("strategy must be an instance of AbstractMetricStrategy")
        self._custom_strategies[self._key(metric_type, model_class)] = strategy

    def clear_custom_strategies(self) -> None:
        self._custom_strategies.clear()

    def get_strategy(
        self, metric_type: Union[str, MetricType], model_class: Optional[ModelClass] = None
    ) -> AbstractMetricStrategy:
        if model_class is not None:
            specific = self._custom_strategies.get(self._key(metric_type, model_class))
            if specific is not None:
                return specific

        generic = self._custom_strategies.get(self._key(metric_type, None))
        if generic is not None:
            return generic

        strategy_class = self._defaults.get(self._metric_name(metric_type))
        if strategy_class is None:
            logger.debug("Unknown metric type %r, using CountStrategy", metric_type)
            strategy_class = CountStrategy
        return strategy_class()


strategy_factory = MetricStrategyFactory()
