import unittest
from unittest.mock import AsyncMock

from modelsync.core.classes import ModelClass
from modelsync.core.exceptions import NetworkError, PermissionDenied
from modelsync.core.interfaces import AbstractMetricStrategy
from modelsync.core.metric_store import MetricStore
from modelsync.core.metric_strategies import MetricStrategyFactory
from modelsync.core.types import StoreEvent

BOOK = ModelClass(model_name="django_app.book", config_key="default")


class DoubleStrategy(AbstractMetricStrategy):
    def calculate(self, ground_truth_value, ground_truth_slice, optimistic_slice, field=None):
        return (ground_truth_value or 0) * 2


class TestMetricStore(unittest.TestCase):
    def test_field_required_for_field_metrics(self):
        for metric_type in ("sum", "min", "max"):
            with self.assertRaises(ValueError):
                MetricStore(None, metric_type, BOOK)
        MetricStore(None, "count", BOOK)

    def test_requires_model_class(self):
        with self.assertRaises(ValueError):
            MetricStore(None, "count", None)

    def test_default_name(self):
        assert MetricStore(None, "sum", BOOK, field="price").name == "django_app.book_sum_price"
        assert MetricStore(None, "count", BOOK, name="books").name == "books"

    def test_count_render(self):
        """Ground truth 10 with one extra optimistic row renders 11."""
        store = MetricStore(None, "count", BOOK, initial_value=10)
        store.set_ground_truth_data([{"id": 1}, {"id": 2}])
        store.set_optimistic_data([{"id": 1}, {"id": 2}, {"id": 3}])
        assert store.render() == 11
        assert store.get_value() == 10

    def test_count_after_creates_and_rejects(self):
        store = MetricStore(None, "count", BOOK, initial_value=4)
        rows = [{"id": i} for i in range(4)]
        store.set_slices(rows, rows + [{"id": 10}, {"id": 11}])
        assert store.render() == 6
        store.set_optimistic_data(rows)
        assert store.render() == 4

    def test_unchanged_slices_render_ground_truth(self):
        rows = [{"id": 1, "price": 3}, {"id": 2, "price": 9}]
        for metric_type, value in (("sum", 12), ("min", 3), ("max", 9)):
            store = MetricStore(None, metric_type, BOOK, field="price", initial_value=value)
            store.set_slices(rows, list(rows))
            assert store.render() == value

    def test_decimal_string_ground_truth(self):
        rows = [{"id": 1, "price": "10.50"}]
        store = MetricStore(None, "min", BOOK, field="price", initial_value="10.50")
        store.set_slices(rows, rows + [{"id": 2, "price": "4.25"}])
        assert store.render() == 4.25
        assert store.to_dict()["optimistic_value"] == 4.25

        store = MetricStore(None, "max", BOOK, field="price", initial_value="10.50")
        store.set_slices(rows, rows + [{"id": 2, "price": "4.25"}])
        assert store.render() == "10.50"

    def test_non_list_slices_are_coerced(self):
        store = MetricStore(None, "count", BOOK, initial_value=2)
        with self.assertLogs("modelsync", level="WARNING"):
            store.set_optimistic_data("oops")
        assert store.optimistic_slice == []
        assert store.render() == 2

    def test_set_value_notifies(self):
        store = MetricStore(None, "count", BOOK, initial_value=1)
        events = []
        store.subscribe(lambda event, value: events.append((event, value)))
        store.set_value(5)
        assert events == [(StoreEvent.VALUE_SET, 5)]

    def test_explicit_strategy(self):
        store = MetricStore(None, "count", BOOK, initial_value=3, strategy=DoubleStrategy())
        assert store.render() == 6

    def test_factory_override_applies_after_construction(self):
        factory = MetricStrategyFactory()
        store = MetricStore(None, "count", BOOK, initial_value=3, factory=factory)
        assert store.render() == 3
        factory.override_strategy("count", BOOK, DoubleStrategy())
        assert store.render() == 6

    def test_to_dict(self):
        store = MetricStore(None, "count", BOOK, initial_value=3)
        assert store.to_dict() == {
            "name": "django_app.book_count",
            "metric_type": "count",
            "field": None,
            "value": 3,
            "optimistic_value": 3,
        }

    def test_destroy(self):
        store = MetricStore(None, "count", BOOK, initial_value=3)
        store.subscribe(lambda event, value: None)
        store.destroy()
        assert store.get_value() is None
        assert store.subscriber_count == 0


class TestMetricStoreSync(unittest.IsolatedAsyncioTestCase):
    async def test_sync_updates_value(self):
        fetch = AsyncMock(return_value=42)
        store = MetricStore(fetch, "count", BOOK, initial_value=1)
        events = []
        store.subscribe(lambda event, value: events.append(event))

        await store.sync()

        assert store.get_ground_truth() == 42
        assert events == [StoreEvent.SYNCED]
        fetch.assert_awaited_once_with()

    async def test_sync_failure_keeps_value(self):
        error = PermissionDenied("Not allowed to aggregate books.")
        store = MetricStore(AsyncMock(side_effect=error), "count", BOOK, initial_value=7)
        with self.assertLogs("modelsync", level="ERROR"):
            await store.sync()
        assert store.get_value() == 7
        assert store.last_sync_error is error
        assert not store.is_syncing

    async def test_network_error_is_logged_with_status(self):
        store = MetricStore(AsyncMock(side_effect=NetworkError()), "count", BOOK, initial_value=7)
        with self.assertLogs("modelsync", level="ERROR") as logs:
            await store.sync()
        assert isinstance(store.last_sync_error, NetworkError)
        assert "'status': 503" in logs.output[0]
        assert "'type': 'NetworkError'" in logs.output[0]
        assert store.get_value() == 7

    async def test_concurrent_sync_is_ignored(self):
        fetch = AsyncMock(return_value=1)
        store = MetricStore(fetch, "count", BOOK)
        store.is_syncing = True
        with self.assertLogs("modelsync", level="WARNING"):
            await store.sync()
        fetch.assert_not_awaited()

    async def test_sync_without_fetch_warns(self):
        store = MetricStore(None, "count", BOOK, initial_value=1)
        with self.assertLogs("modelsync", level="WARNING"):
            await store.sync()
        assert store.get_value() == 1


if __name__ == "__main__":
    unittest.main()
