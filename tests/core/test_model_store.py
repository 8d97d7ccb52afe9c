import unittest
from unittest.mock import AsyncMock

from hypothesis import given
from hypothesis import settings as hypothesis_settings
from hypothesis import strategies as st

from modelsync.core.base_store import BaseStore
from modelsync.core.classes import ModelClass
from modelsync.core.config import app_config
from modelsync.core.exceptions import NetworkError, ValidationError
from modelsync.core.model_store import ModelStore, new_entity_from_lookup
from modelsync.core.operation import Operation
from modelsync.core.types import OperationStatus, StoreEvent

NOW = 1_700_000_000_000

BOOK = ModelClass(model_name="django_app.book", config_key="default")


def op(type_, *instances, **kwargs):
    return Operation(type=type_, instances=list(instances), **kwargs)


class ModelStoreTestCase(unittest.TestCase):
    def setUp(self):
        self.now = NOW
        app_config.configure(clock=lambda: self.now)

    def tearDown(self):
        app_config.reset()


class TestGroundTruth(ModelStoreTestCase):
    def test_requires_model_class(self):
        with self.assertRaises(ValueError):
            ModelStore(None)

    def test_set_ground_truth_then_render_returns_it(self):
        store = ModelStore(BOOK)
        data = [{"id": 3, "v": 1}, {"id": 1, "v": 2}, {"id": 2, "v": 3}]
        store.set_ground_truth(data)
        assert store.render() == data

    def test_ground_truth_is_deduplicated_by_pk(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1}, {"id": 1, "v": 2}])
        assert store.render() == [{"id": 1, "v": 2}]
        assert store.ground_truth_pks == [1]

    def test_invalid_ground_truth_is_coerced_to_empty(self):
        store = ModelStore(BOOK)
        with self.assertLogs("modelsync", level="WARNING"):
            store.set_ground_truth("not a list")
        assert store.get_ground_truth() == []

    def test_add_to_ground_truth_merges_and_appends(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "name": "A", "v": 1}])
        with self.assertLogs("modelsync", level="WARNING"):
            store.add_to_ground_truth([{"id": 1, "v": 10}, {"name": "no pk"}, {"id": 2, "v": 2}])

        assert store.get_ground_truth() == [
            {"id": 1, "name": "A", "v": 10},
            {"id": 2, "v": 2},
        ]

    def test_add_to_ground_truth_ignores_non_list(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}])
        with self.assertLogs("modelsync", level="WARNING"):
            store.add_to_ground_truth({"id": 2})
        assert store.ground_truth_pks == [1]


class TestRendering(ModelStoreTestCase):
    def test_optimistic_create_then_confirm(self):
        """Created entities show up immediately and take the server values on confirm."""
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 100}, {"id": 2, "v": 200}])
        create = op("create", {"id": 4, "v": 400})
        store.add_operation(create)

        rendered = store.render()
        assert len(rendered) == 3
        assert rendered[-1] == {"id": 4, "v": 400}

        store.confirm(create.operation_id, [{"id": 4, "v": 401}])

        rendered = store.render()
        assert len(rendered) == 3
        assert store.render([4]) == [{"id": 4, "v": 401}]

    def test_create_does_not_overwrite_existing(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1}])
        store.add_operation(op("create", {"id": 1, "v": 99}))
        assert store.render() == [{"id": 1, "v": 1}]

    def test_update_merges_fields(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "name": "A", "v": 1}])
        store.add_operation(op("update", {"id": 1, "v": 2}))
        assert store.render() == [{"id": 1, "name": "A", "v": 2}]

    def test_update_of_absent_entity_inserts(self):
        store = ModelStore(BOOK)
        store.add_operation(op("update_instance", {"id": 7, "name": "X"}))
        assert store.render() == [{"id": 7, "name": "X"}]

    def test_delete_guard_on_update(self):
        """An update never resurrects an entity deleted locally."""
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}])
        store.add_operation(op("delete", {"id": 2}))
        store.add_operation(op("update", {"id": 2, "name": "X"}))

        rendered = store.render()
        assert len(rendered) == 1
        assert 2 not in [e["id"] for e in rendered]

    def test_rejected_delete_does_not_guard(self):
        store = ModelStore(BOOK)
        delete = op("delete", {"id": 2})
        store.add_operation(delete)
        store.add_operation(op("update", {"id": 2, "name": "X"}))
        store.reject(delete.operation_id)

        assert store.render() == [{"id": 2, "name": "X"}]

    def test_create_then_delete(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}])
        store.add_operation(op("create", {"id": 5}))
        store.add_operation(op("delete_instance", {"id": 5}))
        assert [e["id"] for e in store.render()] == [1]

    def test_update_or_create_resurrects_after_delete(self):
        """update_or_create has no delete-guard."""
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 2, "name": "A"}])
        store.add_operation(op("delete", {"id": 2}))
        store.add_operation(
            op(
                "update_or_create",
                {"id": 2},
                args={"lookup": {"name": "B"}, "defaults": {"v": 222}},
            )
        )

        assert store.render() == [{"id": 2, "name": "B", "v": 222}]

    def test_update_or_create_without_lookup(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1}])
        store.add_operation(op("update_or_create", {"id": 1, "v": 2}, {"id": 3, "v": 3}))
        assert store.render() == [{"id": 1, "v": 2}, {"id": 3, "v": 3}]

    def test_update_or_create_lookup_match_merges_defaults(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "name": "A", "v": 1}])
        store.add_operation(
            op(
                "update_or_create",
                {"id": "tmp"},
                args={"lookup": {"name": "A"}, "defaults": {"v": 5}},
            )
        )
        assert store.render() == [{"id": 1, "name": "A", "v": 5}]

    def test_get_or_create_lookup_match_is_noop(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "name": "A"}])
        store.add_operation(
            op("get_or_create", {"id": "tmp"}, args={"lookup": {"name": "A"}, "defaults": {"v": 1}})
        )
        assert store.render() == [{"id": 1, "name": "A"}]

    def test_get_or_create_lookup_miss_inserts(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "name": "A"}])
        store.add_operation(
            op(
                "get_or_create",
                {"id": "tmp"},
                args={"lookup": {"name": "B", "tags__in": ["x"]}, "defaults": {"v": 1}},
            )
        )
        assert store.render() == [{"id": 1, "name": "A"}, {"id": "tmp", "name": "B", "v": 1}]

    def test_render_restricted_to_pks(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}, {"id": 2}, {"id": 3}])
        store.add_operation(op("update", {"id": 2, "v": 1}, {"id": 3, "v": 1}))
        store.add_operation(op("create", {"id": 4}))

        assert store.render([2]) == [{"id": 2, "v": 1}]
        assert store.render({1, 4}) == [{"id": 1}, {"id": 4}]
        assert store.render(3) == [{"id": 3, "v": 1}]

    def test_unknown_operation_type_is_skipped(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}])
        store.add_operation(op("archive", {"id": 1}))
        with self.assertLogs("modelsync", level="WARNING"):
            assert store.render() == [{"id": 1}]

    def test_operation_without_valid_instances_is_skipped(self):
        store = ModelStore(BOOK)
        store.add_operation(op("create", {"name": "no pk"}))
        store.add_operation(op("create"))
        with self.assertLogs("modelsync", level="WARNING"):
            assert store.render() == []

    def test_stale_operations_do_not_render(self):
        store = ModelStore(BOOK)
        store.add_operation(op("create", {"id": 1}, timestamp=NOW - 180_000))
        assert store.render() == []

    def test_render_is_pure(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1}])
        store.add_operation(op("update", {"id": 1, "v": 2}))
        store.add_operation(op("create", {"id": 2}))
        assert store.render() == store.render()
        assert store.get_ground_truth() == [{"id": 1, "v": 1}]


class TestOperationLog(ModelStoreTestCase):
    def test_confirm_and_reject_unknown_ids_warn(self):
        store = ModelStore(BOOK)
        with self.assertLogs("modelsync", level="WARNING"):
            store.confirm("op_missing", [{"id": 1}])
        with self.assertLogs("modelsync", level="WARNING"):
            store.reject("op_missing")
        assert store.operations == []

    def test_confirm_keeps_position(self):
        store = ModelStore(BOOK)
        first, second = op("create", {"id": 1}), op("create", {"id": 2})
        store.add_operation(first)
        store.add_operation(second)
        store.confirm(first.operation_id)

        assert [o.operation_id for o in store.operations] == [
            first.operation_id,
            second.operation_id,
        ]
        assert store.operations[0].status == OperationStatus.CONFIRMED

    def test_update_operation(self):
        store = ModelStore(BOOK)
        original = op("create", {"id": 1, "v": 1})
        store.add_operation(original)

        replacement = original.model_copy(update={"instances": [{"id": 1, "v": 2}]})
        assert store.update_operation(replacement)
        assert store.render() == [{"id": 1, "v": 2}]
        assert not store.update_operation(op("create", {"id": 9}))

    def test_set_operations_coerces_dicts_and_skips_invalid(self):
        store = ModelStore(BOOK)
        with self.assertLogs("modelsync", level="WARNING"):
            store.set_operations(
                [{"type": "create", "instances": [{"id": 1}]}, {"instances": [{"id": 2}]}]
            )
        assert len(store.operations) == 1
        assert store.render() == [{"id": 1}]

    def test_set_operations_non_list(self):
        store = ModelStore(BOOK, initial_operations=[op("create", {"id": 1})])
        with self.assertLogs("modelsync", level="WARNING"):
            store.set_operations("junk")
        assert store.operations == []

    def test_trimmed_operations(self):
        store = ModelStore(BOOK)
        recent = op("create", {"id": 1}, timestamp=NOW - 60_000)
        old = op("create", {"id": 2}, timestamp=NOW - 180_000)
        store.set_operations([recent, old])
        assert store.get_trimmed_operations() == [recent]

    def test_configurable_ttl(self):
        store = ModelStore(BOOK)
        store.add_operation(op("create", {"id": 1}, timestamp=NOW - 60_000))
        app_config.configure(operation_ttl_ms=30_000)
        assert store.render() == []
        assert store.get_trimmed_operations() == []

    def test_destroy(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1}])
        store.add_operation(op("create", {"id": 2}))
        store.subscribe(lambda event, rendered: None)
        store.destroy()
        assert store.render() == []
        assert store.subscriber_count == 0


class TestModelStoreSync(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.now = NOW
        app_config.configure(clock=lambda: self.now)

    def tearDown(self):
        app_config.reset()

    async def test_sync_trims_old_operations(self):
        ground_truth = [{"id": 1, "v": 1}]
        fetch = AsyncMock(return_value=ground_truth)
        store = ModelStore(BOOK, fetch_fn=fetch, initial_ground_truth=ground_truth)
        recent = op("update", {"id": 1, "v": 2}, timestamp=NOW - 60_000)
        old = op("update", {"id": 1, "v": 3}, timestamp=NOW - 180_000)
        store.add_operation(recent)
        store.add_operation(old)

        await store.sync()

        assert store.operations == [recent]
        fetch.assert_awaited_once_with(pks=[1], model_class=BOOK)

    async def test_sync_replaces_ground_truth(self):
        fetch = AsyncMock(return_value=[{"id": 1, "v": 10}, {"id": 2, "v": 20}])
        store = ModelStore(BOOK, fetch_fn=fetch, initial_ground_truth=[{"id": 1, "v": 1}])
        await store.sync()
        assert store.get_ground_truth() == [{"id": 1, "v": 10}, {"id": 2, "v": 20}]
        assert store.last_sync_error is None

    async def test_sync_failure_leaves_state(self):
        error = NetworkError("The backend could not be reached.")
        fetch = AsyncMock(side_effect=error)
        store = ModelStore(BOOK, fetch_fn=fetch, initial_ground_truth=[{"id": 1}])
        old = op("create", {"id": 2}, timestamp=NOW - 180_000)
        store.add_operation(old)

        with self.assertLogs("modelsync", level="ERROR") as logs:
            await store.sync()

        assert store.get_ground_truth() == [{"id": 1}]
        assert store.operations == [old]
        assert store.last_sync_error is error
        assert not store.is_syncing
        assert "'status': 503" in logs.output[0]

    async def test_validation_error_detail_is_logged(self):
        error = ValidationError({"pks": ["Invalid primary key."]})
        store = ModelStore(BOOK, fetch_fn=AsyncMock(side_effect=error), initial_ground_truth=[{"id": 1}])

        with self.assertLogs("modelsync", level="ERROR") as logs:
            await store.sync()

        assert store.last_sync_error is error
        assert store.last_sync_error.detail["pks"][0].code == "validation_error"
        assert "Invalid primary key." in logs.output[0]
        assert store.render() == [{"id": 1}]

    async def test_sync_with_empty_ground_truth_only_trims(self):
        fetch = AsyncMock()
        store = ModelStore(BOOK, fetch_fn=fetch)
        store.add_operation(op("create", {"id": 2}, timestamp=NOW - 180_000))
        await store.sync()
        fetch.assert_not_awaited()
        assert store.operations == []

    async def test_fetch_returning_empty_list_empties_ground_truth(self):
        store = ModelStore(BOOK, fetch_fn=AsyncMock(return_value=[]), initial_ground_truth=[{"id": 1}])
        await store.sync()
        assert store.render() == []

    async def test_concurrent_sync_is_ignored(self):
        store = ModelStore(BOOK, fetch_fn=AsyncMock(), initial_ground_truth=[{"id": 1}])
        store.is_syncing = True
        with self.assertLogs("modelsync", level="WARNING"):
            await store.sync()
        store.fetch_fn.assert_not_awaited()


entity_ids = st.integers(min_value=1, max_value=6)
operations = st.lists(
    st.tuples(
        st.sampled_from(
            ["create", "update", "delete", "update_instance", "delete_instance", "update_or_create"]
        ),
        entity_ids,
        st.integers(min_value=0, max_value=9),
        st.booleans(),
    ),
    max_size=12,
)


class TestRenderProperties(ModelStoreTestCase):
    @hypothesis_settings(max_examples=50)
    @given(st.lists(entity_ids, unique=True, max_size=6), operations)
    def test_rejected_operations_have_no_effect(self, gt_ids, steps):
        """Rendering with a rejected operation equals rendering without it."""
        ground_truth = [{"id": i, "v": 0} for i in gt_ids]
        with_rejected = ModelStore(BOOK, initial_ground_truth=ground_truth)
        without = ModelStore(BOOK, initial_ground_truth=ground_truth)

        for type_, pk, value, rejected in steps:
            operation = op(type_, {"id": pk, "v": value})
            with_rejected.add_operation(operation)
            if rejected:
                with_rejected.reject(operation.operation_id)
            else:
                without.add_operation(operation.model_copy())

        assert with_rejected.render() == without.render()
        assert with_rejected.render() == with_rejected.render()


class TestNewEntityFromLookup(unittest.TestCase):
    def test_defaults_override_lookup_and_pk_wins(self):
        entity = new_entity_from_lookup(
            {"name": "B", "v": 1, "status__in": ["a"]}, {"v": 2, "id": 99}, "id", 5
        )
        assert entity == {"name": "B", "v": 2, "id": 5}


class TestRenderedEntitiesAreCopies(ModelStoreTestCase):
    def test_mutating_render_output_leaves_state(self):
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1}])
        store.add_operation(op("create", {"id": 2, "v": 2}))

        for entity in store.render():
            entity["v"] = 99
        store.render_map([1])[1]["v"] = 99

        assert store.get_ground_truth() == [{"id": 1, "v": 1}]
        assert store.operations[0].instances == [{"id": 2, "v": 2}]
        assert store.render() == [{"id": 1, "v": 1}, {"id": 2, "v": 2}]


class TestHydrate(ModelStoreTestCase):
    def test_base_store_is_abstract(self):
        with self.assertRaises(TypeError):
            BaseStore(BOOK)

    def test_persisted_state_goes_under_current_state(self):
        persisted_op = op("create", {"id": 3, "v": 3})
        current_op = op("update", {"id": 1, "v": 10})
        store = ModelStore(BOOK, initial_ground_truth=[{"id": 1, "v": 1, "fresh": True}])
        store.add_operation(current_op)
        events = []
        store.subscribe(lambda event, rendered: events.append(event))

        store.hydrate(
            [{"id": 1, "v": 0, "old": True}, {"id": 2, "v": 2}],
            [persisted_op.to_dict(), current_op.to_dict()],
        )

        assert store.get_ground_truth() == [
            {"id": 1, "v": 1, "old": True, "fresh": True},
            {"id": 2, "v": 2},
        ]
        assert [o.operation_id for o in store.operations] == [
            persisted_op.operation_id,
            current_op.operation_id,
        ]
        assert store.render() == [
            {"id": 1, "v": 10, "old": True, "fresh": True},
            {"id": 2, "v": 2},
            {"id": 3, "v": 3},
        ]
        assert events == [StoreEvent.HYDRATED]


if __name__ == "__main__":
    unittest.main()
