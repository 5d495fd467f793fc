"""Unit tests for the snapshot planner."""

from __future__ import annotations

from typing import Any

import pytest

from cdc_snapshot.config.models import (
    CollectionConfig,
    RetryConfig,
    SourceType,
    SplitterConfig,
)
from cdc_snapshot.errors import InvariantViolation, PlanningFailure, TransientSourceError
from cdc_snapshot.assigner.planner import SnapshotPlanner
from cdc_snapshot.sources.static import StaticCatalog
from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, KeyField
from cdc_snapshot.splits.models import ShardRange

FAST_RETRY = RetryConfig(
    max_attempts=3,
    initial_wait_seconds=0.001,
    max_wait_seconds=0.002,
    jitter=False,
)
SPLITTER = SplitterConfig(chunk_size=250, samples_per_chunk=250)


class FlakyCatalog(StaticCatalog):
    """Static catalog whose chosen operation fails a number of times."""

    def __init__(
        self,
        base: StaticCatalog,
        *,
        operation: str,
        failures: int,
        error: type[Exception] = TransientSourceError,
        only: str | None = None,
    ) -> None:
        super().__init__(list(base._collections.values()), seed=base._seed)
        self.operation = operation
        self.remaining = failures
        self.error = error
        self.only = only
        self.calls: dict[str, int] = {}

    def _maybe_fail(self, operation: str, collection_id: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if operation != self.operation or self.remaining <= 0:
            return
        if self.only is not None and collection_id != self.only:
            return
        self.remaining -= 1
        raise self.error(f"{operation} unavailable")

    async def estimate_count(self, collection_id: str) -> int | None:
        self._maybe_fail("estimate_count", collection_id)
        return await super().estimate_count(collection_id)

    async def sample_keys(self, collection_id: str, key_schema, size: int) -> list[Any]:
        self._maybe_fail("sample_keys", collection_id)
        return await super().sample_keys(collection_id, key_schema, size)

    async def shard_ranges(self, collection_id: str, key_schema) -> list[ShardRange]:
        self._maybe_fail("shard_ranges", collection_id)
        return await super().shard_ranges(collection_id, key_schema)

    async def fetch_schema(self, collection_id: str):
        self._maybe_fail("fetch_schema", collection_id)
        return await super().fetch_schema(collection_id)


def _planner(catalog, **kwargs) -> SnapshotPlanner:
    return SnapshotPlanner(catalog, SPLITTER, FAST_RETRY, **kwargs)


class TestPlan:
    @pytest.mark.asyncio
    async def test_orders_scenario(self, catalog):
        splits = await _planner(catalog).plan(CollectionConfig(name="shop.orders"))
        assert [(s.lower_bound, s.upper_bound) for s in splits] == [
            (MIN_KEY, 250),
            (250, 500),
            (500, 750),
            (750, MAX_KEY),
        ]
        assert splits[0].key_schema == (KeyField("id", "int"),)

    @pytest.mark.asyncio
    async def test_all_splits_share_one_schema_snapshot(self, catalog):
        flaky = FlakyCatalog(catalog, operation="none", failures=0)
        splits = await _planner(flaky).plan(CollectionConfig(name="shop.orders"))
        assert flaky.calls["fetch_schema"] == 1
        assert all(s.schema_snapshot is splits[0].schema_snapshot for s in splits)
        assert "shop.orders" in splits[0].schema_snapshot

    @pytest.mark.asyncio
    async def test_single_strategy_fetches_no_statistics(self, catalog):
        flaky = FlakyCatalog(catalog, operation="none", failures=0)
        splits = await _planner(flaky).plan(
            CollectionConfig(name="shop.orders", strategy="single")
        )
        assert len(splits) == 1
        assert "estimate_count" not in flaky.calls
        assert "sample_keys" not in flaky.calls

    @pytest.mark.asyncio
    async def test_small_collection_skips_sampling(self, catalog):
        flaky = FlakyCatalog(catalog, operation="none", failures=0)
        splits = await _planner(flaky).plan(CollectionConfig(name="shop.customers"))
        assert len(splits) == 1
        assert flaky.calls["estimate_count"] == 1
        assert "sample_keys" not in flaky.calls

    @pytest.mark.asyncio
    async def test_shard_range_strategy(self, catalog):
        splits = await _planner(catalog).plan(
            CollectionConfig(name="shop.events", strategy="shard_range")
        )
        assert [s.upper_bound for s in splits] == ["emea", "us", MAX_KEY]

    @pytest.mark.asyncio
    async def test_strategy_by_source_type(self, catalog):
        splitter = SplitterConfig(strategy_by_source={"postgres": "single"}, chunk_size=250)
        planner = SnapshotPlanner(
            catalog, splitter, FAST_RETRY, source_type=SourceType.POSTGRES
        )
        splits = await planner.plan(CollectionConfig(name="shop.orders"))
        assert len(splits) == 1

    @pytest.mark.asyncio
    async def test_collection_chunk_override(self, catalog):
        splits = await _planner(catalog).plan(
            CollectionConfig(name="shop.orders", chunk_count=2)
        )
        assert len(splits) == 2

    @pytest.mark.asyncio
    async def test_planning_is_deterministic(self, catalog):
        planner = SnapshotPlanner(catalog, SplitterConfig(chunk_size=100), FAST_RETRY)
        first = await planner.plan(CollectionConfig(name="shop.orders"))
        second = await planner.plan(CollectionConfig(name="shop.orders"))
        assert first == second


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, catalog):
        flaky = FlakyCatalog(catalog, operation="sample_keys", failures=2)
        splits = await _planner(flaky).plan(CollectionConfig(name="shop.orders"))
        assert len(splits) == 4
        assert flaky.calls["sample_keys"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_planning_failure(self, catalog):
        flaky = FlakyCatalog(catalog, operation="fetch_schema", failures=10)
        with pytest.raises(PlanningFailure, match="capture_schema failed after 3") as info:
            await _planner(flaky).plan(CollectionConfig(name="shop.orders"))
        assert info.value.collection_id == "shop.orders"
        assert flaky.calls["fetch_schema"] == 3

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self, catalog):
        flaky = FlakyCatalog(
            catalog, operation="estimate_count", failures=10, error=RuntimeError
        )
        with pytest.raises(PlanningFailure, match="estimate_count unavailable"):
            await _planner(flaky).plan(CollectionConfig(name="shop.orders"))
        assert flaky.calls["estimate_count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_collection_is_a_planning_failure(self, catalog):
        with pytest.raises(PlanningFailure):
            await _planner(catalog).plan(CollectionConfig(name="shop.missing"))

    @pytest.mark.asyncio
    async def test_invalid_shard_metadata_rejected(self):
        catalog = StaticCatalog.from_dict(
            {
                "collections": {
                    "shop.gappy": {
                        "keys": [1, 2, 3],
                        "shards": [
                            {"lower": "$min", "upper": 10},
                            {"lower": 20, "upper": "$max"},
                        ],
                    }
                }
            }
        )
        with pytest.raises(InvariantViolation):
            await _planner(catalog).plan(
                CollectionConfig(name="shop.gappy", strategy="shard_range")
            )


class TestPlanAll:
    @pytest.mark.asyncio
    async def test_failure_is_isolated_to_one_collection(self, catalog):
        flaky = FlakyCatalog(
            catalog, operation="fetch_schema", failures=100, only="shop.customers"
        )
        result = await _planner(flaky).plan_all(
            [
                CollectionConfig(name="shop.orders"),
                CollectionConfig(name="shop.customers"),
                CollectionConfig(name="shop.events", strategy="shard_range"),
            ]
        )
        assert not result.ok
        assert sorted(result.splits) == ["shop.events", "shop.orders"]
        assert isinstance(result.failures["shop.customers"], PlanningFailure)

    @pytest.mark.asyncio
    async def test_all_planned(self, catalog):
        result = await _planner(catalog).plan_all(
            [CollectionConfig(name="shop.orders"), CollectionConfig(name="shop.customers")]
        )
        assert result.ok
        assert len(result.splits["shop.orders"]) == 4
        assert len(result.splits["shop.customers"]) == 1
