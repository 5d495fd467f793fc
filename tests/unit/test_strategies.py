"""Unit tests for split strategies and tiling validation."""

from __future__ import annotations

import random
from dataclasses import replace
from types import MappingProxyType

import pytest

from cdc_snapshot.config.models import SplitStrategyKind
from cdc_snapshot.errors import InvariantViolation
from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, KeyField
from cdc_snapshot.splits.models import (
    CollectionStats,
    ShardRange,
    SnapshotSplit,
    SplitContext,
)
from cdc_snapshot.splits.schema import CollectionSchema
from cdc_snapshot.splits.strategies import (
    create_strategy,
    desired_chunk_count,
    sample_size,
    sampled_range_split,
    shard_range_split,
    single_split,
    validate_tiling,
)

KEY = (KeyField("id", "int"),)
SCHEMA = MappingProxyType({"shop.orders": CollectionSchema("shop.orders")})


def _ctx(**kwargs) -> SplitContext:
    defaults = {
        "collection_id": "shop.orders",
        "key_schema": KEY,
        "schema": SCHEMA,
        "chunk_size": 250,
    }
    return SplitContext(**{**defaults, **kwargs})


def _bounds(splits: list[SnapshotSplit]) -> list[tuple[object, object]]:
    return [(s.lower_bound, s.upper_bound) for s in splits]


def assert_tiles(splits: list[SnapshotSplit]) -> None:
    ordered = sorted(splits, key=lambda s: s.split_order)
    assert ordered[0].lower_bound is MIN_KEY
    assert ordered[-1].upper_bound is MAX_KEY
    for prev, nxt in zip(ordered, ordered[1:]):
        assert prev.upper_bound == nxt.lower_bound
        assert prev.lower_bound < prev.upper_bound


class TestChunkMath:
    @pytest.mark.parametrize(
        ("estimate", "size", "count", "expected"),
        [
            (1000, 250, None, 4),
            (1001, 250, None, 5),
            (10, 250, None, 1),
            (0, 250, None, 1),
            (None, 250, None, 1),
            (1000, 250, 7, 7),
        ],
    )
    def test_desired_chunk_count(self, estimate, size, count, expected):
        assert desired_chunk_count(estimate, size, count) == expected

    def test_sample_size_is_bounded(self):
        assert sample_size(4, 20, 100_000) == 80
        assert sample_size(10_000, 20, 1000) == 1000


class TestSingleSplit:
    def test_one_split_over_whole_domain(self):
        [split] = single_split(_ctx())
        assert split.lower_bound is MIN_KEY
        assert split.upper_bound is MAX_KEY
        assert split.split_order == 0
        assert split.split_id == "shop.orders:0"
        assert split.schema_snapshot["shop.orders"].collection_id == "shop.orders"

    def test_deterministic(self):
        assert single_split(_ctx()) == single_split(_ctx())


class TestSampledRangeSplit:
    def test_uniform_sample_gives_even_chunks(self):
        keys = list(range(1, 1001))
        random.Random(3).shuffle(keys)
        stats = CollectionStats(estimated_count=1000, sample_keys=tuple(keys))

        splits = sampled_range_split(_ctx(stats=stats))

        assert _bounds(splits) == [
            (MIN_KEY, 250),
            (250, 500),
            (500, 750),
            (750, MAX_KEY),
        ]
        assert [s.split_id for s in splits] == [f"shop.orders:{i}" for i in range(4)]
        assert_tiles(splits)

    def test_low_cardinality_collapses_duplicates(self):
        stats = CollectionStats(estimated_count=1000, sample_keys=(7,) * 200)
        splits = sampled_range_split(_ctx(stats=stats))
        assert _bounds(splits) == [(MIN_KEY, 7), (7, MAX_KEY)]
        assert_tiles(splits)

    def test_two_values_give_at_most_three_chunks(self):
        sample = tuple([1] * 50 + [2] * 50)
        stats = CollectionStats(estimated_count=10_000, sample_keys=sample)
        splits = sampled_range_split(_ctx(stats=stats))
        assert len(splits) <= 3
        assert_tiles(splits)

    def test_small_collection_falls_back_to_single(self):
        stats = CollectionStats(estimated_count=100, sample_keys=(1, 2, 3))
        assert _bounds(sampled_range_split(_ctx(stats=stats))) == [(MIN_KEY, MAX_KEY)]

    def test_missing_statistics_fall_back_to_single(self):
        assert len(sampled_range_split(_ctx())) == 1

    def test_explicit_chunk_count_wins(self):
        stats = CollectionStats(estimated_count=10, sample_keys=tuple(range(100)))
        splits = sampled_range_split(_ctx(stats=stats, chunk_count=5))
        assert len(splits) == 5
        assert_tiles(splits)

    def test_compound_keys(self):
        sample = tuple((region, i) for region in ("apac", "emea", "us") for i in range(100))
        stats = CollectionStats(estimated_count=300, sample_keys=sample)
        ctx = _ctx(
            stats=stats,
            chunk_size=100,
            key_schema=(KeyField("region", "text"), KeyField("id", "int")),
        )
        splits = sampled_range_split(ctx)
        assert _bounds(splits) == [
            (MIN_KEY, ("apac", 99)),
            (("apac", 99), ("emea", 99)),
            (("emea", 99), MAX_KEY),
        ]

    @pytest.mark.parametrize("seed", range(5))
    def test_random_samples_always_tile(self, seed):
        rng = random.Random(seed)
        sample = tuple(rng.randint(0, 50) for _ in range(rng.randint(1, 400)))
        stats = CollectionStats(estimated_count=rng.randint(1, 5000), sample_keys=sample)
        splits = sampled_range_split(_ctx(stats=stats, chunk_size=rng.randint(1, 300)))
        assert_tiles(splits)
        validate_tiling("shop.orders", splits)

    def test_deterministic_for_same_context(self):
        stats = CollectionStats(estimated_count=1000, sample_keys=tuple(range(1000, 0, -1)))
        ctx = _ctx(stats=stats)
        assert sampled_range_split(ctx) == sampled_range_split(ctx)


class TestShardRangeSplit:
    def test_maps_each_shard_to_one_split(self):
        ranges = (
            ShardRange(lower="emea", upper="us", shard="p1"),
            ShardRange(lower=MIN_KEY, upper="emea", shard="p0"),
            ShardRange(lower="us", upper=MAX_KEY, shard="p2"),
        )
        splits = shard_range_split(_ctx(stats=CollectionStats(shard_ranges=ranges)))
        assert _bounds(splits) == [
            (MIN_KEY, "emea"),
            ("emea", "us"),
            ("us", MAX_KEY),
        ]

    def test_outer_bounds_widened_to_sentinels(self):
        ranges = (ShardRange(lower=0, upper=100), ShardRange(lower=100, upper=200))
        splits = shard_range_split(_ctx(stats=CollectionStats(shard_ranges=ranges)))
        assert _bounds(splits) == [(MIN_KEY, 100), (100, MAX_KEY)]

    def test_gap_between_shards_rejected(self):
        ranges = (ShardRange(lower=0, upper=100), ShardRange(lower=150, upper=200))
        with pytest.raises(InvariantViolation, match="not contiguous"):
            shard_range_split(_ctx(stats=CollectionStats(shard_ranges=ranges)))

    def test_unpartitioned_falls_back_to_single(self):
        splits = shard_range_split(_ctx(stats=CollectionStats(shard_ranges=())))
        assert _bounds(splits) == [(MIN_KEY, MAX_KEY)]


class TestCreateStrategy:
    def test_registry(self):
        assert create_strategy(SplitStrategyKind.SINGLE) is single_split
        assert create_strategy("sampled_range") is sampled_range_split
        assert create_strategy("shard_range") is shard_range_split

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown split strategy"):
            create_strategy("hash")


class TestValidateTiling:
    def _splits(self) -> list[SnapshotSplit]:
        stats = CollectionStats(estimated_count=1000, sample_keys=tuple(range(1, 1001)))
        return sampled_range_split(_ctx(stats=stats))

    def test_accepts_valid_tiling(self):
        validate_tiling("shop.orders", self._splits())

    def test_rejects_empty(self):
        with pytest.raises(InvariantViolation, match="no splits"):
            validate_tiling("shop.orders", [])

    def test_rejects_gap(self):
        splits = self._splits()
        splits[1] = replace(splits[1], upper_bound=499)
        with pytest.raises(InvariantViolation, match="gap or overlap"):
            validate_tiling("shop.orders", splits)

    def test_rejects_overlap(self):
        splits = self._splits()
        splits[2] = replace(splits[2], lower_bound=400)
        with pytest.raises(InvariantViolation):
            validate_tiling("shop.orders", splits)

    def test_rejects_closed_extremes(self):
        splits = self._splits()
        splits[0] = replace(splits[0], lower_bound=0)
        with pytest.raises(InvariantViolation, match="open below"):
            validate_tiling("shop.orders", splits)

    def test_rejects_inverted_range(self):
        splits = self._splits()
        splits[1] = replace(splits[1], lower_bound=600, upper_bound=500)
        with pytest.raises(InvariantViolation, match="inverted"):
            validate_tiling("shop.orders", splits)

    def test_rejects_duplicate_ids(self):
        splits = self._splits()
        splits[1] = replace(splits[1], split_id=splits[0].split_id)
        with pytest.raises(InvariantViolation, match="duplicate"):
            validate_tiling("shop.orders", splits)

    def test_rejects_incomparable_bounds(self):
        splits = single_split(_ctx())
        broken = [
            replace(splits[0], upper_bound="m"),
            replace(
                splits[0],
                split_id="shop.orders:1",
                split_order=1,
                lower_bound=5,
                upper_bound="z",
            ),
        ]
        with pytest.raises(InvariantViolation, match="incomparable"):
            validate_tiling("shop.orders", broken)
