"""Split strategies — pure functions from a SplitContext to ordered splits.

The variant is a closed enum (:class:`SplitStrategyKind`) chosen once per
collection at planning time; :func:`create_strategy` maps it to the function.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from cdc_snapshot.config.models import SplitStrategyKind
from cdc_snapshot.errors import InvariantViolation
from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, key_lt
from cdc_snapshot.splits.models import SnapshotSplit, SplitContext, split_id

logger = structlog.get_logger()

SplitStrategy = Callable[[SplitContext], list[SnapshotSplit]]


def desired_chunk_count(
    estimated_count: int | None,
    chunk_size: int,
    chunk_count: int | None = None,
) -> int:
    """Number of chunks to aim for; an explicit *chunk_count* wins."""
    if chunk_count is not None:
        return max(1, chunk_count)
    if not estimated_count or estimated_count <= 0:
        return 1
    return max(1, math.ceil(estimated_count / chunk_size))


def sample_size(desired: int, samples_per_chunk: int, max_sample_size: int) -> int:
    """Bounded sample size proportional to the desired chunk count."""
    return max(1, min(desired * samples_per_chunk, max_sample_size))


def _build_splits(ctx: SplitContext, bounds: Sequence[Any]) -> list[SnapshotSplit]:
    """Turn ``[MIN_KEY, b1, ..., bn, MAX_KEY]`` into contiguous splits."""
    return [
        SnapshotSplit(
            collection_id=ctx.collection_id,
            split_id=split_id(ctx.collection_id, i),
            key_schema=ctx.key_schema,
            lower_bound=lower,
            upper_bound=upper,
            split_order=i,
            schema_snapshot=ctx.schema,
        )
        for i, (lower, upper) in enumerate(zip(bounds, bounds[1:], strict=False))
    ]


def single_split(ctx: SplitContext) -> list[SnapshotSplit]:
    """Split the collection as a single chunk covering the whole domain."""
    return _build_splits(ctx, [MIN_KEY, MAX_KEY])


def sampled_range_split(ctx: SplitContext) -> list[SnapshotSplit]:
    """Pick chunk boundaries at evenly spaced positions of a sorted key sample.

    Identical adjacent boundaries are collapsed, so a low-cardinality key
    yields fewer chunks than requested (down to a single one).
    """
    stats = ctx.stats
    desired = desired_chunk_count(stats.estimated_count, ctx.chunk_size, ctx.chunk_count)
    if desired <= 1 or not stats.sample_keys:
        logger.debug(
            "strategy.sampled_range_fallback",
            collection=ctx.collection_id,
            desired=desired,
            sampled=len(stats.sample_keys or ()),
        )
        return single_split(ctx)

    sample = sorted(stats.sample_keys)
    n = len(sample)
    boundaries: list[Any] = []
    for i in range(1, desired):
        pos = (i * n) // desired - 1
        if pos < 0:
            continue
        candidate = sample[pos]
        if boundaries and not key_lt(boundaries[-1], candidate):
            continue
        boundaries.append(candidate)

    return _build_splits(ctx, [MIN_KEY, *boundaries, MAX_KEY])


def shard_range_split(ctx: SplitContext) -> list[SnapshotSplit]:
    """Map the source's own partition ranges one-to-one onto splits.

    The outermost bounds are widened to the open-ended sentinels so keys
    outside the recorded partitions are still covered.
    """
    ranges = ctx.stats.shard_ranges
    if not ranges:
        logger.info("strategy.shard_range_unpartitioned", collection=ctx.collection_id)
        return single_split(ctx)

    ordered = sorted(ranges, key=lambda r: r.lower)
    for prev, nxt in zip(ordered, ordered[1:], strict=False):
        if prev.upper != nxt.lower:
            raise InvariantViolation(
                ctx.collection_id,
                f"shard ranges are not contiguous: {prev.upper!r} != {nxt.lower!r}",
            )
    bounds = [MIN_KEY, *(r.lower for r in ordered[1:]), MAX_KEY]
    return _build_splits(ctx, bounds)


_STRATEGY_REGISTRY: dict[SplitStrategyKind, SplitStrategy] = {
    SplitStrategyKind.SINGLE: single_split,
    SplitStrategyKind.SAMPLED_RANGE: sampled_range_split,
    SplitStrategyKind.SHARD_RANGE: shard_range_split,
}


def create_strategy(kind: SplitStrategyKind | str) -> SplitStrategy:
    """Look up the strategy function for a configured kind."""
    try:
        return _STRATEGY_REGISTRY[SplitStrategyKind(kind)]
    except (KeyError, ValueError):
        msg = f"Unknown split strategy: {kind}"
        raise ValueError(msg) from None


def validate_tiling(collection_id: str, splits: Sequence[SnapshotSplit]) -> None:
    """Reject a split set that does not tile the key domain exactly once."""
    if not splits:
        raise InvariantViolation(collection_id, "no splits produced")

    ordered = sorted(splits, key=lambda s: s.split_order or 0)
    seen: set[str] = set()
    for i, split in enumerate(ordered):
        if split.collection_id != collection_id:
            raise InvariantViolation(
                collection_id,
                f"split {split.split_id} belongs to {split.collection_id}",
            )
        if split.split_id in seen:
            raise InvariantViolation(collection_id, f"duplicate id {split.split_id}")
        seen.add(split.split_id)
        if (split.split_order or 0) != i:
            raise InvariantViolation(
                collection_id,
                f"split order {split.split_order} at position {i}",
            )
        try:
            if not key_lt(split.lower_bound, split.upper_bound):
                raise InvariantViolation(
                    collection_id,
                    f"empty or inverted range in {split.split_id}: "
                    f"[{split.lower_bound!r}, {split.upper_bound!r})",
                )
        except TypeError as exc:
            raise InvariantViolation(
                collection_id, f"incomparable bounds in {split.split_id}: {exc}"
            ) from exc

    if ordered[0].lower_bound != MIN_KEY:
        raise InvariantViolation(collection_id, "first split is not open below")
    if ordered[-1].upper_bound != MAX_KEY:
        raise InvariantViolation(collection_id, "last split is not open above")
    for prev, nxt in zip(ordered, ordered[1:], strict=False):
        if prev.upper_bound != nxt.lower_bound:
            raise InvariantViolation(
                collection_id,
                f"gap or overlap between {prev.split_id} and {nxt.split_id}",
            )
