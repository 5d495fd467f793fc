"""Snapshot planner — statistics → SplitContext → strategy → validated splits."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from cdc_snapshot.config.models import (
    CollectionConfig,
    RetryConfig,
    SourceType,
    SplitStrategyKind,
    SplitterConfig,
)
from cdc_snapshot.errors import PlanningFailure, SnapshotError, TransientSourceError
from cdc_snapshot.sources.base import SourceCatalog
from cdc_snapshot.splits.models import CollectionStats, SnapshotSplit, SplitContext
from cdc_snapshot.splits.schema import SchemaProvider, capture_schema
from cdc_snapshot.splits.strategies import (
    create_strategy,
    desired_chunk_count,
    sample_size,
    validate_tiling,
)

logger = structlog.get_logger()

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientSourceError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class PlanResult:
    """Outcome of planning a batch of collections."""

    splits: dict[str, list[SnapshotSplit]] = field(default_factory=dict)
    failures: dict[str, SnapshotError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class SnapshotPlanner:
    """Plans collections into splits against a source catalog.

    Each catalog call is retried with bounded exponential backoff on
    transient errors; anything else, or an exhausted retry budget, becomes a
    :class:`PlanningFailure` for that collection alone.
    """

    def __init__(
        self,
        catalog: SourceCatalog,
        splitter: SplitterConfig | None = None,
        retry: RetryConfig | None = None,
        *,
        source_type: SourceType = SourceType.STATIC,
        schema_provider: SchemaProvider | None = None,
    ) -> None:
        self._catalog = catalog
        self._splitter = splitter or SplitterConfig()
        self._retry = retry or RetryConfig()
        self._source_type = source_type
        self._schema_provider: SchemaProvider = schema_provider or catalog

    def _wait(self) -> Any:
        cfg = self._retry
        if cfg.jitter:
            return wait_exponential_jitter(
                initial=cfg.initial_wait_seconds,
                max=cfg.max_wait_seconds,
                exp_base=cfg.multiplier,
                jitter=cfg.initial_wait_seconds,
            )
        return wait_exponential(
            multiplier=cfg.initial_wait_seconds,
            max=cfg.max_wait_seconds,
            exp_base=cfg.multiplier,
        )

    async def _call(
        self,
        collection_id: str,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "planner.retrying",
                collection=collection_id,
                operation=operation,
                attempt=state.attempt_number,
                error=str(exc),
            )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                stop=stop_after_attempt(self._retry.max_attempts),
                wait=self._wait(),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await fn(*args)
        except TRANSIENT_ERRORS as exc:
            raise PlanningFailure(
                collection_id,
                f"{operation} failed after {self._retry.max_attempts} attempts: {exc}",
            ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def strategy_for(self, collection: CollectionConfig) -> SplitStrategyKind:
        return self._splitter.strategy_for(self._source_type, collection)

    async def _gather_stats(
        self,
        kind: SplitStrategyKind,
        collection_id: str,
        ctx: SplitContext,
    ) -> CollectionStats:
        """Fetch only the statistics *kind* needs."""
        if kind == SplitStrategyKind.SAMPLED_RANGE:
            estimate = await self._call(
                collection_id,
                "estimate_count",
                self._catalog.estimate_count,
                collection_id,
            )
            desired = desired_chunk_count(estimate, ctx.chunk_size, ctx.chunk_count)
            if desired <= 1:
                return CollectionStats(estimated_count=estimate)
            size = sample_size(
                desired,
                self._splitter.samples_per_chunk,
                self._splitter.max_sample_size,
            )
            sample = await self._call(
                collection_id,
                "sample_keys",
                self._catalog.sample_keys,
                collection_id,
                ctx.key_schema,
                size,
            )
            return CollectionStats(estimated_count=estimate, sample_keys=tuple(sample))

        if kind == SplitStrategyKind.SHARD_RANGE:
            ranges = await self._call(
                collection_id,
                "shard_ranges",
                self._catalog.shard_ranges,
                collection_id,
                ctx.key_schema,
            )
            return CollectionStats(shard_ranges=tuple(ranges))

        return CollectionStats()

    async def plan(self, collection: CollectionConfig) -> list[SnapshotSplit]:
        """Plan one collection.

        Raises:
            PlanningFailure: statistics/schema could not be fetched.
            InvariantViolation: the strategy produced a gapped or
                overlapping split set.
        """
        collection_id = collection.name
        kind = self.strategy_for(collection)
        try:
            schema = await self._call(
                collection_id,
                "capture_schema",
                capture_schema,
                self._schema_provider,
                collection_id,
            )
            key_schema = await self._call(
                collection_id,
                "key_schema",
                self._catalog.key_schema,
                collection_id,
            )
            ctx = SplitContext(
                collection_id=collection_id,
                key_schema=tuple(key_schema),
                schema=schema,
                chunk_size=collection.chunk_size or self._splitter.chunk_size,
                chunk_count=collection.chunk_count or self._splitter.chunk_count,
            )
            stats = await self._gather_stats(kind, collection_id, ctx)
            ctx = replace(ctx, stats=stats)
            splits = create_strategy(kind)(ctx)
            validate_tiling(collection_id, splits)
        except SnapshotError:
            raise
        except Exception as exc:
            raise PlanningFailure(collection_id, exc) from exc

        logger.info(
            "planner.collection_planned",
            collection=collection_id,
            strategy=kind.value,
            splits=len(splits),
        )
        return splits

    async def _plan_one(
        self, collection: CollectionConfig
    ) -> tuple[str, list[SnapshotSplit] | SnapshotError]:
        try:
            return collection.name, await self.plan(collection)
        except SnapshotError as exc:
            logger.error(
                "planner.collection_failed",
                collection=collection.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return collection.name, exc

    async def plan_all(self, collections: Sequence[CollectionConfig]) -> PlanResult:
        """Plan all collections concurrently; failures stay per collection."""
        outcomes = await asyncio.gather(*(self._plan_one(c) for c in collections))
        result = PlanResult()
        for name, outcome in outcomes:
            if isinstance(outcome, SnapshotError):
                result.failures[name] = outcome
            else:
                result.splits[name] = outcome
        return result
