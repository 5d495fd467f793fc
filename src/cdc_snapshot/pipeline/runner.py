"""Snapshot orchestrator — plan → assign → read → hand off to streaming."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from cdc_snapshot.assigner.assigner import SnapshotCompletion, SnapshotSplitAssigner
from cdc_snapshot.assigner.checkpoint import FileCheckpointStore
from cdc_snapshot.assigner.coordinator import SplitCoordinator
from cdc_snapshot.assigner.planner import PlanResult, SnapshotPlanner
from cdc_snapshot.config.models import SnapshotConfig
from cdc_snapshot.errors import SnapshotError
from cdc_snapshot.reader import SnapshotReader, SplitReadFn
from cdc_snapshot.sources.base import SourceCatalog
from cdc_snapshot.sources.factory import create_catalog
from cdc_snapshot.splits.models import SnapshotSplit

logger = structlog.get_logger()

StreamingHandoff = Callable[[SnapshotCompletion], None]


async def _noop_read(split: SnapshotSplit) -> Any:
    logger.debug("runner.read_split", split=split.split_id)
    return None


class SnapshotRunner:
    """Runs one snapshot end to end.

    1. plan every configured collection concurrently
    2. build (or restore from checkpoint) the assigner
    3. serve splits to ``num_readers`` in-process readers via the coordinator
    4. pass the completion signal to the streaming-phase hand-off
    """

    def __init__(
        self,
        config: SnapshotConfig,
        *,
        catalog: SourceCatalog | None = None,
        read_split: SplitReadFn | None = None,
        on_complete: StreamingHandoff | None = None,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._read_split = read_split or _noop_read
        self._on_complete = on_complete
        self._plan: PlanResult | None = None
        self._assigner: SnapshotSplitAssigner | None = None
        self._readers: list[SnapshotReader] = []

    @property
    def plan_result(self) -> PlanResult | None:
        return self._plan

    @property
    def assigner(self) -> SnapshotSplitAssigner | None:
        return self._assigner

    def start(self) -> SnapshotCompletion:
        """Run the snapshot (blocking)."""
        return asyncio.run(self.run())

    async def plan(self, catalog: SourceCatalog) -> PlanResult:
        planner = SnapshotPlanner(
            catalog,
            self._config.splitter,
            self._config.retry,
            source_type=self._config.source.source_type,
        )
        self._plan = await planner.plan_all(self._config.collections)
        return self._plan

    def build_assigner(
        self,
        plan: PlanResult,
        store: FileCheckpointStore | None = None,
    ) -> SnapshotSplitAssigner:
        lease_timeout = self._config.assigner.lease_timeout_seconds
        failures = {cid: str(exc) for cid, exc in plan.failures.items()}
        checkpoint = store.load() if store is not None else None
        if checkpoint is not None:
            assigner = SnapshotSplitAssigner.restore(
                checkpoint, plan.splits, lease_timeout, failures=failures
            )
        else:
            assigner = SnapshotSplitAssigner(lease_timeout)
            for cid, splits in plan.splits.items():
                assigner.add_splits(cid, splits)
            for cid, reason in failures.items():
                assigner.mark_failed(cid, reason)

        if self._on_complete is not None:
            assigner.on_complete(self._on_complete)
        assigner.finish_planning()
        if store is not None:
            store.save(assigner.checkpoint())
        self._assigner = assigner
        return assigner

    async def run(self) -> SnapshotCompletion:
        cfg = self._config
        catalog = self._catalog or create_catalog(cfg.source)
        try:
            plan = await self.plan(catalog)
        finally:
            await catalog.close()

        store = (
            FileCheckpointStore(cfg.assigner.checkpoint_path)
            if cfg.assigner.checkpoint_path
            else None
        )
        assigner = self.build_assigner(plan, store)

        coordinator = SplitCoordinator(
            assigner,
            reclaim_interval=cfg.assigner.reclaim_interval_seconds,
            checkpoint_store=store,
        )
        self._readers = [
            SnapshotReader(
                f"{cfg.snapshot_id}-reader-{i}",
                coordinator,
                self._read_split,
                idle_interval=cfg.assigner.idle_interval_seconds,
            )
            for i in range(cfg.assigner.num_readers)
        ]

        logger.info(
            "runner.started",
            snapshot_id=cfg.snapshot_id,
            collections=sorted(plan.splits),
            failed=sorted(plan.failures),
            readers=len(self._readers),
        )

        async with coordinator:
            reader_tasks = [asyncio.create_task(r.run()) for r in self._readers]
            done_task = asyncio.create_task(coordinator.wait_done())
            waiting: set[asyncio.Task[Any]] = {done_task, *reader_tasks}
            while not done_task.done():
                _, waiting = await asyncio.wait(
                    waiting, return_when=asyncio.FIRST_COMPLETED
                )
                if not done_task.done() and all(t.done() for t in reader_tasks):
                    break

            if not done_task.done():
                done_task.cancel()
                errors = [t.exception() for t in reader_tasks if t.exception()]
                msg = f"All readers stopped before the snapshot completed: {errors}"
                raise SnapshotError(msg)

            completion = done_task.result()
            await asyncio.gather(*reader_tasks, return_exceptions=True)

        logger.info(
            "runner.finished",
            snapshot_id=cfg.snapshot_id,
            collections=sorted(completion.watermarks),
            failed=sorted(completion.failed),
        )
        return completion

    def stop(self) -> None:
        for reader in self._readers:
            reader.stop()
