"""Snapshot reader loop — pulls one split at a time from the coordinator."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from cdc_snapshot.assigner.coordinator import CoordinatorStoppedError, SplitCoordinator
from cdc_snapshot.splits.models import SnapshotSplit

logger = structlog.get_logger()

# Performs the bounded read of one split and returns the last key position
# it consumed (or None to let the assigner use the split's upper bound).
SplitReadFn = Callable[[SnapshotSplit], Awaitable[Any]]


class SnapshotReader:
    """One parallel snapshot reader.

    The bulk read itself is delegated to *read_split*. If it raises, the
    reader hands its split back to the coordinator and stops; the split is
    picked up by another reader.
    """

    def __init__(
        self,
        reader_id: str,
        coordinator: SplitCoordinator,
        read_split: SplitReadFn,
        *,
        idle_interval: float = 1.0,
    ) -> None:
        self._reader_id = reader_id
        self._coordinator = coordinator
        self._read_split = read_split
        self._idle_interval = idle_interval
        self._running = False
        self.splits_read = 0

    @property
    def reader_id(self) -> str:
        return self._reader_id

    async def run(self) -> None:
        """Read splits until the snapshot is done or :meth:`stop` is called."""
        self._running = True
        logger.info("reader.started", reader=self._reader_id)
        try:
            while self._running:
                assignment = await self._coordinator.request_next(self._reader_id)
                if assignment.split is None:
                    if assignment.done:
                        break
                    await asyncio.sleep(self._idle_interval)
                    continue

                split = assignment.split
                try:
                    position = await self._read_split(split)
                except Exception:
                    logger.exception(
                        "reader.split_failed",
                        reader=self._reader_id,
                        split=split.split_id,
                    )
                    await self._coordinator.release_reader(self._reader_id)
                    raise
                await self._coordinator.report_finished(
                    self._reader_id, split.split_id, position
                )
                self.splits_read += 1
        except CoordinatorStoppedError:
            logger.info("reader.coordinator_stopped", reader=self._reader_id)
        finally:
            self._running = False
            logger.info(
                "reader.stopped",
                reader=self._reader_id,
                splits_read=self.splits_read,
            )

    def stop(self) -> None:
        self._running = False
