"""Snapshot split assigner — PENDING → ASSIGNED → FINISHED for every split.

The assigner is a plain, synchronous state machine. It is not thread-safe;
:class:`~cdc_snapshot.assigner.coordinator.SplitCoordinator` funnels every
call through a single actor loop.
"""

from __future__ import annotations

import heapq
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from cdc_snapshot.assigner.checkpoint import (
    AssignerCheckpoint,
    AssignerPhase,
    LeaseState,
)
from cdc_snapshot.assigner.leases import Lease, LeaseTracker
from cdc_snapshot.errors import InvariantViolation
from cdc_snapshot.observability.progress import CollectionProgress, SnapshotProgress
from cdc_snapshot.splits.keys import decode_bound, encode_bound
from cdc_snapshot.splits.models import SnapshotSplit
from cdc_snapshot.splits.strategies import validate_tiling

logger = structlog.get_logger()

Clock = Callable[[], float]


class SplitState(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    FINISHED = "finished"


class UnknownSplitError(KeyError):
    """Raised when a reader reports a split id the assigner never planned."""


@dataclass(frozen=True, slots=True)
class CollectionWatermark:
    """Where the streaming phase resumes for one collection."""

    collection_id: str
    split_id: str
    position: Any


@dataclass(frozen=True)
class SnapshotCompletion:
    """One-time signal handed to the streaming phase."""

    watermarks: dict[str, CollectionWatermark] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


CompletionListener = Callable[[SnapshotCompletion], None]


class SnapshotSplitAssigner:
    """Owns the lifecycle of every split across all snapshotted collections.

    Splits are handed out in ``(collection_id, split_order)`` order. A lease
    older than ``lease_timeout`` seconds is reclaimed and its split goes back
    to the pending queue; a late completion report from the original reader
    is still accepted, and any further report for the same split is a no-op.
    """

    def __init__(
        self,
        lease_timeout: float = 300.0,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._lease_timeout = lease_timeout
        self._clock = clock
        self._phase = AssignerPhase.PLANNING
        self._splits: dict[str, SnapshotSplit] = {}
        self._states: dict[str, SplitState] = {}
        self._by_collection: dict[str, list[str]] = {}
        self._pending: list[tuple[str, int, str]] = []
        self._leases = LeaseTracker()
        self._positions: dict[str, Any] = {}
        self._failed: dict[str, str] = {}
        self._completion: SnapshotCompletion | None = None
        self._completion_emitted = False
        # emitted by a previous process; not replayed to new listeners
        self._emitted_before_restore = False
        self._listeners: list[CompletionListener] = []

    # -- Introspection ---------------------------------------------------------

    @property
    def phase(self) -> AssignerPhase:
        return self._phase

    @property
    def is_done(self) -> bool:
        return self._phase == AssignerPhase.SNAPSHOT_DONE

    @property
    def completion(self) -> SnapshotCompletion | None:
        return self._completion

    @property
    def failed(self) -> dict[str, str]:
        return dict(self._failed)

    @property
    def leases(self) -> LeaseTracker:
        return self._leases

    @property
    def pending_count(self) -> int:
        return sum(1 for s in self._states.values() if s == SplitState.PENDING)

    def state_of(self, split_id: str) -> SplitState:
        try:
            return self._states[split_id]
        except KeyError:
            raise UnknownSplitError(split_id) from None

    def splits_of(self, collection_id: str) -> list[SnapshotSplit]:
        return [self._splits[sid] for sid in self._by_collection.get(collection_id, [])]

    def progress(self) -> SnapshotProgress:
        collections: list[CollectionProgress] = []
        for cid in sorted({*self._by_collection, *self._failed}):
            states = [self._states[sid] for sid in self._by_collection.get(cid, [])]
            collections.append(
                CollectionProgress(
                    collection_id=cid,
                    total=len(states),
                    pending=states.count(SplitState.PENDING),
                    assigned=states.count(SplitState.ASSIGNED),
                    finished=states.count(SplitState.FINISHED),
                    failed=self._failed.get(cid),
                )
            )
        return SnapshotProgress(phase=self._phase.value, collections=collections)

    # -- Planning --------------------------------------------------------------

    def add_splits(self, collection_id: str, splits: Sequence[SnapshotSplit]) -> None:
        """Enqueue the planned splits of one collection.

        Raises:
            InvariantViolation: the splits don't tile the key domain.
            ValueError: the collection is already known or the snapshot is done.
        """
        if self._phase == AssignerPhase.SNAPSHOT_DONE:
            msg = f"Cannot add '{collection_id}': snapshot already complete"
            raise ValueError(msg)
        if collection_id in self._by_collection or collection_id in self._failed:
            msg = f"Collection '{collection_id}' was already added"
            raise ValueError(msg)
        self._load_collection(collection_id, splits)
        logger.info(
            "assigner.collection_added",
            collection=collection_id,
            splits=len(splits),
        )

    def mark_failed(self, collection_id: str, reason: str) -> None:
        """Record that a collection could not be planned.

        It contributes nothing to completion and is listed in the signal's
        ``failed`` map.
        """
        if collection_id in self._by_collection:
            msg = f"Collection '{collection_id}' is already planned"
            raise ValueError(msg)
        self._failed[collection_id] = reason
        logger.error("assigner.collection_failed", collection=collection_id, reason=reason)
        self._maybe_complete()

    def finish_planning(self) -> None:
        """No further collections will be added."""
        if self._phase == AssignerPhase.PLANNING:
            self._phase = AssignerPhase.ASSIGNING
            logger.info(
                "assigner.planning_finished",
                collections=len(self._by_collection),
                failed=len(self._failed),
                splits=len(self._splits),
            )
        self._maybe_complete()

    # -- Reader requests -------------------------------------------------------

    def request_next(self, reader_id: str, now: float | None = None) -> SnapshotSplit | None:
        """Hand the next pending split to *reader_id*, or None if drained."""
        now = self._clock() if now is None else now
        while self._pending:
            _, _, sid = heapq.heappop(self._pending)
            if self._states[sid] != SplitState.PENDING:
                # stale entry: finished by a reclaimed reader meanwhile
                continue
            split = self._splits[sid]
            self._leases.acquire(reader_id, sid, split.collection_id, now)
            self._states[sid] = SplitState.ASSIGNED
            logger.debug("assigner.split_assigned", reader=reader_id, split=sid)
            return split
        return None

    def report_finished(
        self,
        reader_id: str,
        split_id: str,
        position: Any = None,
    ) -> bool:
        """Mark *split_id* finished. Returns False for a duplicate report.

        *position* is the last key position the reader consumed; it defaults
        to the split's upper bound.
        """
        state = self.state_of(split_id)
        if state == SplitState.FINISHED:
            logger.info(
                "assigner.duplicate_completion",
                reader=reader_id,
                split=split_id,
            )
            return False

        lease = self._leases.release(split_id)
        if lease is None or lease.reader_id != reader_id:
            logger.info(
                "assigner.finished_by_non_holder",
                reader=reader_id,
                split=split_id,
                holder=lease.reader_id if lease else None,
            )
        self._states[split_id] = SplitState.FINISHED
        self._positions[split_id] = (
            position if position is not None else self._splits[split_id].upper_bound
        )
        logger.debug("assigner.split_finished", reader=reader_id, split=split_id)
        self._maybe_complete()
        return True

    def release_reader(self, reader_id: str) -> list[SnapshotSplit]:
        """Return every split held by a departing reader to the pending queue."""
        released = [self._requeue(lease) for lease in self._leases.held_by(reader_id)]
        if released:
            logger.info(
                "assigner.reader_released",
                reader=reader_id,
                splits=[s.split_id for s in released],
            )
        return released

    def reclaim_expired_leases(self, now: float | None = None) -> list[SnapshotSplit]:
        """Requeue every split whose lease is older than the timeout."""
        now = self._clock() if now is None else now
        reclaimed: list[SnapshotSplit] = []
        for lease in self._leases.expired(now, self._lease_timeout):
            logger.info(
                "assigner.lease_expired",
                reader=lease.reader_id,
                split=lease.split_id,
                age_seconds=round(lease.age(now), 3),
            )
            reclaimed.append(self._requeue(lease))
        return reclaimed

    def _requeue(self, lease: Lease) -> SnapshotSplit:
        self._leases.release(lease.split_id)
        split = self._splits[lease.split_id]
        self._states[lease.split_id] = SplitState.PENDING
        heapq.heappush(self._pending, (*split.order_key, split.split_id))
        return split

    # -- Completion ------------------------------------------------------------

    def on_complete(self, listener: CompletionListener) -> None:
        """Register a listener; called immediately if already complete.

        A completion that was already emitted before a restore is not
        delivered again.
        """
        self._listeners.append(listener)
        if self._emitted_before_restore:
            return
        if self._completion is not None and self._completion_emitted:
            listener(self._completion)

    def _watermark(self, collection_id: str) -> CollectionWatermark:
        last = self._by_collection[collection_id][-1]
        return CollectionWatermark(
            collection_id=collection_id,
            split_id=last,
            position=self._positions.get(last, self._splits[last].upper_bound),
        )

    def _maybe_complete(self) -> None:
        if self._phase != AssignerPhase.ASSIGNING:
            return
        if any(s != SplitState.FINISHED for s in self._states.values()):
            return
        self._phase = AssignerPhase.SNAPSHOT_DONE
        self._completion = SnapshotCompletion(
            watermarks={cid: self._watermark(cid) for cid in self._by_collection},
            failed=dict(self._failed),
        )
        logger.info(
            "assigner.snapshot_done",
            collections=sorted(self._by_collection),
            failed=sorted(self._failed),
        )
        self._emit()

    def _emit(self) -> None:
        if self._completion_emitted or self._completion is None:
            return
        self._completion_emitted = True
        for listener in self._listeners:
            listener(self._completion)

    # -- Checkpointing ---------------------------------------------------------

    def checkpoint(self) -> AssignerCheckpoint:
        return AssignerCheckpoint(
            phase=self._phase,
            collections={cid: list(ids) for cid, ids in self._by_collection.items()},
            finished=[
                sid for sid, state in self._states.items() if state == SplitState.FINISHED
            ],
            leases=[
                LeaseState(
                    reader_id=lease.reader_id,
                    split_id=lease.split_id,
                    collection_id=lease.collection_id,
                )
                for lease in self._leases
            ],
            positions={sid: encode_bound(pos) for sid, pos in self._positions.items()},
            failed=dict(self._failed),
            completion_emitted=self._completion_emitted,
        )

    @classmethod
    def restore(
        cls,
        checkpoint: AssignerCheckpoint,
        planned: Mapping[str, Sequence[SnapshotSplit]],
        lease_timeout: float = 300.0,
        *,
        failures: Mapping[str, str] | None = None,
        clock: Clock = time.monotonic,
    ) -> SnapshotSplitAssigner:
        """Rebuild an assigner from a checkpoint plus deterministic re-planning.

        *failures* are the collections that failed the current planning run.
        Failures recorded in the checkpoint are not carried over: a collection
        that plans now is snapshotted, and one that fails now is reported
        failed even if the checkpoint has progress for it. Collections in
        *planned* that the checkpoint doesn't know are added as fresh work.

        Restored leases restart their clock at restore time. Completion is
        not re-emitted to listeners if the checkpoint already emitted it for
        the same set of collections.

        Raises:
            InvariantViolation: re-planning produced different split ids than
                the checkpoint recorded, or a checkpointed collection is
                neither planned nor failed.
        """
        failures = failures or {}
        assigner = cls(lease_timeout, clock=clock)
        owner: dict[str, str] = {}
        for cid, split_ids in checkpoint.collections.items():
            owner.update((sid, cid) for sid in split_ids)
            splits = planned.get(cid)
            if splits is None:
                if cid not in failures:
                    raise InvariantViolation(
                        cid, "checkpointed collection was not re-planned"
                    )
                continue
            replanned = [s.split_id for s in sorted(splits, key=lambda s: s.split_order or 0)]
            if replanned != split_ids:
                raise InvariantViolation(
                    cid, "re-planned split ids differ from the checkpoint"
                )
            assigner._load_collection(cid, splits)

        added = [cid for cid in planned if cid not in checkpoint.collections]
        for cid in added:
            assigner.add_splits(cid, planned[cid])
        for cid, reason in failures.items():
            if cid not in assigner._by_collection:
                assigner._failed[cid] = reason

        finished = set(checkpoint.finished)
        for sid in finished:
            if sid in assigner._states:
                assigner._states[sid] = SplitState.FINISHED
            elif owner.get(sid) not in assigner._failed:
                cid = owner.get(sid, sid.rpartition(":")[0])
                raise InvariantViolation(cid, f"unknown split {sid}")
        for sid, encoded in checkpoint.positions.items():
            if sid in assigner._states:
                assigner._positions[sid] = decode_bound(encoded)

        now = clock()
        for lease in checkpoint.leases:
            if lease.split_id in finished or lease.split_id not in assigner._states:
                continue
            assigner._leases.restore(
                Lease(
                    reader_id=lease.reader_id,
                    split_id=lease.split_id,
                    collection_id=lease.collection_id,
                    lease_start=now,
                )
            )
            assigner._states[lease.split_id] = SplitState.ASSIGNED

        unchanged = not added and assigner._failed == checkpoint.failed
        assigner._completion_emitted = checkpoint.completion_emitted and unchanged
        assigner._emitted_before_restore = assigner._completion_emitted
        if checkpoint.phase != AssignerPhase.PLANNING:
            assigner._phase = AssignerPhase.ASSIGNING
            assigner._maybe_complete()
        logger.info(
            "assigner.restored",
            phase=assigner._phase.value,
            pending=assigner.pending_count,
            leases=len(assigner._leases),
            finished=len(finished),
            failed=sorted(assigner._failed),
        )
        return assigner

    def _load_collection(self, collection_id: str, splits: Iterable[SnapshotSplit]) -> None:
        ordered = sorted(splits, key=lambda s: s.split_order or 0)
        validate_tiling(collection_id, ordered)
        self._by_collection[collection_id] = [s.split_id for s in ordered]
        for split in ordered:
            self._splits[split.split_id] = split
            self._states[split.split_id] = SplitState.PENDING
            heapq.heappush(self._pending, (*split.order_key, split.split_id))
