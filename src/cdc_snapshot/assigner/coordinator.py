"""SplitCoordinator — single-actor front end for the split assigner.

Readers never touch assigner state directly: every request is a message on
one ``asyncio.Queue`` and the actor loop applies them one at a time, so the
assigner needs no locks.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import structlog

from cdc_snapshot.assigner.assigner import SnapshotCompletion, SnapshotSplitAssigner
from cdc_snapshot.assigner.checkpoint import FileCheckpointStore
from cdc_snapshot.splits.models import SnapshotSplit

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class RequestNext:
    reader_id: str


@dataclass(frozen=True, slots=True)
class ReportFinished:
    reader_id: str
    split_id: str
    position: Any = None


@dataclass(frozen=True, slots=True)
class ReleaseReader:
    reader_id: str


@dataclass(frozen=True, slots=True)
class ReclaimLeases:
    now: float | None = None


Message = RequestNext | ReportFinished | ReleaseReader | ReclaimLeases


@dataclass(frozen=True, slots=True)
class Assignment:
    """Reply to :class:`RequestNext`.

    ``split`` is None when nothing is pending; ``done`` tells the reader to
    shut down instead of polling again.
    """

    split: SnapshotSplit | None
    done: bool = False


class CoordinatorStoppedError(RuntimeError):
    """Raised when a message is sent to a coordinator that isn't running."""


class SplitCoordinator:
    """Owns a :class:`SnapshotSplitAssigner` behind a message-passing actor.

    A background task sends :class:`ReclaimLeases` every
    ``reclaim_interval`` seconds. If a checkpoint store is given, the
    assigner state is saved after every state-changing message.
    """

    def __init__(
        self,
        assigner: SnapshotSplitAssigner,
        *,
        reclaim_interval: float = 10.0,
        checkpoint_store: FileCheckpointStore | None = None,
    ) -> None:
        self._assigner = assigner
        self._reclaim_interval = reclaim_interval
        self._store = checkpoint_store
        self._inbox: asyncio.Queue[tuple[Message, asyncio.Future[Any]]] = asyncio.Queue()
        self._actor_task: asyncio.Task[None] | None = None
        self._reclaim_task: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._assigner.on_complete(self._on_complete)
        if self._assigner.is_done:
            # restored from a checkpoint that already completed
            self._done.set()

    async def __aenter__(self) -> SplitCoordinator:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._actor_task is not None and not self._actor_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._actor_task = asyncio.create_task(self._run())
        self._reclaim_task = asyncio.create_task(self._reclaim_loop())
        logger.info(
            "coordinator.started",
            phase=self._assigner.phase.value,
            pending=self._assigner.pending_count,
        )

    async def stop(self) -> None:
        for task in (self._reclaim_task, self._actor_task):
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._reclaim_task = None
        self._actor_task = None
        while not self._inbox.empty():
            _, future = self._inbox.get_nowait()
            if not future.done():
                future.set_exception(CoordinatorStoppedError("coordinator stopped"))
        logger.info("coordinator.stopped")

    # -- Reader-facing API -----------------------------------------------------

    async def request_next(self, reader_id: str) -> Assignment:
        return await self._send(RequestNext(reader_id))  # type: ignore[no-any-return]

    async def report_finished(
        self, reader_id: str, split_id: str, position: Any = None
    ) -> bool:
        return await self._send(  # type: ignore[no-any-return]
            ReportFinished(reader_id, split_id, position)
        )

    async def release_reader(self, reader_id: str) -> list[SnapshotSplit]:
        return await self._send(ReleaseReader(reader_id))  # type: ignore[no-any-return]

    async def reclaim(self, now: float | None = None) -> list[SnapshotSplit]:
        return await self._send(ReclaimLeases(now))  # type: ignore[no-any-return]

    async def wait_done(self) -> SnapshotCompletion:
        await self._done.wait()
        completion = self._assigner.completion
        assert completion is not None
        return completion

    # -- Actor -----------------------------------------------------------------

    async def _send(self, message: Message) -> Any:
        if not self.running:
            raise CoordinatorStoppedError("coordinator is not running")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._inbox.put((message, future))
        return await future

    def _handle(self, message: Message) -> tuple[Any, bool]:
        """Apply one message; returns (reply, state_changed)."""
        a = self._assigner
        if isinstance(message, RequestNext):
            split = a.request_next(message.reader_id)
            return Assignment(split=split, done=a.is_done), split is not None
        if isinstance(message, ReportFinished):
            changed = a.report_finished(
                message.reader_id, message.split_id, message.position
            )
            return changed, changed
        if isinstance(message, ReleaseReader):
            released = a.release_reader(message.reader_id)
            return released, bool(released)
        if isinstance(message, ReclaimLeases):
            reclaimed = a.reclaim_expired_leases(message.now)
            return reclaimed, bool(reclaimed)
        msg = f"Unknown coordinator message: {message!r}"
        raise TypeError(msg)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            message, future = await self._inbox.get()
            try:
                reply, changed = self._handle(message)
                if changed and self._store is not None:
                    checkpoint = self._assigner.checkpoint()
                    await loop.run_in_executor(None, self._store.save, checkpoint)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(CoordinatorStoppedError("coordinator stopped"))
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(reply)
            finally:
                self._inbox.task_done()

    async def _reclaim_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reclaim_interval)
            try:
                await self.reclaim()
            except CoordinatorStoppedError:
                return
            except Exception:
                logger.exception("coordinator.reclaim_failed")

    def _on_complete(self, completion: SnapshotCompletion) -> None:
        logger.info(
            "coordinator.snapshot_done",
            watermarks={
                cid: repr(w.position) for cid, w in completion.watermarks.items()
            },
            failed=sorted(completion.failed),
        )
        self._done.set()
