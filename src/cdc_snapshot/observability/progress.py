"""Snapshot progress summaries for the CLI and logs."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CollectionProgress:
    collection_id: str
    total: int = 0
    pending: int = 0
    assigned: int = 0
    finished: int = 0
    failed: str | None = None

    @property
    def done(self) -> bool:
        return self.failed is None and self.total > 0 and self.finished == self.total

    @property
    def status(self) -> str:
        if self.failed is not None:
            return "failed"
        if self.done:
            return "done"
        if self.assigned or self.finished:
            return "running"
        return "pending"


@dataclass
class SnapshotProgress:
    phase: str
    collections: list[CollectionProgress] = field(default_factory=list)

    @property
    def total_splits(self) -> int:
        return sum(c.total for c in self.collections)

    @property
    def finished_splits(self) -> int:
        return sum(c.finished for c in self.collections)

    @property
    def failed(self) -> list[str]:
        return [c.collection_id for c in self.collections if c.failed is not None]

    @property
    def summary(self) -> dict[str, str]:
        return {c.collection_id: c.status for c in self.collections}
