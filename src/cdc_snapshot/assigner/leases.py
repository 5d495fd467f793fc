"""Per-reader lease bookkeeping for assigned splits."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Lease:
    reader_id: str
    split_id: str
    collection_id: str
    lease_start: float

    def age(self, now: float) -> float:
        return now - self.lease_start


class LeaseTracker:
    """Which reader holds which split, and since when.

    Holds at most one lease per split. Time is whatever monotonic clock the
    caller passes in.
    """

    def __init__(self) -> None:
        self._by_split: dict[str, Lease] = {}

    def __len__(self) -> int:
        return len(self._by_split)

    def __iter__(self) -> Iterator[Lease]:
        return iter(list(self._by_split.values()))

    def __contains__(self, split_id: object) -> bool:
        return split_id in self._by_split

    def acquire(
        self, reader_id: str, split_id: str, collection_id: str, now: float
    ) -> Lease:
        if split_id in self._by_split:
            holder = self._by_split[split_id].reader_id
            msg = f"Split {split_id} is already leased to {holder}"
            raise ValueError(msg)
        lease = Lease(
            reader_id=reader_id,
            split_id=split_id,
            collection_id=collection_id,
            lease_start=now,
        )
        self._by_split[split_id] = lease
        return lease

    def restore(self, lease: Lease) -> None:
        self._by_split[lease.split_id] = lease

    def release(self, split_id: str) -> Lease | None:
        return self._by_split.pop(split_id, None)

    def get(self, split_id: str) -> Lease | None:
        return self._by_split.get(split_id)

    def held_by(self, reader_id: str) -> list[Lease]:
        return [lease for lease in self._by_split.values() if lease.reader_id == reader_id]

    def expired(self, now: float, timeout: float) -> list[Lease]:
        """Leases older than *timeout*, oldest first."""
        stale = [lease for lease in self._by_split.values() if lease.age(now) > timeout]
        return sorted(stale, key=lambda lease: lease.lease_start)
