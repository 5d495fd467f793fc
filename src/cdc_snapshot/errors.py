"""Typed failures raised by split planning and assignment."""

from __future__ import annotations


class SnapshotError(Exception):
    """Base class for snapshot planning/assignment errors."""


class TransientSourceError(SnapshotError):
    """A catalog/schema call failed in a way that is worth retrying."""


class PlanningFailure(SnapshotError):
    """Raised when a collection could not be planned after all retries.

    Only the named collection is affected; sibling collections keep going.
    """

    def __init__(self, collection_id: str, cause: BaseException | str) -> None:
        self.collection_id = collection_id
        self.cause = cause
        super().__init__(f"Planning failed for '{collection_id}': {cause}")


class InvariantViolation(SnapshotError):
    """Raised when a split set has gaps, overlaps or inconsistent ids."""

    def __init__(self, collection_id: str, detail: str) -> None:
        self.collection_id = collection_id
        self.detail = detail
        super().__init__(f"Invalid split set for '{collection_id}': {detail}")
