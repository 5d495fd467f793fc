"""Source catalog protocol.

A catalog supplies everything planning needs from the source database:
shard key layout, row estimates, key samples, existing partition ranges and
the structural schema. Wire access is the implementation's business.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from cdc_snapshot.splits.keys import KeyField
from cdc_snapshot.splits.models import ShardRange
from cdc_snapshot.splits.schema import CollectionSchema


@runtime_checkable
class SourceCatalog(Protocol):
    """Protocol that every source catalog must satisfy."""

    async def key_schema(self, collection_id: str) -> tuple[KeyField, ...]:
        """Ordered shard key fields used to bound splits."""
        ...

    async def estimate_count(self, collection_id: str) -> int | None:
        """Approximate row count, or None if the source can't tell."""
        ...

    async def sample_keys(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
        size: int,
    ) -> list[Any]:
        """Return up to *size* randomly sampled key values."""
        ...

    async def shard_ranges(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
    ) -> list[ShardRange]:
        """Existing partition ranges; empty when the collection isn't partitioned."""
        ...

    async def fetch_schema(self, collection_id: str) -> CollectionSchema:
        """Structural schema of the collection."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
