"""Split context and snapshot split data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, KeyField
from cdc_snapshot.splits.schema import SchemaSnapshot


def split_id(collection_id: str, seq: int) -> str:
    """Deterministic split id: ``<collection_id>:<seq>``."""
    return f"{collection_id}:{seq}"


@dataclass(frozen=True, slots=True)
class ShardRange:
    """One partition range as recorded by the source's own catalog."""

    lower: Any
    upper: Any
    shard: str | None = None


@dataclass(frozen=True, slots=True)
class CollectionStats:
    """Statistics snapshot a strategy plans against.

    Each field is ``None`` when the source did not (or was not asked to)
    provide it.
    """

    estimated_count: int | None = None
    sample_keys: tuple[Any, ...] | None = None
    shard_ranges: tuple[ShardRange, ...] | None = None


@dataclass(frozen=True, slots=True)
class SplitContext:
    """Immutable description of one collection to be split."""

    collection_id: str
    key_schema: tuple[KeyField, ...]
    schema: SchemaSnapshot = field(default_factory=lambda: MappingProxyType({}))
    stats: CollectionStats = field(default_factory=CollectionStats)
    chunk_size: int = 8192
    chunk_count: int | None = None


@dataclass(frozen=True, slots=True)
class SnapshotSplit:
    """A bounded ``[lower_bound, upper_bound)`` slice of a collection's keys.

    Splits are never mutated after creation; assignment state lives in the
    assigner.
    """

    collection_id: str
    split_id: str
    key_schema: tuple[KeyField, ...]
    lower_bound: Any
    upper_bound: Any
    split_order: int | None = None
    schema_snapshot: SchemaSnapshot = field(
        default_factory=lambda: MappingProxyType({}), repr=False, compare=False
    )

    @property
    def is_first(self) -> bool:
        return self.lower_bound == MIN_KEY

    @property
    def is_last(self) -> bool:
        return self.upper_bound == MAX_KEY

    @property
    def order_key(self) -> tuple[str, int]:
        return (self.collection_id, self.split_order or 0)

    def contains(self, key: Any) -> bool:
        """True if *key* falls inside this split's half-open range."""
        return bool(self.lower_bound <= key < self.upper_bound)
