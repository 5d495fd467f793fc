"""StaticCatalog — in-memory source catalog described by a YAML document.

Example document::

    collections:
      shop.orders:
        key: [{name: id, type: int}]
        key_range: {start: 1, stop: 1000}   # inclusive
        schema:
          - {name: id, type: int, nullable: false}
          - {name: total, type: numeric}
      shop.events:
        key: [{name: id, type: str}]
        keys: [a, b, c]
        estimated_count: 3
        shards:
          - {lower: $min, upper: b, shard: s0}
          - {lower: b, upper: $max, shard: s1}
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from cdc_snapshot.config.loader import load_yaml
from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, KeyField
from cdc_snapshot.splits.models import ShardRange
from cdc_snapshot.splits.schema import CollectionSchema, SchemaField

logger = structlog.get_logger()

_BOUND_ALIASES: dict[str, Any] = {"$min": MIN_KEY, "$max": MAX_KEY}


def _bound(value: Any) -> Any:
    if isinstance(value, str) and value in _BOUND_ALIASES:
        return _BOUND_ALIASES[value]
    if isinstance(value, list):
        return tuple(value)
    return value


@dataclass
class StaticCollection:
    collection_id: str
    key: tuple[KeyField, ...]
    keys: list[Any] = field(default_factory=list)
    estimated_count: int | None = None
    shards: list[ShardRange] = field(default_factory=list)
    schema: CollectionSchema | None = None


class UnknownCollectionError(KeyError):
    """Raised when the catalog has no entry for a collection."""


class StaticCatalog:
    """Serves collection statistics from memory.

    Sampling uses a seeded :class:`random.Random` so repeated planning runs
    over the same catalog produce the same splits.
    """

    def __init__(self, collections: list[StaticCollection], *, seed: int = 0) -> None:
        self._collections = {c.collection_id: c for c in collections}
        self._seed = seed

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StaticCatalog:
        collections: list[StaticCollection] = []
        for name, spec in (data.get("collections") or {}).items():
            key = tuple(
                KeyField(name=k["name"], type=k.get("type", "any"))
                for k in spec.get("key", [{"name": "id", "type": "any"}])
            )
            if "key_range" in spec:
                rng = spec["key_range"]
                keys: list[Any] = list(range(rng["start"], rng["stop"] + 1))
            else:
                keys = [_bound(k) for k in spec.get("keys", [])]
            shards = [
                ShardRange(
                    lower=_bound(s["lower"]),
                    upper=_bound(s["upper"]),
                    shard=s.get("shard"),
                )
                for s in spec.get("shards", [])
            ]
            schema_fields = spec.get("schema") or [
                {"name": k.name, "type": k.type, "nullable": False} for k in key
            ]
            schema = CollectionSchema.from_dict(
                {"collection_id": name, "fields": schema_fields}
            )
            collections.append(
                StaticCollection(
                    collection_id=name,
                    key=key,
                    keys=keys,
                    estimated_count=spec.get("estimated_count", len(keys)),
                    shards=shards,
                    schema=schema,
                )
            )
        return cls(collections, seed=int(data.get("seed", 0)))

    @classmethod
    def from_yaml(cls, path: str | Path) -> StaticCatalog:
        return cls.from_dict(load_yaml(path))

    @property
    def collection_ids(self) -> list[str]:
        return sorted(self._collections)

    def _get(self, collection_id: str) -> StaticCollection:
        try:
            return self._collections[collection_id]
        except KeyError:
            raise UnknownCollectionError(collection_id) from None

    async def key_schema(self, collection_id: str) -> tuple[KeyField, ...]:
        return self._get(collection_id).key

    async def estimate_count(self, collection_id: str) -> int | None:
        return self._get(collection_id).estimated_count

    async def sample_keys(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
        size: int,
    ) -> list[Any]:
        keys = self._get(collection_id).keys
        if size >= len(keys):
            return list(keys)
        rng = random.Random(f"{self._seed}:{collection_id}")
        return rng.sample(keys, size)

    async def shard_ranges(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
    ) -> list[ShardRange]:
        return list(self._get(collection_id).shards)

    async def fetch_schema(self, collection_id: str) -> CollectionSchema:
        schema = self._get(collection_id).schema
        assert schema is not None
        return schema

    async def close(self) -> None:
        logger.debug("static_catalog.closed", collections=len(self._collections))
