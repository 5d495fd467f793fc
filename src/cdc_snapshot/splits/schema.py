"""Structural schema captured once per collection at planning time."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class SchemaField:
    name: str
    type: str
    nullable: bool = True


@dataclass(frozen=True, slots=True)
class CollectionSchema:
    """Column/field layout of one collection as of split creation."""

    collection_id: str
    fields: tuple[SchemaField, ...] = field(default_factory=tuple)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "fields": [
                {"name": f.name, "type": f.type, "nullable": f.nullable}
                for f in self.fields
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CollectionSchema:
        return cls(
            collection_id=data["collection_id"],
            fields=tuple(
                SchemaField(
                    name=f["name"],
                    type=f["type"],
                    nullable=f.get("nullable", True),
                )
                for f in data.get("fields", [])
            ),
        )


SchemaSnapshot = Mapping[str, CollectionSchema]


@runtime_checkable
class SchemaProvider(Protocol):
    """Supplies the structural schema of a collection."""

    async def fetch_schema(self, collection_id: str) -> CollectionSchema:
        """Return the current schema of *collection_id*."""
        ...


async def capture_schema(
    provider: SchemaProvider, collection_id: str
) -> SchemaSnapshot:
    """Fetch a collection's schema and freeze it into a read-only snapshot.

    The returned mapping is shared by every split of the collection so all
    chunks decode against one schema, even if the source changes later.
    """
    schema = await provider.fetch_schema(collection_id)
    if schema.collection_id != collection_id:
        msg = (
            f"Schema provider returned schema for '{schema.collection_id}' "
            f"when asked for '{collection_id}'"
        )
        raise ValueError(msg)
    logger.debug(
        "schema.captured",
        collection=collection_id,
        fields=len(schema.fields),
    )
    return MappingProxyType({collection_id: schema})
