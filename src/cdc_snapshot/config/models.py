"""Pydantic configuration models for snapshot split planning and assignment."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_QUALIFIED_NAME = re.compile(r"^[a-zA-Z_]\w*\.[a-zA-Z_]\w*$")


class SourceType(StrEnum):
    """Supported source catalogs."""

    STATIC = "static"
    POSTGRES = "postgres"


class SplitStrategyKind(StrEnum):
    """Closed set of split strategies."""

    SINGLE = "single"
    SAMPLED_RANGE = "sampled_range"
    SHARD_RANGE = "shard_range"


class SourceConfig(BaseModel):
    """Connection settings for the source catalog.

    - static:   ``catalog_path`` points at a YAML document describing the
                collections (see ``examples/orders-catalog.yaml``)
    - postgres: host/port/database/username/password
    """

    source_type: SourceType = SourceType.STATIC
    catalog_path: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    username: str = "cdc_user"
    password: SecretStr = SecretStr("cdc_password")
    connect_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def check_source_requirements(self) -> Self:
        if self.source_type == SourceType.STATIC and not self.catalog_path:
            msg = "catalog_path is required when source_type is 'static'"
            raise ValueError(msg)
        return self

    @property
    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.username} "
            f"password={self.password.get_secret_value()} "
            f"connect_timeout={int(self.connect_timeout_seconds)}"
        )


class CollectionConfig(BaseModel):
    """One collection to snapshot, with optional per-collection overrides."""

    name: str
    strategy: SplitStrategyKind | None = None
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_count: int | None = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def validate_qualified_name(cls, v: str) -> str:
        """Collections are schema- or db-qualified (``public.orders``)."""
        if not _QUALIFIED_NAME.match(v):
            msg = (
                f"Collection '{v}' must be schema- or db-qualified "
                f"(e.g. 'public.orders' or 'shop.events')"
            )
            raise ValueError(msg)
        return v


class SplitterConfig(BaseModel):
    """How collections are cut into splits."""

    strategy: SplitStrategyKind = SplitStrategyKind.SAMPLED_RANGE
    # Overrides ``strategy`` for a given source type.
    strategy_by_source: dict[SourceType, SplitStrategyKind] = Field(
        default_factory=dict
    )
    chunk_size: int = Field(default=8192, ge=1)
    # When set, ignores the row estimate and aims for this many chunks.
    chunk_count: int | None = Field(default=None, ge=1)
    samples_per_chunk: int = Field(default=20, ge=1)
    max_sample_size: int = Field(default=100_000, ge=1)

    def strategy_for(
        self, source_type: SourceType, collection: CollectionConfig
    ) -> SplitStrategyKind:
        """Resolve the strategy: collection override > source type > default."""
        if collection.strategy is not None:
            return collection.strategy
        return self.strategy_by_source.get(source_type, self.strategy)


class AssignerConfig(BaseModel):
    """Lease and reader settings for the split assigner."""

    lease_timeout_seconds: float = Field(default=300.0, gt=0)
    reclaim_interval_seconds: float = Field(default=10.0, gt=0)
    num_readers: int = Field(default=4, ge=1)
    idle_interval_seconds: float = Field(default=1.0, gt=0)
    checkpoint_path: str | None = None


class RetryConfig(BaseModel):
    """Retry / backoff configuration for planning calls."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class SnapshotConfig(BaseModel, extra="forbid"):
    """Root configuration: source, collections and splitting/assignment knobs."""

    snapshot_id: str
    source: SourceConfig
    collections: list[CollectionConfig] = Field(default_factory=list)
    splitter: SplitterConfig = SplitterConfig()
    assigner: AssignerConfig = AssignerConfig()
    retry: RetryConfig = RetryConfig()

    @field_validator("collections")
    @classmethod
    def validate_unique_collections(
        cls, v: list[CollectionConfig]
    ) -> list[CollectionConfig]:
        names = [c.name for c in v]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            msg = f"Duplicate collections: {dupes}"
            raise ValueError(msg)
        return v
