"""Source catalog factory — maps SourceType to concrete catalog classes."""

from __future__ import annotations

from cdc_snapshot.config.models import SourceConfig, SourceType
from cdc_snapshot.sources.base import SourceCatalog


def create_catalog(config: SourceConfig) -> SourceCatalog:
    """Create the source catalog for the configured source type."""
    if config.source_type == SourceType.STATIC:
        assert config.catalog_path is not None
        from cdc_snapshot.sources.static import StaticCatalog

        return StaticCatalog.from_yaml(config.catalog_path)

    if config.source_type == SourceType.POSTGRES:
        from cdc_snapshot.sources.postgres import PostgresCatalog

        return PostgresCatalog(config)

    msg = f"Unsupported source type: {config.source_type}"
    raise ValueError(msg)
