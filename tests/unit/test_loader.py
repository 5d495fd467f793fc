"""Unit tests for the YAML config loader and env var resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from cdc_snapshot.config.loader import load_snapshot_config, load_yaml, resolve_env_vars
from cdc_snapshot.config.models import SourceType, SplitStrategyKind

DEMO_CONFIG = Path(__file__).resolve().parents[2] / "examples" / "snapshot-config.yaml"


class TestResolveEnvVars:
    def test_plain_string_unchanged(self):
        assert resolve_env_vars("hello") == "hello"

    def test_substitutes_env_var(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MY_HOST", "db.prod")
        assert resolve_env_vars("${MY_HOST}") == "db.prod"

    def test_default_when_var_missing(self):
        assert resolve_env_vars("${MISSING_VAR:-fallback}") == "fallback"

    def test_env_var_overrides_default(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MY_PORT", "9999")
        assert resolve_env_vars("${MY_PORT:-5432}") == "9999"

    def test_missing_var_no_default_raises(self):
        with pytest.raises(ValueError, match="UNDEFINED_VAR"):
            resolve_env_vars("${UNDEFINED_VAR}")

    def test_recursive_structures(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TABLE", "public.users")
        data = {"collections": [{"name": "${TABLE}"}], "n": 3}
        assert resolve_env_vars(data) == {
            "collections": [{"name": "public.users"}],
            "n": 3,
        }


class TestLoadYaml:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "nope.yaml")

    def test_non_mapping_rejected(self, tmp_path: Path):
        p = tmp_path / "list.yaml"
        p.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            load_yaml(p)

    def test_parse_error_reports_line(self, tmp_path: Path):
        p = tmp_path / "bad.yaml"
        p.write_text("a: [1, 2\n")
        with pytest.raises(ValueError, match="Failed to parse YAML"):
            load_yaml(p)


class TestLoadDemoConfig:
    def test_demo_config_loads_with_defaults(self):
        config = load_snapshot_config(DEMO_CONFIG)
        assert config.snapshot_id == "demo"
        assert config.source.source_type == SourceType.STATIC
        assert config.splitter.chunk_size == 250
        assert [c.name for c in config.collections] == [
            "shop.orders",
            "shop.customers",
            "shop.events",
        ]
        assert config.collections[2].strategy == SplitStrategyKind.SHARD_RANGE

    def test_catalog_path_resolved_relative_to_config(self):
        config = load_snapshot_config(DEMO_CONFIG)
        assert config.source.catalog_path is not None
        assert Path(config.source.catalog_path) == DEMO_CONFIG.parent / "orders-catalog.yaml"

    def test_demo_config_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CHUNK_SIZE", "500")
        monkeypatch.setenv("SNAPSHOT_ID", "nightly")
        config = load_snapshot_config(DEMO_CONFIG)
        assert config.splitter.chunk_size == 500
        assert config.snapshot_id == "nightly"

    def test_invalid_config_names_file(self, tmp_path: Path):
        p = tmp_path / "bad.yaml"
        p.write_text("snapshot_id: x\nsource:\n  source_type: static\n")
        with pytest.raises(ValueError, match="Invalid snapshot config"):
            load_snapshot_config(p)
