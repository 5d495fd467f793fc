"""YAML + environment variable config loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from cdc_snapshot.config.models import SnapshotConfig

# Packaged YAML merged beneath every config file
DEFAULTS_DIR = Path(__file__).parent / "defaults"

# Matches ${VAR} or ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")


def _resolve_env_str(value: str) -> str:
    """Replace all ${VAR} / ${VAR:-default} references in a string."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default.replace("\\}", "}")
        msg = f"Environment variable '{var_name}' is not set and no default provided"
        raise ValueError(msg)

    return _ENV_PATTERN.sub(_replace, value)


def resolve_env_vars(data: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:-default} in parsed YAML data."""
    if isinstance(data, str):
        return _resolve_env_str(data)
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        msg += f": {exc}"
        raise ValueError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def load_defaults(name: str = "snapshot") -> dict[str, Any]:
    """Packaged defaults by name, e.g. ``snapshot`` for ``defaults/snapshot.yaml``."""
    return load_yaml(DEFAULTS_DIR / f"{name}.yaml")


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Overlay *overrides* on *base*. Nested mappings merge; anything else replaces."""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = merge_configs(current, value)
        merged[key] = value
    return merged


def build_snapshot_config(
    overrides: dict[str, Any],
    *,
    defaults: str = "snapshot",
) -> SnapshotConfig:
    merged = merge_configs(load_defaults(defaults), overrides)
    return SnapshotConfig.model_validate(merged)


def load_snapshot_config(
    path: str | Path,
    *,
    defaults: str = "snapshot",
) -> SnapshotConfig:
    """Load a snapshot config YAML and merge it over the built-in defaults.

    A relative ``source.catalog_path`` is resolved against the config file's
    directory.
    """
    overrides = load_yaml(path)
    source = overrides.get("source")
    if isinstance(source, dict) and source.get("catalog_path"):
        catalog_path = Path(source["catalog_path"])
        if not catalog_path.is_absolute():
            source["catalog_path"] = str(Path(path).parent / catalog_path)
    try:
        return build_snapshot_config(overrides, defaults=defaults)
    except ValidationError as exc:
        msg = f"Invalid snapshot config ({path}):\n{exc}"
        raise ValueError(msg) from exc
