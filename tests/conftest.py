"""Shared fixtures for the unit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from cdc_snapshot.sources.static import StaticCatalog

EXAMPLES_DIR = Path(__file__).resolve().parents[1] / "examples"


@pytest.fixture
def catalog_path() -> Path:
    return EXAMPLES_DIR / "orders-catalog.yaml"


@pytest.fixture
def catalog(catalog_path: Path) -> StaticCatalog:
    return StaticCatalog.from_yaml(catalog_path)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
