#!/usr/bin/env python3
"""Runnable demo: plan the example catalog and walk through a reader crash.

    uv run python examples/orders_snapshot_demo.py
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from rich.console import Console

from cdc_snapshot.assigner.assigner import SnapshotSplitAssigner
from cdc_snapshot.assigner.planner import SnapshotPlanner
from cdc_snapshot.config.loader import load_snapshot_config
from cdc_snapshot.sources.static import StaticCatalog

HERE = Path(__file__).parent
console = Console()


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def main() -> None:
    config = load_snapshot_config(HERE / "snapshot-config.yaml")
    catalog = StaticCatalog.from_yaml(HERE / "orders-catalog.yaml")
    planner = SnapshotPlanner(catalog, config.splitter, config.retry)
    result = await planner.plan_all(config.collections)

    clock = FakeClock()
    assigner = SnapshotSplitAssigner(
        config.assigner.lease_timeout_seconds, clock=clock
    )
    assigner.on_complete(
        lambda c: console.print(f"[green]snapshot done[/green] {c.watermarks}")
    )
    for cid, splits in result.splits.items():
        assigner.add_splits(cid, splits)
    assigner.finish_planning()

    # reader-a takes a split and goes silent
    lost = assigner.request_next("reader-a")
    assert lost is not None
    console.print(f"reader-a took {lost.split_id} and crashed")

    clock.now += config.assigner.lease_timeout_seconds + 1
    for split in assigner.reclaim_expired_leases():
        console.print(f"[yellow]reclaimed[/yellow] {split.split_id}")

    while (split := assigner.request_next("reader-b")) is not None:
        assigner.report_finished("reader-b", split.split_id)
        console.print(f"reader-b finished {split.split_id}")

    # reader-a's late report arrives after reader-b already finished the split
    accepted = assigner.report_finished("reader-a", lost.split_id)
    console.print(f"late report from reader-a accepted={accepted}")


if __name__ == "__main__":
    asyncio.run(main())
