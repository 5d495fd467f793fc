"""Typer CLI for snapshot split planning and assignment."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from cdc_snapshot.assigner.checkpoint import FileCheckpointStore
from cdc_snapshot.config.loader import load_snapshot_config
from cdc_snapshot.config.models import SnapshotConfig
from cdc_snapshot.errors import SnapshotError
from cdc_snapshot.observability.progress import CollectionProgress, SnapshotProgress
from cdc_snapshot.pipeline.runner import SnapshotRunner
from cdc_snapshot.sources.factory import create_catalog

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cdc-snapshot", help="CDC snapshot split planner")


def _load(config_path: str) -> SnapshotConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        return load_snapshot_config(path)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid config:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to snapshot YAML"),
) -> None:
    """Validate a snapshot configuration file."""
    config = _load(config_path)
    console.print(f"[green]Valid[/green] — snapshot_id={config.snapshot_id}")
    console.print(f"  source:   {config.source.source_type}")
    console.print(f"  strategy: {config.splitter.strategy}")
    console.print(f"  chunks:   size={config.splitter.chunk_size}")
    console.print(f"  lease:    {config.assigner.lease_timeout_seconds}s")
    console.print(f"  readers:  {config.assigner.num_readers}")
    for c in config.collections:
        kind = config.splitter.strategy_for(config.source.source_type, c)
        console.print(f"    - {c.name} ({kind})")


@app.command()
def plan(
    config_path: str = typer.Argument(..., help="Path to snapshot YAML"),
) -> None:
    """Plan every collection and print the resulting splits."""
    config = _load(config_path)
    runner = SnapshotRunner(config)

    async def _plan() -> None:
        catalog = create_catalog(config.source)
        try:
            await runner.plan(catalog)
        finally:
            await catalog.close()

    asyncio.run(_plan())
    result = runner.plan_result
    assert result is not None

    table = Table(title=f"Splits — {config.snapshot_id}")
    table.add_column("Split ID", style="cyan")
    table.add_column("Order")
    table.add_column("Lower (incl)")
    table.add_column("Upper (excl)")
    for cid in sorted(result.splits):
        for split in result.splits[cid]:
            table.add_row(
                split.split_id,
                str(split.split_order),
                repr(split.lower_bound),
                repr(split.upper_bound),
            )
    console.print(table)

    for cid, exc in sorted(result.failures.items()):
        console.print(f"[red]{cid}: {exc}[/red]")
    if result.failures:
        raise typer.Exit(1)


@app.command()
def run(
    config_path: str = typer.Argument(..., help="Path to snapshot YAML"),
) -> None:
    """Plan, assign and read every split, then print the resume watermarks."""
    config = _load(config_path)
    console.print(f"[yellow]Starting snapshot:[/yellow] {config.snapshot_id}")
    runner = SnapshotRunner(config)
    try:
        completion = runner.start()
    except KeyboardInterrupt:
        runner.stop()
        raise typer.Exit(130) from None
    except SnapshotError as exc:
        console.print(f"[red]Snapshot failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title="Resume watermarks")
    table.add_column("Collection", style="cyan")
    table.add_column("Last split")
    table.add_column("Position")
    for cid, wm in sorted(completion.watermarks.items()):
        table.add_row(cid, wm.split_id, repr(wm.position))
    console.print(table)
    for cid, reason in sorted(completion.failed.items()):
        console.print(f"[red]{cid}: {reason}[/red]")
    if completion.failed:
        raise typer.Exit(1)


def _print_progress(progress: SnapshotProgress) -> None:
    table = Table(title=f"Snapshot progress ({progress.phase})")
    table.add_column("Collection", style="cyan")
    table.add_column("Status")
    table.add_column("Pending")
    table.add_column("Assigned")
    table.add_column("Finished")
    for c in progress.collections:
        style = {"done": "green", "failed": "red"}.get(c.status, "yellow")
        table.add_row(
            c.collection_id,
            f"[{style}]{c.status}[/{style}]",
            str(c.pending),
            str(c.assigned),
            f"{c.finished}/{c.total}",
        )
    console.print(table)


@app.command()
def status(
    checkpoint_path: str = typer.Argument(..., help="Path to checkpoint JSON"),
) -> None:
    """Show progress recorded in an assigner checkpoint."""
    checkpoint = FileCheckpointStore(checkpoint_path).load()
    if checkpoint is None:
        console.print(f"[red]Checkpoint not found: {checkpoint_path}[/red]")
        raise typer.Exit(1)

    finished = set(checkpoint.finished)
    leased = {lease.split_id for lease in checkpoint.leases}
    collections = [
        CollectionProgress(
            collection_id=cid,
            total=len(ids),
            pending=sum(1 for s in ids if s not in finished and s not in leased),
            assigned=sum(1 for s in ids if s in leased and s not in finished),
            finished=sum(1 for s in ids if s in finished),
        )
        for cid, ids in sorted(checkpoint.collections.items())
    ]
    collections.extend(
        CollectionProgress(collection_id=cid, failed=reason)
        for cid, reason in sorted(checkpoint.failed.items())
    )
    _print_progress(SnapshotProgress(phase=checkpoint.phase.value, collections=collections))
