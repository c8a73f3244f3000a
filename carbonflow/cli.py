# -*- coding: utf-8 -*-
"""
carbonflow - Offline tooling for carbon-flow graph snapshots

Commands:
    carbonflow validate SNAPSHOT     Run the consistency validator
    carbonflow layout SNAPSHOT       Compute the Sankey layout
    carbonflow calculate SNAPSHOT    Recompute carbon footprints

Snapshots are GraphSnapshot documents in JSON or YAML.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from carbonflow import __version__
from carbonflow.actions import ActionCommand, CalculatePayload, Operation
from carbonflow.config import get_config
from carbonflow.graph_store import GraphStore
from carbonflow.layout import SankeyLayoutEngine
from carbonflow.models import GraphSnapshot
from carbonflow.processor import ActionProcessor
from carbonflow.validator import ConsistencyValidator

app = typer.Typer(
    name="carbonflow",
    help="Validate, lay out and calculate carbon-flow graph snapshots",
    no_args_is_help=True,
)
console = Console()


def _load_snapshot(path: Path) -> GraphSnapshot:
    if not path.exists():
        console.print(f"[red]Snapshot not found: {path}[/red]")
        raise typer.Exit(1)
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif path.suffix == ".json":
            data = json.loads(text)
        else:
            console.print(f"[red]Unsupported snapshot format: {path.suffix}[/red]")
            console.print("[yellow]Use .json or .yaml files[/yellow]")
            raise typer.Exit(1)
        return GraphSnapshot.model_validate(data or {})
    except (ValueError, yaml.YAMLError, PydanticValidationError) as e:
        console.print(f"[red]Invalid snapshot {path}: {e}[/red]")
        raise typer.Exit(1)


def _write_snapshot(snapshot: GraphSnapshot, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(snapshot.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    console.print(f"[green]✓[/green] Wrote {output}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """CarbonFlow graph tooling."""
    level = "DEBUG" if verbose else get_config().log_level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def version():
    """Show the carbonflow version."""
    console.print(f"carbonflow {__version__}")


@app.command()
def validate(
    snapshot: Path = typer.Argument(..., help="Snapshot file (JSON/YAML)"),
):
    """
    Check a snapshot's structural invariants

    Exits with status 1 when any error is reported.
    """
    data = _load_snapshot(snapshot)
    validator = ConsistencyValidator()
    result = validator.validate(data.nodes, data.edges)
    recommendations = result.recommendations + validator.recommend_stages(data.nodes)

    table = Table(title=f"Validation: {snapshot.name}", box=box.ROUNDED)
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Node")
    table.add_column("Message")
    for issue in result.errors:
        table.add_row("[red]error[/red]", issue.type.value, issue.node_id or "", issue.message)
    for issue in result.warnings:
        table.add_row("[yellow]warning[/yellow]", issue.type.value, issue.node_id or "", issue.message)
    for rec in recommendations:
        table.add_row("[cyan]hint[/cyan]", rec.type.value, rec.node_id or "", rec.message)
    console.print(table)

    if result.is_valid:
        console.print(f"[green]✓[/green] Valid ({len(result.warnings)} warning(s))")
    else:
        console.print(f"[red]✗[/red] {len(result.errors)} error(s)")
        raise typer.Exit(1)


@app.command()
def layout(
    snapshot: Path = typer.Argument(..., help="Snapshot file (JSON/YAML)"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the laid-out snapshot here"
    ),
):
    """Compute node positions and edge weights"""
    data = _load_snapshot(snapshot)
    result = SankeyLayoutEngine().layout(data.nodes, data.edges)

    table = Table(title="Layout", box=box.SIMPLE)
    table.add_column("Node")
    table.add_column("Stage")
    table.add_column("x", justify="right")
    table.add_column("y", justify="right")
    table.add_column("height", justify="right")
    for node in result.nodes:
        table.add_row(
            node.id, node.stage,
            f"{node.position.x:.0f}", f"{node.position.y:.0f}",
            f"{node.style.get('height', 0):.1f}",
        )
    console.print(table)

    if output is not None:
        _write_snapshot(
            data.model_copy(update={"nodes": result.nodes, "edges": result.edges}), output,
        )


@app.command()
def calculate(
    snapshot: Path = typer.Argument(..., help="Snapshot file (JSON/YAML)"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the recalculated snapshot here"
    ),
):
    """Recompute every node's carbon footprint"""
    data = _load_snapshot(snapshot)
    store = GraphStore(data.workflow_id)
    store.load_snapshot(data)
    outcome = ActionProcessor(store).handle_action(
        ActionCommand(operation=Operation.CALCULATE, payload=CalculatePayload()),
    )

    table = Table(title="Carbon footprint", box=box.SIMPLE)
    table.add_column("Node")
    table.add_column("Label")
    table.add_column("kgCO2e", justify="right")
    for node in store.nodes:
        table.add_row(node.id, node.label, f"{node.flow_magnitude:.4f}")
    console.print(table)
    console.print(f"Total: [bold]{outcome.data.get('total', 0.0):.4f}[/bold] kgCO2e")

    if output is not None:
        _write_snapshot(store.snapshot(), output)


if __name__ == "__main__":
    app()
