"""CLI entry point for nodeflow.

Commands:
- nodeflow init: Create .nodeflow/config.yaml
- nodeflow validate: Check a workflow file
- nodeflow run: Execute a workflow file in-process
- nodeflow save: Store a workflow file in the database
- nodeflow submit: Queue a run of a stored workflow
- nodeflow worker: Process queued runs
- nodeflow nodes: List registered node types
- nodeflow runs: Show recent runs
- nodeflow serve: Start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from nodeflow.config import configure_logging, load_config, write_default_config
from nodeflow.core.context import RunStatus, RunSummary
from nodeflow.core.coordinator import RunOptions
from nodeflow.core.engine import Engine, build_engine
from nodeflow.core.errors import ConfigError, GraphError, NodeflowError
from nodeflow.core.graph_schema import WorkflowDefinition
from nodeflow.core.planner import build_execution_graph, parallel_levels, plan

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "running": "blue",
    "pending": "white",
}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def get_engine() -> Engine:
    try:
        config = load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)
    configure_logging(config.log_level)
    return build_engine(config)


def load_workflow_file(workflow_file: str) -> WorkflowDefinition:
    """Load a YAML/JSON workflow file, exiting with a message on error."""
    try:
        with open(workflow_file) as f:
            workflow_dict = yaml.safe_load(f)
        if not isinstance(workflow_dict, dict):
            console.print(
                f"[red]Error: Invalid content in '{workflow_file}'. "
                f"Expected a mapping, got {type(workflow_dict).__name__}.[/red]"
            )
            sys.exit(1)
        return WorkflowDefinition.model_validate(workflow_dict)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing file '{workflow_file}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def parse_input(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"--input must be JSON: {e}") from e


def print_summary(summary: RunSummary) -> None:
    table = Table(title=f"Run {summary.run_id}")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")

    skipped = set(summary.skipped_nodes)
    for node_id in summary.execution_order:
        result = summary.node_results.get(node_id)
        if result is None:
            status = "[yellow]skipped[/]" if node_id in skipped else "[dim]not run[/]"
            table.add_row(escape(node_id), status, "-", "")
            continue
        status = "[green]success[/]" if result.success else f"[red]{result.error_kind or 'failed'}[/]"
        table.add_row(
            escape(node_id), status, f"{result.duration_ms}ms", escape(result.error or "")
        )
    console.print(table)

    color = STATUS_COLORS.get(summary.status.value, "white")
    console.print(f"[bold]Status:[/] [{color}]{summary.status.value}[/]")
    if summary.error:
        console.print(f"[bold]Error:[/] {escape(summary.error)}")


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """nodeflow - workflow execution engine."""
    pass


@main.command()
def init() -> None:
    """Initialize a project directory for nodeflow."""
    config_path = get_repo_path() / ".nodeflow" / "config.yaml"
    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return
    write_default_config(get_repo_path())
    console.print(f"[green]Created {config_path}[/green]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow file and show its execution plan."""
    workflow = load_workflow_file(workflow_file)
    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    graph = build_execution_graph(workflow)
    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")
    console.print(f"  Order: {escape(' -> '.join(plan(graph)))}")
    for i, level in enumerate(parallel_levels(graph)):
        console.print(f"  Level {i}: {escape(', '.join(level))}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--input", "input_json", help="Initial input as JSON")
@click.option("--live", is_flag=True, help="Print events as they happen")
def run(workflow_file: str, input_json: str | None, live: bool) -> None:
    """Execute a workflow file in this process."""
    workflow = load_workflow_file(workflow_file)
    initial_input = parse_input(input_json)
    engine = get_engine()
    run_id = str(uuid.uuid4())

    async def execute() -> RunSummary:
        task = asyncio.create_task(
            engine.coordinator.execute_workflow(
                workflow, initial_input, RunOptions(run_id=run_id, initiator="cli")
            )
        )
        if live:
            # End the event stream even if the run fails before run:complete
            task.add_done_callback(lambda _: engine.monitor.close(run_id))
            async for event in engine.monitor.subscribe(run_id):
                if event.type == "ping":
                    continue
                detail = event.data.get("nodeId") or event.data.get("status") or ""
                console.print(f"[dim]{event.timestamp:%H:%M:%S}[/] {event.type} {escape(str(detail))}")
        return await task

    try:
        summary = asyncio.run(execute())
    except GraphError as e:
        console.print(f"[red]Invalid workflow graph:[/red] {escape(str(e))}")
        sys.exit(1)

    print_summary(summary)
    if summary.status != RunStatus.COMPLETED:
        sys.exit(1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def save(workflow_file: str) -> None:
    """Store a workflow file so it can be submitted or scheduled."""
    workflow = load_workflow_file(workflow_file)
    engine = get_engine()
    try:
        engine.store.save_workflow(workflow)
    except NodeflowError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]Saved workflow '{escape(workflow.id)}'[/green]")


@main.command()
@click.argument("workflow_id")
@click.option("--input", "input_json", help="Initial input as JSON")
@click.option("--priority", default=0, show_default=True, help="Higher runs first")
def submit(workflow_id: str, input_json: str | None, priority: int) -> None:
    """Queue a run of a stored workflow."""
    initial_input = parse_input(input_json)
    engine = get_engine()
    try:
        engine.store.load_workflow(workflow_id)
    except NodeflowError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    run_id = engine.queue.submit(workflow_id, initial_input, priority=priority)
    console.print(f"[blue]Queued run {run_id}[/blue]")


@main.command()
@click.option("--size", type=int, help="Number of concurrent workers")
@click.option("--once", is_flag=True, help="Drain the queue and exit")
def worker(size: int | None, once: bool) -> None:
    """Process queued runs (and fire scheduled triggers unless --once)."""
    engine = get_engine()
    if size:
        engine.pool.size = size

    if once:
        engine.queue.recover_stale(engine.pool.stale_after)
        processed = asyncio.run(engine.pool.drain())
        console.print(f"[green]Processed {processed} run(s)[/green]")
        return

    async def serve_forever():
        engine.pool.start()
        try:
            await engine.triggers.run_forever(engine.config.trigger_poll_interval)
        finally:
            await engine.pool.stop()

    console.print(f"[blue]Worker pool of {engine.pool.size} started. Ctrl+C to stop.[/blue]")
    try:
        asyncio.run(serve_forever())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@main.command()
def nodes() -> None:
    """List registered node types."""
    engine = get_engine()
    table = Table(title="Node Types")
    table.add_column("Type", style="cyan")
    table.add_column("Category", style="green")
    table.add_column("Kind")
    table.add_column("Version", justify="right")
    table.add_column("Description", style="white")

    for category, entries in sorted(engine.registry.group_by_category().items()):
        for entry in entries:
            table.add_row(
                entry.type_key,
                category,
                entry.kind,
                str(entry.version),
                entry.description,
            )
    console.print(table)


@main.command()
@click.option("--workflow-id", "-w", help="Filter by workflow ID")
@click.option("--limit", default=20, show_default=True)
def runs(workflow_id: str | None, limit: int) -> None:
    """Show recent runs."""
    engine = get_engine()
    table = Table(title="Recent Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Started")
    for summary in engine.store.list_runs(workflow_id, limit):
        color = STATUS_COLORS.get(summary.status.value, "white")
        table.add_row(
            summary.run_id,
            escape(summary.workflow_id),
            f"[{color}]{summary.status.value}[/]",
            summary.started_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Start the HTTP API with workers and triggers."""
    import uvicorn

    from nodeflow.studio.server import create_app

    engine = get_engine()
    uvicorn.run(create_app(engine), host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    from nodeflow import __version__

    console.print(f"nodeflow v{__version__}")


if __name__ == "__main__":
    main()
