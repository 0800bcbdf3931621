"""Main CLI for the decision tree engine."""

import json
from pathlib import Path
from typing import Any, Dict, Tuple

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..core.config import create_store, load_config
from ..core.errors import EngineError, GraphValidationError
from ..core.models import DecisionTree, ExecutionStatus
from ..errors.translator import ErrorTranslator
from ..utils.locks import LockTimeoutError
from ..utils.rich_logging import setup_rich_logging
from ..workflow.definitions import load_tree_definition
from ..workflow.engine import WorkflowEngine


console = Console()
translator = ErrorTranslator()

STATUS_STYLES = {
    "pending": "dim",
    "in_progress": "cyan",
    "complete": "green",
    "skipped": "yellow",
    "failed": "red",
}


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "-c", "config_path", default="decision-engine.yaml",
              help="Config file (relative to the workspace)")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, workspace, config_path, log_level):
    """Decision Engine - decision-tree-driven workflow runs."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Path(workspace)
    ctx.obj["config_path"] = Path(workspace) / config_path
    ctx.obj["log_level"] = log_level


def _get_engine(ctx) -> WorkflowEngine:
    if "engine" in ctx.obj:
        return ctx.obj["engine"]

    workspace = ctx.obj["workspace"]
    config = load_config(ctx.obj["config_path"]).model_copy(deep=True)
    if not config.storage.data_dir.is_absolute():
        config.storage.data_dir = workspace / config.storage.data_dir
    if not config.logging.log_dir.is_absolute():
        config.logging.log_dir = workspace / config.logging.log_dir

    engine_logger = setup_rich_logging(
        "decision-engine",
        log_dir=config.logging.log_dir,
        log_level=ctx.obj["log_level"] or config.logging.level,
        use_file=config.logging.use_file,
        use_json=config.logging.use_json,
    )
    engine = WorkflowEngine(create_store(config), config, engine_logger=engine_logger)
    ctx.obj["engine"] = engine
    return engine


def _fail(ctx, error: Exception):
    console.print(translator.format_for_cli(translator.translate(error)))
    ctx.exit(1)


def _parse_pairs(pairs: Tuple[str, ...], raw_json: str = None) -> Dict[str, Any]:
    """Build a context dict from KEY=VALUE pairs and an optional JSON object.

    Values are parsed as YAML scalars so ``count=3`` gives an int and
    ``ready=true`` a bool.
    """
    data: Dict[str, Any] = {}
    if raw_json:
        parsed = json.loads(raw_json)
        if not isinstance(parsed, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--json")
        data.update(parsed)
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--set")
        key, value = pair.split("=", 1)
        data[key.strip()] = yaml.safe_load(value) if value else ""
    return data


def _status_text(status) -> str:
    if status is None:
        return "-"
    value = ExecutionStatus(status).value
    return f"[{STATUS_STYLES.get(value, '')}]{value}[/]"


@cli.command()
@click.argument("definition_file", type=click.Path(path_type=Path))
@click.option("--strict", is_flag=True, help="Reject unknown condition types")
@click.pass_context
def validate(ctx, definition_file, strict):
    """Validate a tree definition file without publishing it."""
    from ..workflow.graph import build_graph

    try:
        definition = load_tree_definition(definition_file)
        draft = DecisionTree(id="draft", project_id="draft", name=definition.name)
        rows = definition.to_rows(draft)
        graph = build_graph(draft, rows.operations, rows.conditions, strict_condition_types=strict)
    except GraphValidationError as e:
        console.print(f"[bold red]✗ {definition_file} is not valid[/]")
        for problem in e.problems:
            console.print(f"  - {problem}")
        ctx.exit(1)
    except (FileNotFoundError, ValidationError) as e:
        _fail(ctx, e)

    table = Table(title=definition.name)
    table.add_column("Phase")
    table.add_column("Operation")
    table.add_column("Depends on")
    table.add_column("Branches")
    for phase in graph.phases():
        for node in graph.operations_in_phase(phase):
            branches = ", ".join(
                f"{c.condition_type}->{c.next_operation_id or '-'}" for c in node.conditions
            )
            table.add_row(
                phase,
                node.id,
                ", ".join(sorted(node.dependencies)) or "-",
                branches or "-",
            )
    console.print(table)
    console.print(f"[green]✓ {definition_file} is valid ({len(graph)} operations)[/]")


@cli.command()
@click.argument("project_id")
@click.argument("definition_file", type=click.Path(path_type=Path))
@click.option("--user", "-u", default=None, help="Recorded as created_by")
@click.option("--activate/--no-activate", default=True, help="Make this the active version")
@click.pass_context
def publish(ctx, project_id, definition_file, user, activate):
    """Publish a tree definition as a new version of a project."""
    try:
        definition = load_tree_definition(definition_file)
        tree = _get_engine(ctx).publish_definition(
            project_id, definition, created_by=user, activate=activate
        )
    except (EngineError, FileNotFoundError, ValidationError, LockTimeoutError) as e:
        _fail(ctx, e)

    state = "active" if tree.is_active else "inactive"
    console.print(f"[green]✓ Published {tree.name} v{tree.version} ({state})[/]")
    console.print(f"  Tree id: {tree.id}")


@cli.command()
@click.argument("project_id")
@click.pass_context
def trees(ctx, project_id):
    """List the tree versions of a project, newest first."""
    versions = _get_engine(ctx).list_trees(project_id)
    if not versions:
        console.print(f"[yellow]No trees published for {project_id}[/]")
        return

    table = Table()
    table.add_column("Version", justify="right")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Created")
    for tree in versions:
        table.add_row(
            str(tree.version),
            tree.id,
            tree.name,
            "[green]●[/]" if tree.is_active else "",
            tree.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument("project_id")
@click.option("--user", "-u", required=True, help="User starting the run")
@click.option("--set", "pairs", multiple=True, help="Start context entry KEY=VALUE")
@click.option("--json", "raw_json", default=None, help="Start context as a JSON object")
@click.option("--run-id", default=None, help="Use this id instead of a generated one")
@click.pass_context
def start(ctx, project_id, user, pairs, raw_json, run_id):
    """Start a run against the project's active tree."""
    try:
        context = _parse_pairs(pairs, raw_json)
        run = _get_engine(ctx).start_run(project_id, user, context, run_id=run_id)
    except (EngineError, LockTimeoutError, ValueError) as e:
        _fail(ctx, e)

    console.print(f"[green]✓ Started run {run.id}[/] (tree {run.decision_tree_id})")


@cli.command()
@click.argument("run_id")
@click.pass_context
def eligible(ctx, run_id):
    """Show the operations that may be worked on now."""
    try:
        operations = _get_engine(ctx).get_eligible_operations(run_id)
    except (EngineError, LockTimeoutError, ValueError) as e:
        _fail(ctx, e)

    if not operations:
        console.print("[yellow]Nothing is eligible. Check 'progress' for blocked or finished work.[/]")
        return

    table = Table(title=f"Eligible operations for {run_id}")
    table.add_column("Operation")
    table.add_column("Phase")
    table.add_column("Name")
    table.add_column("Optional")
    table.add_column("Group")
    table.add_column("Status")
    for op in operations:
        table.add_row(
            op.operation_id,
            op.phase_name,
            op.operation_name,
            "yes" if op.is_optional else "",
            op.parallel_group or "",
            _status_text(op.status),
        )
    console.print(table)


@cli.command()
@click.argument("run_id")
@click.argument("operation_id")
@click.argument("status", type=click.Choice([s.value for s in ExecutionStatus]))
@click.option("--user", "-u", default=None, help="Acting user (defaults to the run's user)")
@click.option("--set", "pairs", multiple=True, help="Decision data entry KEY=VALUE")
@click.option("--json", "raw_json", default=None, help="Decision data as a JSON object")
@click.pass_context
def record(ctx, run_id, operation_id, status, user, pairs, raw_json):
    """Record a status for an operation of a run."""
    try:
        data = _parse_pairs(pairs, raw_json)
        result = _get_engine(ctx).record_decision(
            run_id, operation_id, status, data, user_id=user
        )
    except (EngineError, LockTimeoutError, ValueError) as e:
        _fail(ctx, e)

    if not result.ok:
        _fail(ctx, result.error)

    entry = result.record
    note = " (already recorded)" if result.deduplicated else ""
    console.print(f"[green]✓ {operation_id} -> {entry.execution_status.value}{note}[/]")
    if entry.chosen_path:
        target = entry.next_operation_id or "-"
        console.print(f"  Branch: {entry.chosen_path} -> {target}")
    if result.unresolved is not None:
        friendly = translator.translate(result.unresolved)
        console.print(translator.format_for_cli(friendly))


@cli.command()
@click.argument("run_id")
@click.pass_context
def history(ctx, run_id):
    """Show every decision recorded for a run."""
    try:
        records = _get_engine(ctx).get_history(run_id)
    except (EngineError, LockTimeoutError, ValueError) as e:
        _fail(ctx, e)

    table = Table(title=f"History of {run_id}")
    table.add_column("When")
    table.add_column("Operation")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Path")
    table.add_column("User")
    table.add_column("Data")
    for entry in records:
        table.add_row(
            entry.execution_timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.operation_id,
            entry.phase_name,
            _status_text(entry.execution_status),
            entry.chosen_path or "",
            entry.user_id,
            json.dumps(entry.decision_data, default=str) if entry.decision_data else "",
        )
    console.print(table)


@cli.command()
@click.argument("run_id")
@click.pass_context
def progress(ctx, run_id):
    """Show per-phase progress of a run."""
    try:
        report = _get_engine(ctx).get_progress(run_id)
    except (EngineError, LockTimeoutError, ValueError) as e:
        _fail(ctx, e)

    table = Table(title=f"Progress of {run_id}")
    table.add_column("Phase")
    table.add_column("Done", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Active", justify="right")
    table.add_column("Left", justify="right")
    for phase in report.phases:
        table.add_row(
            phase.phase_name,
            str(phase.complete),
            str(phase.skipped + phase.bypassed),
            str(phase.failed),
            str(phase.in_progress),
            str(phase.remaining),
        )
    console.print(table)

    if report.unresolved:
        console.print(f"[red]Stuck at: {', '.join(report.unresolved)}[/]")
    if report.is_finished:
        console.print(f"[green]✓ Run finished ({report.percent_complete}% settled)[/]")
    else:
        console.print(f"{report.percent_complete}% settled, eligible now: {', '.join(report.eligible) or 'none'}")


if __name__ == "__main__":
    cli()
