"""CLI entry point for stepflow.

Commands:
- stepflow validate: Check a workflow definition and show its graph
- stepflow run: Execute a workflow and print the node states
- stepflow steps: List available action keys
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from stepflow import __version__
from stepflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from stepflow.core.config import load_config
from stepflow.core.context import RunStatus
from stepflow.core.dispatcher import StepDispatcher
from stepflow.core.exceptions import ConfigError, StructuralError
from stepflow.core.graph_schema import WorkflowDefinition
from stepflow.core.scheduler import RunScheduler

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_definition(workflow_file: str) -> WorkflowDefinition | None:
    """Load a JSON or YAML workflow file, printing problems instead of raising"""
    try:
        with open(workflow_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise TypeError("workflow file must contain a mapping")
        return WorkflowDefinition.model_validate(data)
    except yaml.YAMLError as e:
        console.print(f"[red]Invalid YAML/JSON:[/] {escape(str(e))}")
    except ValidationError as e:
        console.print("[red]Schema validation failed:[/]")
        for err in e.errors():
            location = ".".join(str(p) for p in err["loc"])
            console.print(f"  [red]• {escape(location)}: {escape(err['msg'])}[/]")
    except (TypeError, ValueError) as e:
        console.print(f"[red]Invalid workflow data:[/] {escape(str(e))}")
    return None


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """stepflow - workflow execution engine.

    Runs directed graphs of trigger, action and control nodes.
    """
    pass


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file: str) -> None:
    """Validate a workflow definition and show its graph."""
    definition = _load_definition(workflow_file)
    if definition is None:
        sys.exit(1)

    console.print(TerminalGraphRenderer(console).render_as_tree(definition))
    console.print()
    console.print(f"[bold]Nodes:[/] {len(definition.nodes)}")
    console.print(f"[bold]Edges:[/] {len(definition.edges)}")

    errors = definition.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            # SECURITY: escape error messages that may contain user data
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)
    console.print("\n[green]✓ Workflow is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--input", "-i", "input_json", help="Trigger input as a JSON string")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Engine config file (highest precedence)",
)
@click.option("--strict", is_flag=True, help="Fail nodes on unresolved template references")
@click.option("--timeout", type=float, help="Run timeout in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(
    workflow_file: str,
    input_json: str | None,
    config_file: str | None,
    strict: bool,
    timeout: float | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Execute a workflow once and report the result."""
    _configure_logging(verbose)

    trigger_input: Any = None
    if input_json:
        try:
            trigger_input = json.loads(input_json)
        except json.JSONDecodeError as e:
            console.print(f"[red]--input is not valid JSON:[/] {escape(str(e))}")
            sys.exit(1)

    try:
        config = load_config(Path(config_file) if config_file else None, project_dir=Path.cwd())
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        sys.exit(1)
    updates: dict[str, Any] = {}
    if strict:
        updates["resolution_policy"] = "strict"
    if timeout is not None:
        updates["run_timeout"] = timeout
    if updates:
        config = config.model_copy(update=updates)

    definition = _load_definition(workflow_file)
    if definition is None:
        sys.exit(1)

    scheduler = RunScheduler(config=config)
    try:
        result = scheduler.run_until_complete(definition, trigger_input)
    except StructuralError as e:
        console.print("[red bold]Validation Errors:[/]")
        for error in e.errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_document(), indent=2))
    else:
        console.print(StatusTableRenderer(console).render_status_table(definition, result))
        if result.webhook_response is not None:
            body = json.dumps(result.webhook_response, default=str)
            console.print(f"[bold]Webhook response:[/] {escape(body)}")
        if result.error is not None:
            console.print(
                f"\n[red]Run failed ({result.error.kind.value}):[/] {escape(result.error.message)}"
            )
        else:
            console.print("\n[green]✓ Run completed[/]")

    if result.status != RunStatus.COMPLETED:
        sys.exit(1)


@main.command()
@click.option("--builtin-only", is_flag=True, help="Hide plugin integration steps")
def steps(builtin_only: bool) -> None:
    """List available action keys."""
    try:
        dispatcher = StepDispatcher(load_config(project_dir=Path.cwd()))
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        sys.exit(1)

    builtins = set(dispatcher.builtins)
    for key in dispatcher.available_steps(include_plugins=not builtin_only):
        origin = "built-in" if key in builtins else "plugin"
        console.print(f"  [cyan]{escape(key)}[/] [dim]({origin})[/]")


if __name__ == "__main__":
    main()
