#!/usr/bin/env python3
"""
CLI for Blockflow.

Usage:
    blockflow validate workflow.json      # Serialize and validate a workflow file
    blockflow run workflow.json -i '{"name": "Ada"}'
    blockflow config                      # Show effective configuration
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree
from rich import box

# Load .env before importing blockflow modules
load_dotenv()

console = Console()

# Global verbose flag
VERBOSE = False


def _load_workflow(path: Path) -> Any:
    from blockflow.compiler.parse import parse_workflow_state

    return parse_workflow_state(path.read_text(encoding="utf-8"))


def _fail(message: str, exception: Optional[Exception] = None, as_json: bool = False) -> None:
    from shared.error_handling import create_error_response

    if as_json:
        click.echo(json.dumps(create_error_response(message, exception if VERBOSE else None), indent=2))
    else:
        console.print(f"[bold red]Error:[/bold red] {message}")
        if VERBOSE and exception is not None:
            console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="blockflow")
@click.option('--verbose', '-v', is_flag=True, help='Show full error tracebacks for debugging')
def cli(verbose: bool):
    """
    Blockflow - compile and run block workflows.

    \b
    Commands:
      validate  - Serialize a workflow and report structural problems
      run       - Execute a workflow and print its result
      config    - Show current configuration
    """
    global VERBOSE
    VERBOSE = verbose


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--json', 'as_json', is_flag=True, help='Print the execution plan as JSON')
def validate(workflow_file: Path, as_json: bool):
    """
    Validate a workflow file.

    Runs the serializer with validation enabled; exits non-zero on the first
    structural problem (dangling edge, nested container, missing required value).
    """
    from blockflow.compiler.serializer import serialize
    from blockflow.errors import ValidationError
    from shared.error_handling import create_success_response

    try:
        graph = _load_workflow(workflow_file)
        plan = serialize(
            graph.blocks,
            graph.edges,
            graph.loops,
            graph.parallels,
            validate=True,
            whiles=graph.whiles,
        )
    except ValidationError as e:
        _fail(str(e), e, as_json)
        return

    if as_json:
        payload = create_success_response({"plan": plan.model_dump(mode="json", by_alias=True)})
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(title=f"Execution plan: {workflow_file.name}", box=box.ROUNDED)
    table.add_column("Block", style="cyan")
    table.add_column("Type")
    table.add_column("Container", style="dim")
    for block in plan.blocks:
        table.add_row(block.display_name, block.type, block.parent_id or "")
    console.print(table)

    containers = len(plan.loops) + len(plan.parallels) + len(plan.whiles)
    console.print(
        f"[green]✓[/green] {len(plan.blocks)} blocks, {len(plan.connections)} connections, "
        f"{containers} containers"
    )


def _print_spans(result) -> None:
    tree = Tree("[bold]Trace[/bold]")

    def add(node, span) -> None:
        style = {"success": "green", "error": "red"}.get(span.status, "dim")
        branch = node.add(f"[{style}]{span.name}[/{style}] [dim]{span.duration_ms:.1f}ms[/dim]")
        for child in span.children:
            add(branch, child)

    for span in result.trace_spans:
        add(tree, span)
    console.print(tree)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--input', '-i', 'input_json', default=None, help='Initial input as a JSON document')
@click.option('--user', '-u', 'user_id', default='local', help='User id the run is attributed to')
@click.option('--start', 'start_block_id', default=None, help='Block id to start from')
@click.option('--json', 'as_json', is_flag=True, help='Print the full ExecutionResult as JSON')
def run(workflow_file: Path, input_json: Optional[str], user_id: str, start_block_id: Optional[str], as_json: bool):
    """
    Execute a workflow file.

    Environment variables referenced as {{NAME}} are read from the process
    environment (and .env).
    """
    import os

    from blockflow.runtime.execution import run_workflow
    from blockflow.runtime.services import StaticEnvironmentProvider

    try:
        initial_input = json.loads(input_json) if input_json else None
    except json.JSONDecodeError as e:
        _fail(f"--input is not valid JSON: {e}", e, as_json)
        return

    result = asyncio.run(
        run_workflow(
            workflow_file.read_text(encoding="utf-8"),
            user_id=user_id,
            initial_input=initial_input,
            workflow_id=workflow_file.stem,
            start_block_id=start_block_id,
            trigger="cli",
            environment_provider=StaticEnvironmentProvider({user_id: dict(os.environ)}),
        )
    )

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json", by_alias=True), indent=2))
    else:
        _print_spans(result)
        if result.success:
            console.print(Panel.fit(
                Text(json.dumps(result.output, indent=2, default=str)),
                title="[green]Output[/green]",
                border_style="green",
            ))
        else:
            console.print(f"[bold red]Run failed:[/bold red] {result.error}")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.option('--format', '-f', 'fmt', type=click.Choice(['json', 'table']), default='table', help='Output format')
def config(fmt: str):
    """
    Show current configuration.

    Displays configuration values loaded from BLOCKFLOW_* environment variables and .env file.
    """
    from shared.config import config as blockflow_config

    values = blockflow_config.model_dump(mode="json")
    if fmt == 'json':
        click.echo(json.dumps(values, indent=2))
        return

    table = Table(title="Blockflow Configuration", box=box.ROUNDED)
    table.add_column("Setting", style="cyan")
    table.add_column("Env Variable", style="dim")
    table.add_column("Value")
    for name, value in values.items():
        display_value = "[dim]not set[/dim]" if value is None else str(value)
        table.add_row(name, f"BLOCKFLOW_{name.upper()}", display_value)
    console.print(table)


if __name__ == '__main__':
    cli()
