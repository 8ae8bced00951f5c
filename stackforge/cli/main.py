"""
Stackforge CLI: declarative stacks from the command line.

Usage:
    stackforge validate      Build the resource graph without touching the platform
    stackforge plan          Show the changes an apply would make
    stackforge apply         Converge the platform to the declared stack
    stackforge destroy       Delete resources recorded in state
    stackforge output        Show stack outputs from last-known state
    stackforge graph         Show the dependency graph and apply levels
    stackforge state         Show recorded resources
    stackforge config        Show engine configuration
"""

import json
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..config import get_config
from ..engine import StackRunner
from ..errors import (
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    SensitiveValueError,
    StackforgeError,
)
from ..graph import DependencyResolver, GraphBuilder
from ..logging import redact_text
from ..platform import get_platform
from ..stack import Stack
from ..stacks import get_stack
from ..state import StateStore
from ..types import Action, ApplyResult, OutputValue, Plan, ResourceEvent, ResourceStatus

console = Console()
cli = typer.Typer(
    name="stackforge",
    help="Declarative resource-graph convergence for cloud stacks.",
    no_args_is_help=True,
)

VAR_ENV_PREFIX = "STACKFORGE_VAR_"

EXIT_FAILED = 1
EXIT_INVALID = 2

_ACTION_STYLES = {
    Action.NOOP: "dim",
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.REPLACE: "magenta",
    Action.DELETE: "red",
}

_STATUS_STYLES = {
    ResourceStatus.APPLYING: "cyan",
    ResourceStatus.APPLIED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.SKIPPED: "yellow",
    ResourceStatus.DESTROYING: "cyan",
    ResourceStatus.DESTROYED: "red",
}


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def collect_variables(
    stack: Stack, var_file: Optional[str] = None, assignments: Optional[List[str]] = None
) -> Dict[str, Any]:
    """Merge variable bindings: environment, then var file, then --var."""
    bindings: Dict[str, Any] = {}

    for name in stack.variables:
        value = os.getenv(f"{VAR_ENV_PREFIX}{name}")
        if value is not None:
            bindings[name] = value

    if var_file:
        try:
            data = json.loads(Path(var_file).read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError("var_file", var_file, f"a readable JSON object ({e})")
        if not isinstance(data, dict):
            raise ConfigurationError("var_file", var_file, "a JSON object of name: value")
        bindings.update(data)

    for item in assignments or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            # The value may be a secret; only the name is reported
            raise ConfigurationError("--var", name or "(empty)", "name=value")
        bindings[name.strip()] = value

    return bindings


def _runner(
    stack: Stack,
    bindings: Dict[str, Any],
    state_file: Optional[str],
    simulate: Optional[str],
    on_event=None,
) -> StackRunner:
    platform = get_platform(simulate_file=simulate, region=bindings.get("region"))
    return StackRunner(stack, platform=platform, state_file=state_file, on_event=on_event)


def _handle_error(error: StackforgeError) -> typer.Exit:
    invalid = isinstance(
        error, (ConfigurationError, DanglingReferenceError, CycleError, SensitiveValueError)
    )
    label = "Invalid stack" if invalid else "Error"
    console.print(f"[red]{label}:[/red] {escape(redact_text(str(error)))}")
    return typer.Exit(code=EXIT_INVALID if invalid else EXIT_FAILED)


def _print_event(event: ResourceEvent):
    style = _STATUS_STYLES.get(event.status, "white")
    note = f" [dim]{escape(redact_text(event.note))}[/dim]" if event.note else ""
    console.print(
        f"  [{style}]{event.status.name.lower():<10}[/{style}] {escape(event.address)}{note}"
    )


def _render_plan(plan: Plan, title: str):
    counts = plan.counts()
    console.print(
        Panel(
            f"Plan ID: {plan.plan_id}\n"
            f"Create: {counts['create']}  Update: {counts['update']}  "
            f"Replace: {counts['replace']}  Delete: {counts['delete']}  "
            f"No-op: {counts['no-op']}",
            title=title,
            border_style="yellow",
        )
    )

    table = Table(box=box.ROUNDED)
    table.add_column("#", style="dim")
    table.add_column("Action")
    table.add_column("Address", style="bold")
    table.add_column("Changes")
    table.add_column("Reason")

    for i, change in enumerate(plan.changes):
        style = _ACTION_STYLES[change.action]
        attributes = ", ".join(
            f"{c.name} (forces replacement)" if c.forces_replacement else c.name
            for c in change.changes
        )
        table.add_row(
            str(i + 1),
            f"[{style}]{change.action.value}[/{style}]",
            escape(change.address),
            escape(attributes),
            escape(change.reason),
        )

    console.print(table)

    if plan.drifted:
        console.print(
            f"[yellow]Drift detected on:[/yellow] {escape(', '.join(plan.drifted))}\n"
            "[dim]Resolve it by hand or set OVERWRITE_DRIFT=true to converge it back.[/dim]"
        )
    elif not plan.has_changes:
        console.print("[green]No changes. The platform matches the declared stack.[/green]")


def _render_outputs(outputs: Dict[str, OutputValue]):
    table = Table(title="Outputs", box=box.ROUNDED)
    table.add_column("Name", style="bold")
    table.add_column("Value", overflow="fold")

    for name, output in outputs.items():
        value = escape(output.display())
        table.add_row(name, value if output.available else f"[yellow]{value}[/yellow]")

    console.print(table)


def _render_result(result: ApplyResult):
    table = Table(title=f"{result.operation.capitalize()} Summary", box=box.ROUNDED)
    table.add_column("Outcome", style="bold")
    table.add_column("Count", justify="right")
    table.add_column("Resources")

    for outcome, addresses in result.summary().items():
        if addresses:
            table.add_row(
                outcome.replace("_", " "), str(len(addresses)), escape(", ".join(addresses))
            )

    console.print(table)

    for address in result.failed:
        message = result.results[address].error_message or "unknown error"
        console.print(f"[red]{escape(address)}:[/red] {escape(redact_text(message))}")

    if result.cancelled:
        console.print("[yellow]Cancelled; in-flight resources were allowed to finish.[/yellow]")


def _run_cancellable(runner: StackRunner, fn, *args, **kwargs):
    """Run *fn* with Ctrl-C mapped to cooperative cancellation."""
    try:
        previous = signal.signal(signal.SIGINT, lambda signum, frame: runner.cancel())
    except ValueError:
        # Signal handlers can only be installed from the main thread
        return fn(*args, **kwargs)
    try:
        return fn(*args, **kwargs)
    finally:
        signal.signal(signal.SIGINT, previous)


def _finish(result: ApplyResult, output_json: bool):
    if output_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _render_result(result)
        if result.outputs:
            _render_outputs(result.outputs)

    if not result.succeeded:
        raise typer.Exit(code=EXIT_FAILED)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


@cli.command()
def validate(
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Build and check the resource graph without contacting the platform."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        built = GraphBuilder().build(stack, bindings, resolve_lookups=False)
    except StackforgeError as e:
        raise _handle_error(e)

    stats = built.graph.get_statistics()
    if output_json:
        typer.echo(json.dumps({"valid": True, "stack": stack.name, "statistics": stats}, indent=2))
        return

    console.print(f"  [green]PASS[/green] Stack {escape(stack.name)} is valid")
    table = Table(show_header=False, box=box.SIMPLE)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in stats.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


@cli.command()
def plan(
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    targets: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Limit the plan to this resource address (repeatable)"
    ),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    simulate: Optional[str] = typer.Option(
        None, "--simulate", help="Use the in-memory platform persisted to this file"
    ),
    destroy: bool = typer.Option(False, "--destroy", help="Plan a destroy instead"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the changes an apply (or destroy) would make."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        runner = _runner(stack, bindings, state_file, simulate)
        if destroy:
            run_plan = runner.plan_destroy(bindings, targets or None)
        else:
            run_plan = runner.plan(bindings, targets or None)
    except StackforgeError as e:
        raise _handle_error(e)

    if output_json:
        typer.echo(json.dumps(run_plan.plan.to_dict(), indent=2, default=str))
        return

    _render_plan(run_plan.plan, "Destroy Plan" if destroy else "Execution Plan")


@cli.command()
def apply(
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    targets: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Limit the apply to this resource address (repeatable)"
    ),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    simulate: Optional[str] = typer.Option(
        None, "--simulate", help="Use the in-memory platform persisted to this file"
    ),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Converge the platform to the declared stack."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        runner = _runner(
            stack, bindings, state_file, simulate, on_event=None if output_json else _print_event
        )
        run_plan = runner.plan(bindings, targets or None)
    except StackforgeError as e:
        raise _handle_error(e)

    if not output_json:
        _render_plan(run_plan.plan, "Execution Plan")
    if not auto_approve:
        typer.confirm("Apply these changes?", abort=True)

    try:
        result = _run_cancellable(runner, runner.apply, run_plan=run_plan)
    except StackforgeError as e:
        raise _handle_error(e)

    _finish(result, output_json)


@cli.command()
def destroy(
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    targets: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Destroy this resource and its dependents (repeatable)"
    ),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    simulate: Optional[str] = typer.Option(
        None, "--simulate", help="Use the in-memory platform persisted to this file"
    ),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Delete resources recorded in state, dependents first."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        runner = _runner(
            stack, bindings, state_file, simulate, on_event=None if output_json else _print_event
        )
        run_plan = runner.plan_destroy(bindings, targets or None)
    except StackforgeError as e:
        raise _handle_error(e)

    if not output_json:
        _render_plan(run_plan.plan, "Destroy Plan")
    if not auto_approve:
        typer.confirm("Destroy these resources?", abort=True)

    try:
        result = _run_cancellable(runner, runner.destroy, run_plan=run_plan)
    except StackforgeError as e:
        raise _handle_error(e)

    _finish(result, output_json)


@cli.command()
def output(
    name: Optional[str] = typer.Argument(None, help="Show only this output"),
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    simulate: Optional[str] = typer.Option(
        None, "--simulate", help="Use the in-memory platform persisted to this file"
    ),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show stack outputs from last-known state."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        outputs = _runner(stack, bindings, state_file, simulate).outputs(bindings)
    except StackforgeError as e:
        raise _handle_error(e)

    if name is not None:
        if name not in outputs:
            console.print(f"[red]Error:[/red] no output named {escape(name)}")
            raise typer.Exit(code=EXIT_FAILED)
        outputs = {name: outputs[name]}

    if output_json:
        typer.echo(json.dumps({n: o.to_dict() for n, o in outputs.items()}, indent=2, default=str))
    elif name is not None:
        typer.echo(outputs[name].display())
    else:
        _render_outputs(outputs)

    if not all(o.available for o in outputs.values()):
        raise typer.Exit(code=EXIT_FAILED)


@cli.command()
def graph(
    stack_name: str = typer.Option("ollama-webui", "--stack", "-s", help="Bundled stack"),
    variables: Optional[List[str]] = typer.Option(
        None, "--var", "-v", help="Variable binding name=value (repeatable)"
    ),
    var_file: Optional[str] = typer.Option(None, "--var-file", help="JSON variable bindings"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the dependency graph and the levels resources apply in."""
    try:
        stack = get_stack(stack_name)
        bindings = collect_variables(stack, var_file, variables)
        built = GraphBuilder().build(stack, bindings, resolve_lookups=False)
        resolver = DependencyResolver(built)
        levels = resolver.levels()
    except StackforgeError as e:
        raise _handle_error(e)

    if output_json:
        data = built.graph.to_dict()
        data["apply_levels"] = levels
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    table = Table(title=f"Apply Levels: {escape(stack.name)}", box=box.ROUNDED)
    table.add_column("Level", style="dim", justify="right")
    table.add_column("Resource", style="bold")
    table.add_column("Depends on")

    for i, level in enumerate(levels):
        for address in level:
            table.add_row(
                str(i),
                escape(address),
                escape(", ".join(resolver.resource_dependencies(address))),
            )

    console.print(table)


@cli.command()
def state(
    address: Optional[str] = typer.Argument(None, help="Show one recorded resource"),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show resources recorded in the state file."""
    config = get_config()
    store = StateStore(state_file or config.state.state_file, backup=config.state.backup)
    try:
        current = store.load()
    except StackforgeError as e:
        raise _handle_error(e)

    if address is not None:
        record = current.get(address)
        if record is None:
            console.print(f"[red]Error:[/red] {escape(address)} is not in state")
            raise typer.Exit(code=EXIT_FAILED)
        typer.echo(record.model_dump_json(indent=2))
        return

    if output_json:
        typer.echo(current.model_dump_json(indent=2))
        return

    console.print(
        Panel(
            f"Path: {store.path}\nSerial: {current.serial}\nLineage: {current.lineage}\n"
            f"Resources: {len(current.resources)}",
            title="State",
            border_style="blue",
        )
    )

    table = Table(box=box.ROUNDED)
    table.add_column("Address", style="bold")
    table.add_column("Physical ID", overflow="fold")
    table.add_column("Flags")

    for record in current.resources.values():
        flags = [
            flag
            for flag, enabled in (
                ("tainted", record.tainted),
                ("create-before-destroy", record.create_before_destroy),
                ("prevent-destroy", record.prevent_destroy),
            )
            if enabled
        ]
        table.add_row(escape(record.address), escape(record.physical_id), ", ".join(flags))

    console.print(table)


@cli.command()
def config(
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show engine configuration and validation warnings."""
    current = get_config()
    data = current.to_dict()
    warnings = current.validate()

    if output_json:
        typer.echo(json.dumps({**data, "warnings": warnings}, indent=2))
        return

    for section in ("platform", "execution", "retry", "state", "logging"):
        table = Table(show_header=False, box=box.SIMPLE)
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        for key, value in data[section].items():
            table.add_row(key.replace("_", " "), str(value))
        console.print(Panel(table, title=section.capitalize(), border_style="blue"))

    for warning in warnings:
        console.print(f"  [yellow]WARN[/yellow] {escape(warning)}")


if __name__ == "__main__":
    cli()
