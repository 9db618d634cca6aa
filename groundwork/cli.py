"""
Command line interface for Groundwork.

    groundwork plan      [--out FILE] [--destroy]     exit 0 no changes, 2 changes, 1 error
    groundwork apply     [PLANFILE] [--auto-approve]
    groundwork destroy   [--auto-approve]
    groundwork state     list | show ADDR | rm ADDR
    groundwork output    [NAME] [--json]
    groundwork validate
    groundwork force-unlock LOCK_ID
"""

import json
import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Iterator, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import Settings
from .core import Action, ApplyResult, Engine, NodeState, Plan
from .core.variables import parse_var_flags
from .errors import GroundworkError, LockedStateError
from .utils import setup_logging, validate_project_is_groundwork

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Declarative infrastructure provisioning with dependency-ordered apply",
    no_args_is_help=True,
)
state_app = typer.Typer(help="Inspect and edit the state", no_args_is_help=True)
app.add_typer(state_app, name="state")

console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)

VarOption = Annotated[
    Optional[List[str]],
    typer.Option("--var", help="Set a variable as name=value (repeatable)"),
]
VarFileOption = Annotated[
    Optional[List[Path]],
    typer.Option("--var-file", help="Load variables from a .tfvars file (repeatable)"),
]
TargetOption = Annotated[
    Optional[List[str]],
    typer.Option("--target", help="Limit the operation to this resource address (repeatable)"),
]
ParallelismOption = Annotated[
    Optional[int],
    typer.Option("--parallelism", min=1, help="Maximum concurrent provider operations"),
]
BestEffortOption = Annotated[
    Optional[bool],
    typer.Option("--best-effort/--fail-fast", help="Attempt resources whose dependencies failed"),
]
RefreshOption = Annotated[
    Optional[bool],
    typer.Option("--refresh/--no-refresh", help="Read current resource state before planning"),
]
AutoApproveOption = Annotated[
    bool,
    typer.Option("--auto-approve", help="Skip the interactive confirmation"),
]

SYMBOLS = {
    Action.CREATE: "[green]+[/green]",
    Action.UPDATE: "[yellow]~[/yellow]",
    Action.REPLACE: "[magenta]-/+[/magenta]",
    Action.DESTROY: "[red]-[/red]",
    Action.NO_OP: " ",
}


@dataclass
class CliContext:
    project_path: Path
    settings: Settings


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    return typer.Exit(1)


@contextmanager
def _errors() -> Iterator[None]:
    """Turn engine errors into a message and exit code 1."""
    try:
        yield
    except LockedStateError as e:
        err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        lock_id = e.lock_info.get("id")
        if lock_id:
            err_console.print(f"If no other run is active, release it with: groundwork force-unlock {lock_id}")
        raise typer.Exit(1)
    except GroundworkError as e:
        raise _fail(str(e))


def _engine(
    ctx: typer.Context,
    var: Optional[List[str]] = None,
    var_file: Optional[List[Path]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Engine:
    cli: CliContext = ctx.obj
    if not validate_project_is_groundwork(str(cli.project_path)):
        raise _fail(f"No .tf files found in {cli.project_path}")
    return Engine(
        str(cli.project_path),
        settings=cli.settings,
        variables=parse_var_flags(var or []),
        var_files=[str(p) for p in var_file or []],
        cancel_event=cancel_event,
    )


def _confirm(engine: Engine, question: str):
    redactor = engine.redactor()

    def _ask(plan: Plan) -> bool:
        console.print(plan.render(redactor), markup=False)
        console.print()
        console.print(f"[bold]{question}[/bold]")
        console.print("  Only 'yes' will be accepted to approve.")
        answer = typer.prompt("  Enter a value", default="", show_default=False)
        return answer.strip() == "yes"

    return _ask


@contextmanager
def _cancellation(cancel_event: threading.Event) -> Iterator[None]:
    """First Ctrl-C stops new work; the second aborts."""

    def _handler(signum, frame):
        if cancel_event.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        cancel_event.set()
        err_console.print(
            "\n[yellow]Interrupt received. Waiting for in-flight operations to finish; "
            "press Ctrl-C again to abort.[/yellow]"
        )

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not in the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _progress(address: str, state: NodeState, detail: Any):
    if state == NodeState.IN_PROGRESS:
        console.print(f"{SYMBOLS.get(detail, ' ')} {address}: {detail.value} in progress...")
    elif state == NodeState.DONE and detail != Action.NO_OP:
        console.print(f"  {address}: [green]{detail.value} complete[/green]")
    elif state == NodeState.FAILED:
        console.print(f"  {address}: [red]failed[/red]")
    elif state == NodeState.CANCELLED:
        console.print(f"  {address}: [yellow]cancelled[/yellow]")


def _report(result: ApplyResult, verb: str):
    summary = result.summary()
    console.print()
    if result.success:
        console.print(
            f"[bold green]{verb} complete![/bold green] Resources: {summary[Action.CREATE]} added, "
            f"{summary[Action.UPDATE]} changed, {summary[Action.REPLACE]} replaced, "
            f"{summary[Action.DESTROY]} destroyed."
        )
        return

    for address, error in sorted(result.failures.items()):
        err_console.print(f"[bold red]Error:[/bold red] {address}: {escape(str(error))}")
    cancelled = result.addresses(NodeState.CANCELLED)
    if cancelled:
        err_console.print(f"[yellow]{len(cancelled)} resource(s) not started: {', '.join(cancelled)}[/yellow]")
    console.print(
        f"[bold red]{verb} incomplete.[/bold red] Resources: {summary[Action.CREATE]} added, "
        f"{summary[Action.UPDATE]} changed, {summary[Action.REPLACE]} replaced, "
        f"{summary[Action.DESTROY]} destroyed, {len(result.failures)} failed."
    )
    raise typer.Exit(1)


def _version_callback(value: bool):
    if value:
        console.print(f"groundwork {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    chdir: Annotated[
        Path,
        typer.Option("--chdir", "-C", help="Project directory containing .tf files", file_okay=False),
    ] = Path("."),
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = None,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
):
    settings = Settings()
    setup_logging(
        log_level=log_level or settings.get("log_level", "INFO"),
        log_file=bool(settings.get("log_file", False)),
    )
    ctx.obj = CliContext(project_path=chdir.resolve(), settings=settings)


@app.command()
def plan(
    ctx: typer.Context,
    out: Annotated[Optional[Path], typer.Option("--out", help="Save the plan to this file")] = None,
    destroy: Annotated[bool, typer.Option("--destroy", help="Plan destruction of all resources")] = False,
    var: VarOption = None,
    var_file: VarFileOption = None,
    target: TargetOption = None,
    refresh: RefreshOption = None,
):
    """Show what apply would change. Exits 0 with no changes, 2 with changes."""
    with _errors():
        engine = _engine(ctx, var, var_file)
        result = engine.plan(targets=target, destroy=destroy, refresh=refresh)
        console.print(result.render(engine.redactor()), markup=False)
        if out is not None:
            result.save(str(out))
            console.print(f"\nSaved the plan to {out}. Apply it with: groundwork apply {out}")

    if result.has_changes:
        raise typer.Exit(2)


@app.command()
def apply(
    ctx: typer.Context,
    plan_file: Annotated[Optional[Path], typer.Argument(help="Saved plan to apply")] = None,
    auto_approve: AutoApproveOption = False,
    var: VarOption = None,
    var_file: VarFileOption = None,
    target: TargetOption = None,
    parallelism: ParallelismOption = None,
    best_effort: BestEffortOption = None,
    refresh: RefreshOption = None,
):
    """Create, update or replace resources to match the configuration."""
    cancel_event = threading.Event()
    with _errors():
        engine = _engine(ctx, var, var_file, cancel_event)
        saved = Plan.load(str(plan_file)) if plan_file is not None else None

        confirm = None
        if saved is None and not auto_approve and ctx.obj.settings.get("confirmations.apply", True):
            confirm = _confirm(engine, "Do you want to perform these actions?")

        with _cancellation(cancel_event):
            result = engine.apply(
                plan=saved,
                targets=target,
                refresh=refresh,
                parallelism=parallelism,
                best_effort=best_effort,
                confirm=confirm,
                on_event=_progress,
            )

    if result is None:
        console.print("Apply cancelled.")
        raise typer.Exit(1)
    _report(result, "Apply")


@app.command()
def destroy(
    ctx: typer.Context,
    auto_approve: AutoApproveOption = False,
    var: VarOption = None,
    var_file: VarFileOption = None,
    target: TargetOption = None,
    parallelism: ParallelismOption = None,
    best_effort: BestEffortOption = None,
    refresh: RefreshOption = None,
):
    """Destroy every resource in state (or the targets and their dependents)."""
    cancel_event = threading.Event()
    with _errors():
        engine = _engine(ctx, var, var_file, cancel_event)

        confirm = None
        if not auto_approve and ctx.obj.settings.get("confirmations.destroy", True):
            confirm = _confirm(engine, "Do you really want to destroy these resources?")

        with _cancellation(cancel_event):
            result = engine.destroy(
                targets=target,
                refresh=refresh,
                parallelism=parallelism,
                best_effort=best_effort,
                confirm=confirm,
                on_event=_progress,
            )

    if result is None:
        console.print("Destroy cancelled.")
        raise typer.Exit(1)
    _report(result, "Destroy")


@app.command()
def output(
    ctx: typer.Context,
    name: Annotated[Optional[str], typer.Argument(help="Print only this output's value")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print as JSON")] = False,
):
    """Show outputs recorded by the last apply."""
    with _errors():
        outputs = _engine(ctx).outputs()

    if name is not None:
        if name not in outputs:
            raise _fail(f"Output '{name}' not found")
        value = outputs[name]["value"]
        if as_json or not isinstance(value, str):
            console.print(json.dumps(value, indent=2), markup=False)
        else:
            console.print(value, markup=False)
        return

    if as_json:
        console.print(json.dumps(outputs, indent=2, sort_keys=True), markup=False)
        return

    for key, item in sorted(outputs.items()):
        shown = "<sensitive>" if item.get("sensitive") else json.dumps(item["value"])
        console.print(f"{key} = {shown}", markup=False)


@app.command()
def validate(ctx: typer.Context):
    """Check configuration syntax, references and cycles."""
    with _errors():
        configuration = _engine(ctx).validate()
    console.print(
        f"[green]Success![/green] The configuration is valid "
        f"({len(configuration.resources)} resources, {len(configuration.variables)} variables)."
    )


@app.command("force-unlock")
def force_unlock(
    ctx: typer.Context,
    lock_id: Annotated[str, typer.Argument(help="Lock id reported by the locked-state error")],
    force: Annotated[bool, typer.Option("--force", help="Do not ask for confirmation")] = False,
):
    """Release a state lock left behind by a crashed run."""
    with _errors():
        engine = _engine(ctx)
        if not force:
            answer = typer.prompt(f"Release lock {lock_id}? Only 'yes' will be accepted", default="",
                                  show_default=False)
            if answer.strip() != "yes":
                console.print("Unlock cancelled.")
                raise typer.Exit(1)
        engine.force_unlock(lock_id)
    console.print("[green]State lock released.[/green]")


@state_app.command("list")
def state_list(ctx: typer.Context):
    """List resources recorded in state."""
    with _errors():
        resources = _engine(ctx).state_list()

    table = Table(title="Resources")
    table.add_column("Address", style="cyan")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("ID", style="dim")
    for resource in resources:
        table.add_row(resource.address, resource.type, resource.name, resource.id)
    console.print(table)


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    address: Annotated[str, typer.Argument(help="Resource address, e.g. aws_instance.web")],
):
    """Show one resource's recorded attributes."""
    with _errors():
        engine = _engine(ctx)
        entry = engine.state_show(address)
        sensitive = engine.sensitive_attributes(entry.type)
        redactor = engine.redactor(strict=False)

    console.print(f"# {entry.address}", markup=False)
    console.print(f"id = {json.dumps(entry.id)}", markup=False)
    for key, value in sorted(entry.outputs.items()):
        if key == "id":
            continue
        if key in sensitive:
            console.print(f"{key} = (sensitive)", markup=False)
            continue
        console.print(redactor.redact(f"{key} = {json.dumps(value)}"), markup=False)
    if entry.dependencies:
        console.print(f"# depends on: {', '.join(entry.dependencies)}", markup=False)
    if entry.deposed:
        console.print(f"# deposed, pending delete: {', '.join(entry.deposed)}", markup=False)


@state_app.command("rm")
def state_rm(
    ctx: typer.Context,
    address: Annotated[str, typer.Argument(help="Resource address to forget")],
):
    """Forget a resource without destroying it."""
    with _errors():
        _engine(ctx).state_rm(address)
    console.print(f"Removed {address} from state.")


def main():
    app()


if __name__ == "__main__":
    main()
