"""Command line interface.

Commands:
- templates: List template names found in the templates directory
- validate: Check one template document and its inheritance chain
- show: Print the fully resolved template
- privileges: Show the elevation a template needs
- backup / restore: Run an action against a state directory
- status: List the StateRecords in a state directory
- run-plan: Run an execution plan
- config show / config init: Inspect or create the settings file
"""

import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, NoReturn, Optional

import click
import yaml
from rich.console import Console
from rich.table import Table

from .config import ConfigLoader, EngineSettings, load_config
from .config_manager import LoggingConfig, setup_logging
from .engine import StateEngine, build_engine
from .exceptions import StateKeeperError
from .executor import Action, CancellationToken, ExecutionResult
from .plan import ExecutionPlan, PlanResult, PlanRunner
from .state_store import StateStore

console = Console()

_STATUS_STYLE = {
    "captured": "green",
    "applied": "green",
    "skipped": "dim",
    "failed": "red",
}


def _fail(error: StateKeeperError) -> NoReturn:
    console.print(f"[red]Error:[/red] {error.message}")
    if error.recovery_suggestion:
        console.print(f"[dim]{error.recovery_suggestion}[/dim]")
    sys.exit(1)


def _settings(ctx: click.Context) -> EngineSettings:
    obj = ctx.obj
    if obj.get("settings") is None:
        obj["settings"] = load_config(
            obj.get("config_path"), cli_args={"templates_dir": obj.get("templates_dir")}
        )
    return obj["settings"]


def _engine(ctx: click.Context) -> StateEngine:
    obj = ctx.obj
    if obj.get("engine") is None:
        try:
            obj["engine"] = build_engine(_settings(ctx))
        except StateKeeperError as e:
            _fail(e)
    return obj["engine"]


@contextmanager
def _cancel_on_interrupt() -> Iterator[CancellationToken]:
    """Turn the first Ctrl+C into a cancellation between resources."""
    token = CancellationToken()
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def handler(signum: int, frame: Any) -> None:
        console.print("[yellow]Cancelling after the current resource...[/yellow]")
        token.cancel()
        signal.signal(signal.SIGINT, previous)

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Settings file (default: ~/.config/statekeeper/settings.yaml)",
)
@click.option(
    "--templates-dir",
    type=click.Path(path_type=Path),
    help="Directory holding template documents",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (default: STATEKEEPER_LOG_LEVEL or WARNING)",
)
@click.version_option(package_name="statekeeper")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    templates_dir: Optional[Path],
    log_level: Optional[str],
) -> None:
    """Back up and restore machine state described by templates."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("config_path", config_path)
    ctx.obj.setdefault("templates_dir", templates_dir)
    setup_logging(LoggingConfig(level=log_level) if log_level else LoggingConfig())


@cli.command("templates")
@click.pass_context
def list_templates(ctx: click.Context) -> None:
    """List the templates that can be loaded."""
    names = _engine(ctx).loader.source.names()
    if not names:
        click.echo("No templates found.")
        return
    for name in names:
        click.echo(name)


@cli.command()
@click.argument("name")
@click.pass_context
def validate(ctx: click.Context, name: str) -> None:
    """Validate template NAME, including everything it extends."""
    engine = _engine(ctx)
    try:
        template = engine.load_template(name)
    except StateKeeperError as e:
        console.print(f"[red]✗[/red] {name}: {e.message}")
        for issue in getattr(e, "validation_errors", []):
            click.echo(f"  - {issue}")
        sys.exit(1)
    chain = " -> ".join(template.lineage)
    console.print(f"[green]✓[/green] {name} is valid ({len(template.resources)} resource(s))")
    click.echo(f"  lineage: {chain}")


@cli.command()
@click.argument("name")
@click.pass_context
def show(ctx: click.Context, name: str) -> None:
    """Print template NAME with inheritance applied."""
    try:
        template = _engine(ctx).load_template(name)
    except StateKeeperError as e:
        _fail(e)
    click.echo(yaml.safe_dump(template.to_document(), sort_keys=False, allow_unicode=True))


@cli.command()
@click.argument("name")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def privileges(ctx: click.Context, name: str, output_json: bool) -> None:
    """Show whether template NAME needs an elevated session."""
    try:
        requirement = _engine(ctx).analyze_privileges(name)
    except StateKeeperError as e:
        _fail(e)
    if output_json:
        click.echo(json.dumps(requirement.to_dict(), indent=2))
        return
    if not requirement.requires_admin:
        console.print(f"{name}: runs without elevation")
        return
    console.print(f"[yellow]{name}: requires elevation[/yellow]")
    click.echo(f"  access classes: {', '.join(sorted(requirement.access_classes))}")
    for reason in requirement.reasons:
        click.echo(f"  - {reason}")


def _print_execution(result: ExecutionResult) -> None:
    title = f"{result.action.value.capitalize()} {result.template or ''}".strip()
    table = Table(title=title)
    table.add_column("Kind", style="cyan")
    table.add_column("Locator")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    for entry in result.per_resource:
        style = _STATUS_STYLE.get(entry.status.value, "")
        detail = entry.error or entry.message or ""
        if entry.field_errors:
            detail = "; ".join(f"{k}: {v}" for k, v in entry.field_errors.items())
        table.add_row(entry.kind, entry.locator, f"[{style}]{entry.status.value}[/{style}]", detail)
    console.print(table)

    for check in result.prerequisites:
        if not check.passed:
            console.print(f"[yellow]Prerequisite '{check.name}' not met ({check.on_missing})[/yellow]")
    if result.error:
        console.print(f"[red]{result.error}[/red]")
    if result.stopped_early:
        console.print("[red]Stopped early after a required resource failed[/red]")
    if result.cancelled:
        console.print("[yellow]Cancelled[/yellow]")
    if result.requires_reboot:
        console.print("[yellow]A reboot is required to finish applying changes[/yellow]")
    summary = "[green]succeeded[/green]" if result.success else "[red]failed[/red]"
    console.print(f"{title}: {summary} (state: {result.state.value})")


def _run_action(ctx: click.Context, name: str, action: Action, state_dir: Optional[Path], output_json: bool) -> None:
    engine = _engine(ctx)
    try:
        with _cancel_on_interrupt() as token:
            result = engine.invoke(name, action, state_dir, cancel_token=token)
    except StateKeeperError as e:
        _fail(e)
    if output_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_execution(result)
    if not result.success:
        sys.exit(1)


_state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    help="State directory (default: state_dir setting or BACKUP_ROOT)",
)
_json_option = click.option("--json", "output_json", is_flag=True, help="Output as JSON")


@cli.command()
@click.argument("name")
@_state_dir_option
@_json_option
@click.pass_context
def backup(ctx: click.Context, name: str, state_dir: Optional[Path], output_json: bool) -> None:
    """Capture the live state described by template NAME."""
    _run_action(ctx, name, Action.BACKUP, state_dir, output_json)


@cli.command()
@click.argument("name")
@_state_dir_option
@_json_option
@click.pass_context
def restore(ctx: click.Context, name: str, state_dir: Optional[Path], output_json: bool) -> None:
    """Apply the recorded state for template NAME."""
    _run_action(ctx, name, Action.RESTORE, state_dir, output_json)


@cli.command()
@_state_dir_option
@_json_option
@click.pass_context
def status(ctx: click.Context, state_dir: Optional[Path], output_json: bool) -> None:
    """List the StateRecords held in a state directory."""
    directory = state_dir or _engine(ctx).default_state_dir
    if directory is None:
        click.echo("No state directory given; pass --state-dir or set BACKUP_ROOT.", err=True)
        sys.exit(1)
    records = StateStore(directory).list_records()
    if output_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        click.echo(f"No state records in {directory}.")
        return
    table = Table(title=f"State records in {directory}")
    table.add_column("Kind", style="cyan")
    table.add_column("Locator")
    table.add_column("Present")
    table.add_column("Captured At", style="dim")
    table.add_column("Machine", style="dim")
    for record in records:
        present = "[green]yes[/green]" if record.present else "[dim]no[/dim]"
        table.add_row(record.kind, record.locator, present, record.captured_at, record.machine_name)
    console.print(table)


def _print_plan(result: PlanResult) -> None:
    table = Table(title=f"Plan {result.plan}")
    table.add_column("Step", style="cyan")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for execution in result.template_results:
        ok = "[green]ok[/green]" if execution.success else "[red]failed[/red]"
        table.add_row(
            f"{execution.action.value} {execution.template}",
            ok,
            f"{len(execution.per_resource)} resource(s), state {execution.state.value}",
        )
    for action in result.action_results:
        ok = "[green]ok[/green]" if action.success else "[red]failed[/red]"
        table.add_row(action.name, ok, action.message)
    console.print(table)
    if result.requires_reboot:
        console.print("[yellow]A reboot is required to finish applying changes[/yellow]")
    if result.cancelled:
        console.print("[yellow]Cancelled[/yellow]")
    elif result.stopped_early:
        console.print("[red]Plan stopped after a failed step[/red]")


@cli.command("run-plan")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_state_dir_option
@_json_option
@click.pass_context
def run_plan(ctx: click.Context, plan_file: Path, state_dir: Optional[Path], output_json: bool) -> None:
    """Run the template and action steps of PLAN_FILE in order."""
    engine = _engine(ctx)
    directory = state_dir or engine.default_state_dir
    if directory is None:
        click.echo("No state directory given; pass --state-dir or set BACKUP_ROOT.", err=True)
        sys.exit(1)
    settings = ctx.obj.get("settings")
    runner = PlanRunner(
        engine,
        runner=engine.executor.runner,
        machine_name=settings.machine_name if settings else None,
    )
    try:
        plan = ExecutionPlan.from_file(plan_file)
        with _cancel_on_interrupt() as token:
            result = runner.run(plan, Path(directory), cancel_token=token)
    except StateKeeperError as e:
        _fail(e)
    if output_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_plan(result)
    if not result.success:
        sys.exit(1)


@cli.group("config")
def config_group() -> None:
    """Inspect or create the settings file."""
    pass


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective settings (secrets masked)."""
    try:
        settings = _settings(ctx)
    except StateKeeperError as e:
        _fail(e)
    data: Dict[str, Any] = settings.model_dump(mode="json")
    click.echo(yaml.safe_dump(data, sort_keys=False))


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing settings file")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a commented settings file."""
    try:
        path = ConfigLoader(ctx.obj.get("config_path")).create_default_config(force=force)
    except StateKeeperError as e:
        _fail(e)
    console.print(f"[green]✓[/green] Wrote {path}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
