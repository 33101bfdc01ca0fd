"""Command-line interface for dotward."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import typer
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .adoption import AdoptMode, PackageAdoption
from .config import HostContext, load_config
from .errors import AdoptionConflict, ConfigError, DotwardError, LockError
from .log import setup_logging
from .manager import DotStatus, DotwardManager, RunResult
from .models import Action, ActionKind, ExitCode, LinkMode, Mode, OutcomeStatus

app = typer.Typer(help="Declarative dotfiles and package reconciliation", no_args_is_help=False)
console = Console()


@dataclass
class GlobalOptions:
    config: Path | None = None
    verbose: bool = False
    dry_run: bool = False
    non_interactive: bool = False
    host: str | None = None
    profiles: list[str] = field(default_factory=list)

    @property
    def mode(self) -> Mode:
        return Mode.NON_INTERACTIVE if self.non_interactive else Mode.INTERACTIVE


def _load_manager(options: GlobalOptions) -> DotwardManager:
    host = HostContext.detect(options.host, options.profiles)
    config_obj = load_config(options.config, host=host)
    return DotwardManager(config_obj, host)


def _options(ctx: typer.Context) -> GlobalOptions:
    return ctx.ensure_object(GlobalOptions)


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, typer.Exit):
        raise exc
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Re-run the command with elevated privileges (e.g. `sudo`).")
        raise typer.Exit(code=int(ExitCode.ERROR))
    if isinstance(exc, ConfigError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "does not exist" in message and "Configuration file" in message:
            console.print("[yellow]Pass --config <path> or create a dotward.toml in the current directory.[/yellow]")
        raise typer.Exit(code=int(ExitCode.ERROR))
    if isinstance(exc, AdoptionConflict):
        console.print(f"[yellow]Adoption aborted:[/yellow] {exc}")
        raise typer.Exit(code=int(ExitCode.NEEDS_ATTENTION))
    if isinstance(exc, LockError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ERROR))
    if isinstance(exc, DotwardError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ERROR))
    raise exc


def _confirm_action(action: Action) -> bool | None:
    if action.kind is ActionKind.CONFLICT:
        question = f"[yellow]{action.target}[/yellow] conflicts ({action.rationale}). Overwrite it?"
    else:
        question = f"Remove orphan [yellow]{action.target}[/yellow] ({action.rationale})?"
    return Confirm.ask(question, default=False, console=console)


def _launch_editor(path: Path) -> None:
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    argv = [*shlex.split(editor), str(path)]
    try:
        completed = subprocess.run(argv, check=False)
    except OSError as exc:
        raise DotwardError(f"Cannot launch editor '{editor}': {exc}") from exc
    if completed.returncode != 0:
        raise DotwardError(f"Editor '{editor}' exited with status {completed.returncode}")


_STATUS_STYLES = {
    OutcomeStatus.APPLIED: "green",
    OutcomeStatus.SIMULATED: "cyan",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.NOT_RUN: "red",
}


def _format_run(result: RunResult, *, verbose: bool) -> None:
    report = result.report
    rationales = {action.subject: action.rationale for action in result.plan.actions}
    rationales.update({action.subject: action.rationale for action in result.plan.packages})

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Action", no_wrap=True)
    table.add_column("Subject", overflow="fold")
    table.add_column("Status", no_wrap=True)
    table.add_column("Details", overflow="fold")

    for outcome in report.outcomes:
        if outcome.kind == ActionKind.SKIP.value and outcome.status is OutcomeStatus.SKIPPED and not verbose:
            continue
        style = _STATUS_STYLES.get(outcome.status, "white")
        details = outcome.message
        if verbose and rationales.get(outcome.subject) and rationales[outcome.subject] not in details:
            details = f"{details} ({rationales[outcome.subject]})"
        table.add_row(outcome.kind, outcome.subject, f"[{style}]{outcome.status.value}[/{style}]", details)

    if table.row_count:
        console.print(table)

    if report.simulated:
        console.print("[cyan]Dry run: no changes were made.[/cyan]")

    skipped = report.skipped
    conflicts = [outcome for outcome in skipped if outcome.kind == ActionKind.CONFLICT.value]
    orphans = [outcome for outcome in skipped if outcome.kind == ActionKind.REMOVE.value]
    unconfigured = [outcome for outcome in report.outcomes if outcome.kind == "unconfigured"]
    for outcome in conflicts:
        console.print(f"[yellow]conflict skipped:[/yellow] {outcome.subject}: {outcome.message}")
    for outcome in orphans:
        console.print(f"[yellow]orphan left in place:[/yellow] {outcome.subject}: {outcome.message}")
    for outcome in unconfigured:
        console.print(f"[yellow]package not configured:[/yellow] {outcome.subject}: {outcome.message}")
    for outcome in report.failed:
        console.print(f"[red]failed:[/red] {outcome.subject}: {outcome.message}")
    if report.aborted:
        console.print("[red]Run aborted: the state file could not be written.[/red]")
    if report.cancelled:
        console.print("[red]Run cancelled; remaining actions were not run.[/red]")

    if report.exit_code is ExitCode.OK and not table.row_count:
        console.print("[green]Everything is up to date.[/green]")


def _format_dots(statuses: Iterable[DotStatus], *, verbose: bool) -> None:
    styles = {
        ActionKind.SKIP: "green",
        ActionKind.CREATE: "cyan",
        ActionKind.UPDATE: "cyan",
        ActionKind.CONFLICT: "red",
    }
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Source")
    table.add_column("Target", overflow="fold")
    table.add_column("Mode", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    if verbose:
        table.add_column("Details", overflow="fold")

    for status in statuses:
        label = "in_sync" if status.kind is ActionKind.SKIP else status.kind.value
        style = styles.get(status.kind, "white")
        row = [
            status.entry.source.as_posix(),
            str(status.entry.target),
            status.entry.link_mode.value,
            f"[{style}]{label}[/{style}]",
        ]
        if verbose:
            row.append(status.rationale)
        table.add_row(*row)

    console.print(table)


def _format_package_adoption(result: PackageAdoption) -> None:
    if result.adopted:
        console.print(f"[green]Adopted {len(result.adopted)} package(s):[/green] {', '.join(result.adopted)}")
    if result.marked_managed:
        console.print(f"Marked as managed (already configured): {', '.join(result.marked_managed)}")
    if result.already_managed:
        console.print(f"Already managed: {', '.join(result.already_managed)}")
    if result.not_installed:
        console.print(f"[yellow]Not installed (skipped):[/yellow] {', '.join(result.not_installed)}")
    if result.ignored:
        console.print(f"Ignored from now on: {', '.join(result.ignored)}")


def _choose_packages(candidates: list[str]) -> tuple[list[str], list[str]]:
    if not candidates:
        console.print("[yellow]No unmanaged explicitly installed packages to adopt.[/yellow]")
        return [], []

    console.print(f"{len(candidates)} package(s) available for adoption")
    adopted: list[str] = []
    ignored: list[str] = []
    for candidate in candidates:
        try:
            answer = Prompt.ask(
                f"Package [bold]{candidate}[/bold]: \\[a]dopt / \\[i]gnore / \\[s]kip / \\[q]uit",
                choices=["a", "i", "s", "q"],
                default="s",
                show_choices=False,
                console=console,
            )
        except EOFError:
            answer = "q"
        if answer == "q":
            break
        if answer == "a":
            adopted.append(candidate)
        elif answer == "i":
            ignored.append(candidate)
    return adopted, ignored


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotward.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show per-action rationale"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Plan and validate without changing anything"),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        "-y",
        help="Never prompt; conflicts and orphans are skipped and reported",
    ),
    host: str | None = typer.Option(None, "--host", help="Hostname to resolve host-specific configuration for"),
    profile: list[str] = typer.Option(None, "--profile", "-p", help="Activate profile(s)"),
) -> None:
    """Reconcile dotfiles and packages with the configuration (default: apply)."""

    ctx.obj = GlobalOptions(
        config=config,
        verbose=verbose,
        dry_run=dry_run,
        non_interactive=non_interactive,
        host=host,
        profiles=list(profile or []),
    )
    setup_logging(verbose, console=Console(stderr=True))
    if ctx.invoked_subcommand is None:
        apply(ctx)


@app.command()
def apply(ctx: typer.Context) -> None:
    """Create, update and report managed dotfiles and packages."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        result = manager.apply(
            mode=options.mode,
            dry_run=options.dry_run,
            prompt=_confirm_action if options.mode is Mode.INTERACTIVE else None,
        )
        _format_run(result, verbose=options.verbose)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
    else:
        raise typer.Exit(code=int(result.report.exit_code))


@app.command()
def clean(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Remove unmodified orphans without asking"),
) -> None:
    """Remove targets that are recorded as applied but no longer configured."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        result = manager.clean(
            mode=options.mode,
            dry_run=options.dry_run,
            force=force,
            prompt=_confirm_action if options.mode is Mode.INTERACTIVE else None,
        )
        _format_run(result, verbose=options.verbose)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
    else:
        raise typer.Exit(code=int(result.report.exit_code))


@app.command()
def dots(ctx: typer.Context) -> None:
    """List managed entries and their current status."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        statuses = manager.dots()
        _format_dots(statuses, verbose=options.verbose)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def add(
    ctx: typer.Context,
    source: Path = typer.Argument(..., help="Source path inside the dotfiles directory"),
    target: str = typer.Argument(..., help="Destination path, e.g. ~/.bashrc"),
    mode: LinkMode | None = typer.Option(None, "--mode", "-m", help="symlink, copy or template"),
    host: list[str] = typer.Option(None, "--only-host", help="Restrict the entry to host(s)"),
    profile: list[str] = typer.Option(None, "--only-profile", help="Restrict the entry to profile(s)"),
    permissions: str | None = typer.Option(None, "--permissions", help="Octal mode for copied files"),
) -> None:
    """Register a new managed entry from a source file."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        entry = manager.add(
            source,
            target,
            link_mode=mode,
            hosts=host or [],
            profiles=profile or [],
            permissions=permissions,
        )
        console.print(f"[green]Added[/green] {entry.source} -> {entry.target} ({entry.link_mode.value})")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def adopt(
    ctx: typer.Context,
    items: list[str] = typer.Argument(None, help="Files (or package names with --package) to adopt"),
    target: Path | None = typer.Option(None, "--target", "-t", help="Target location, when it differs from PATH"),
    name: str | None = typer.Option(None, "--name", help="Source name inside the dotfiles directory"),
    mode: LinkMode | None = typer.Option(None, "--mode", "-m", help="symlink, copy or template"),
    copy: bool = typer.Option(False, "--copy", help="Leave the original in place until the next apply"),
    package: bool = typer.Option(False, "--package", help="Adopt installed packages instead of files"),
    backend: str | None = typer.Option(None, "--backend", "-b", help="Package backend for --package"),
    ignore: bool = typer.Option(False, "--ignore", help="With --package: never offer the named packages again"),
) -> None:
    """Fold existing unmanaged files or packages into the configuration."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        if package:
            names = list(items or [])
            ignored: list[str] = []
            if ignore:
                names, ignored = [], names
            elif not names and options.mode is Mode.INTERACTIVE:
                names, ignored = _choose_packages(manager.package_candidates(backend))
                if not names and not ignored:
                    console.print("[yellow]No packages selected for adoption.[/yellow]")
                    return
            result = manager.adopt_packages(names, backend, ignore=ignored)
            _format_package_adoption(result)
            return

        if not items:
            raise ConfigError("Nothing to adopt: pass at least one path")
        if len(items) > 1 and (target or name):
            raise ConfigError("--target and --name only apply when adopting a single path")
        for item in items:
            entry = manager.adopt(
                Path(item),
                target,
                source_name=name,
                link_mode=mode,
                mode=AdoptMode.COPY if copy else AdoptMode.MOVE,
            )
            console.print(f"[green]Adopted[/green] {entry.target} as {entry.source} ({entry.link_mode.value})")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def find(ctx: typer.Context, pattern: str = typer.Argument(..., help="Glob or text to search for")) -> None:
    """Search managed entries by source or target."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        matches = manager.find(pattern)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    if not matches:
        console.print(f"[yellow]No managed entries match '{pattern}'.[/yellow]")
        raise typer.Exit(code=int(ExitCode.NEEDS_ATTENTION))
    for entry in matches:
        console.print(f"{entry.source.as_posix()} -> {entry.target} ({entry.link_mode.value})")


@app.command()
def edit(ctx: typer.Context, pattern: str = typer.Argument(..., help="Entry to edit, as for 'find'")) -> None:
    """Open a managed entry's source in $VISUAL or $EDITOR."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        matches = manager.find(pattern)
        if not matches:
            raise ConfigError(f"No managed entries match '{pattern}'")
        if len(matches) > 1:
            console.print("[yellow]Several entries match; narrow the pattern:[/yellow]")
            for entry in matches:
                console.print(f"  {entry.source.as_posix()} -> {entry.target}")
            raise typer.Exit(code=int(ExitCode.NEEDS_ATTENTION))
        source = matches[0].source_path
        if source.is_dir():
            raise ConfigError(f"'{source}' is a directory; open it with your editor directly")
        _launch_editor(source)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command("config-check")
def config_check(ctx: typer.Context) -> None:
    """Validate the configuration without planning."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        warnings = manager.check()
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    effective = manager.effective
    console.print(
        f"[green]Configuration is valid[/green] for host '{effective.host.hostname}': "
        f"{len(effective.dots)} dot(s), {len(effective.packages)} package(s)."
    )


@app.command("config-host")
def config_host(ctx: typer.Context) -> None:
    """Print the effective configuration for the selected host."""

    options = _options(ctx)
    try:
        manager = _load_manager(options)
        effective = manager.effective
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    profiles = ", ".join(sorted(effective.host.profiles)) or "-"
    console.print(f"[bold]Host:[/bold] {effective.host.hostname}  [bold]Profiles:[/bold] {profiles}")
    for overlay in manager.config.overlays:
        console.print(f"[bold]Overlay:[/bold] {overlay}")

    table = Table(show_header=True, header_style="bold magenta", title="Dots")
    table.add_column("Source")
    table.add_column("Target", overflow="fold")
    table.add_column("Mode")
    table.add_column("Permissions")
    for entry in effective.dots:
        mode_bits = f"{entry.permissions:04o}" if entry.permissions is not None else ""
        table.add_row(entry.source.as_posix(), str(entry.target), entry.link_mode.value, mode_bits)
    console.print(table)

    if effective.packages:
        packages = Table(show_header=True, header_style="bold magenta", title="Packages")
        packages.add_column("Backend")
        packages.add_column("Name")
        for package in effective.packages:
            packages.add_row(package.backend, package.name)
        console.print(packages)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
