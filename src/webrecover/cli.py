"""webrecover CLI - inspect and maintain the recovery engine.

Main entry point for the webrecover command.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import (
    format_config_for_display,
    get_config_path,
    load_config,
    profile_config,
    save_config,
)
from .errors import ConfigError, handle_exception, set_debug_mode
from .observability import AuditLog
from .recovery.classifier import ErrorClassifier, should_attempt_recovery
from .recovery.strategies import estimate_recovery_time
from .solutions.library import SolutionLibrary, TrustLevel
from .solutions.store import SolutionStore

console = Console()


def setup_logging(debug: bool) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=debug, show_path=debug)],
        force=True,
    )


def _open_library(db_path: str | None) -> SolutionLibrary:
    config = load_config()
    store = SolutionStore(
        db_path or config.library.db_path,
        max_backups=config.library.max_backups,
    )
    if store.degraded:
        console.print("[yellow]Solution store unavailable, using an in-memory store[/yellow]")
    return SolutionLibrary(config.library, store=store)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging and tracebacks")
@click.pass_context
def main(ctx: click.Context, version: bool, debug: bool) -> None:
    """webrecover - error recovery for browser automation flows.

    Classify failures, inspect configuration, and maintain the solution
    library and audit log.
    """
    setup_logging(debug)
    if debug:
        set_debug_mode(True)

    if version:
        console.print(f"webrecover version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# =============================================================================
# Classification
# =============================================================================


@main.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--retry-count", type=int, default=0, help="Attempts already made")
@click.option("--max-retries", type=int, default=3, help="Attempt ceiling")
def classify(message: tuple[str, ...], retry_count: int, max_retries: int) -> None:
    """Classify a failure message and show the strategies that would run."""
    text = " ".join(message)
    classifier = ErrorClassifier()
    analysis = classifier.categorize(text)

    console.print(f"[bold]Category:[/bold] {analysis.category.value}")
    console.print(f"[bold]Confidence:[/bold] {analysis.confidence:.2f}")
    console.print(f"[bold]Known issue:[/bold] {'yes' if analysis.is_known_issue else 'no'}")
    if analysis.matched_pattern:
        console.print(f"[bold]Pattern:[/bold] {analysis.matched_pattern.name}")
    if analysis.quick_fix:
        console.print(f"[bold]Quick fix:[/bold] {analysis.quick_fix.value}")
    if not should_attempt_recovery(text, retry_count, max_retries):
        console.print("[yellow]Recovery would not be attempted for this failure[/yellow]")
    console.print()

    table = Table(title="Suggested strategies")
    table.add_column("Strategy", style="cyan")
    table.add_column("Description")
    table.add_column("Est. success", justify="right")
    table.add_column("Est. time", justify="right")
    for option in analysis.suggested_strategies:
        table.add_row(
            option.strategy.value,
            option.description,
            f"{option.estimated_success_rate:.0%}",
            f"{estimate_recovery_time(option.strategy)}ms",
        )
    console.print(table)


# =============================================================================
# Configuration
# =============================================================================


@main.group()
def config() -> None:
    """Show, create and validate configuration."""


@config.command("show")
@click.option("--secrets", is_flag=True, help="Show the API key unmasked")
def config_show(secrets: bool) -> None:
    """Show the effective configuration."""
    console.print(format_config_for_display(load_config(), show_secrets=secrets), markup=False)


@config.command("init")
@click.option("--profile", "-p", type=click.Choice(["default", "development", "production", "test"]), default="default")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
def config_init(profile: str, force: bool) -> None:
    """Write a configuration file with profile defaults."""
    path = get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists at {path}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        return

    if save_config(profile_config(profile), path):
        console.print(f"[green]✓ Wrote {profile} configuration to {path}[/green]")
    else:
        handle_exception(console, ConfigError(f"Could not write {path}"), "writing configuration")


@config.command("validate")
def config_validate() -> None:
    """Validate the configuration file and report reset values."""
    warnings = load_config().warnings
    if warnings:
        console.print(f"[yellow]{len(warnings)} invalid value(s) reset to defaults:[/yellow]")
        for warning in warnings:
            console.print(f"  • {warning}")
        raise SystemExit(1)
    console.print("[green]✓ Configuration is valid[/green]")


# =============================================================================
# Solutions
# =============================================================================


@main.group()
def solutions() -> None:
    """Inspect and maintain the solution library."""


db_option = click.option("--db", "db_path", type=str, default=None, help="Solution database path")


@solutions.command("stats")
@db_option
def solutions_stats(db_path: str | None) -> None:
    """Show solution library statistics."""
    library = _open_library(db_path)
    try:
        stats = library.store.get_statistics()
    finally:
        library.close()

    console.print("[bold cyan]Solution Library[/bold cyan]")
    console.print(f"  Total: {stats['total_solutions']}")
    console.print(f"  Active: {stats['active_solutions']}")
    console.print(f"  Deprecated: {stats['deprecated_solutions']}")
    console.print(f"  Average success rate: {stats['average_success_rate']:.0%}")
    console.print()

    if stats["top_strategies"]:
        table = Table(title="Top strategies")
        table.add_column("Strategy", style="cyan")
        table.add_column("Solutions", justify="right")
        table.add_column("Success", justify="right")
        for row in stats["top_strategies"]:
            table.add_row(row["strategy"], str(row["count"]), f"{row['avg_success_rate']:.0%}")
        console.print(table)


@solutions.command("export")
@db_option
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write to a file instead of stdout")
@click.option("--format", "fmt", type=click.Choice(["json", "sql", "community"]), default="json")
@click.option("--include-deprecated", is_flag=True, help="Include deprecated solutions")
@click.option("--anonymize", is_flag=True, help="Strip author details (community format)")
@click.option("--min-success-rate", type=float, default=0.7, help="Threshold for community exports")
def solutions_export(
    db_path: str | None,
    output: Path | None,
    fmt: str,
    include_deprecated: bool,
    anonymize: bool,
    min_success_rate: float,
) -> None:
    """Export solutions as JSON, SQL or a shareable community document."""
    library = _open_library(db_path)
    try:
        if fmt == "community":
            text = json.dumps(
                library.export_for_community(anonymize=anonymize, min_success_rate=min_success_rate),
                indent=2,
            )
        else:
            text = library.store.export(include_deprecated=include_deprecated, fmt=fmt)
    finally:
        library.close()

    if output:
        output.write_text(text)
        console.print(f"[green]✓ Exported to {output}[/green]")
    else:
        click.echo(text)


@solutions.command("import")
@db_option
@click.argument("source", type=click.Path(exists=True, path_type=Path))
@click.option("--overwrite", is_flag=True, help="Replace solutions with the same id")
@click.option("--trust", type=click.Choice([t.value for t in TrustLevel]), default=None,
              help="Treat the file as a community export filtered at this trust level")
def solutions_import(db_path: str | None, source: Path, overwrite: bool, trust: str | None) -> None:
    """Import solutions from an export file."""
    library = _open_library(db_path)
    try:
        data = source.read_text()
        if trust:
            result = library.import_solutions(data, overwrite=overwrite, trust_level=trust)
        else:
            result = library.store.import_solutions(data, overwrite=overwrite, validate=True)
    except Exception as e:
        handle_exception(console, e, "importing solutions")
        return
    finally:
        library.close()

    console.print(f"[green]✓ Imported {result.imported}[/green], skipped {result.skipped}")
    for error in result.errors:
        console.print(f"  [red]✗[/red] {error}")


@solutions.command("deprecate")
@db_option
@click.argument("solution_id")
@click.option("--reason", "-r", default="Deprecated manually", help="Reason recorded on the solution")
def solutions_deprecate(db_path: str | None, solution_id: str, reason: str) -> None:
    """Deprecate a solution so searches skip it."""
    library = _open_library(db_path)
    try:
        library.store.deprecate(solution_id, reason)
    except Exception as e:
        handle_exception(console, e, f"deprecating {solution_id}")
        return
    finally:
        library.close()
    console.print(f"[green]✓ Deprecated {solution_id}[/green]")


@solutions.command("backup")
@db_option
def solutions_backup(db_path: str | None) -> None:
    """Back up the solution database."""
    library = _open_library(db_path)
    try:
        path = library.store.create_backup()
    except Exception as e:
        handle_exception(console, e, "backing up the solution store")
        return
    finally:
        library.close()
    console.print(f"[green]✓ Backup written to {path}[/green]")


# =============================================================================
# Audit
# =============================================================================


@main.group()
def audit() -> None:
    """Inspect the generator audit log."""


@audit.command("stats")
@click.option("--log", "log_path", type=click.Path(path_type=Path), default=None, help="Audit log path")
@click.option("--days", type=int, default=7, help="Trend window in days")
def audit_stats(log_path: Path | None, days: int) -> None:
    """Summarize audit events by type, duration and success."""
    config = load_config()
    log = AuditLog(path=log_path or config.audit.log_path, retention_days=config.audit.retention_days)
    if log.path is None or not log.path.exists():
        console.print(f"[dim]No audit log at {log.path}[/dim]")
        return

    log.load()
    stats = log.statistics(days=days)
    console.print("[bold cyan]Audit Log[/bold cyan]")
    console.print(f"  Events: {stats['total_events']}")
    console.print(f"  Average duration: {stats['average_response_time_ms']:.1f}ms")
    console.print(f"  Execution success rate: {stats['success_rate']:.0%}")
    console.print()

    table = Table(title="Events by type")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    for event_type, count in stats["events_by_type"].items():
        table.add_row(event_type, str(count))
    console.print(table)


if __name__ == "__main__":
    main()
