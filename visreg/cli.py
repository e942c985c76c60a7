"""CLI entry point for the visual regression engine."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from visreg.errors import VisualRegressionError
from visreg.models.changeset import ChangesetContext
from visreg.models.config import FrameworkConfig
from visreg.models.test_result import RunResult
from visreg.orchestrator import Orchestrator

console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(config: str) -> FrameworkConfig:
    try:
        return FrameworkConfig.load(config)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Run 'visreg init' to create a default config.")
        sys.exit(1)


def _print_summary(result: RunResult) -> None:
    status = "[bold green]PASSED[/bold green]" if result.passed else "[bold red]FAILED[/bold red]"
    console.print(f"\nChangeset #{result.changeset_id}: {status}")

    table = Table(title="Route Results")
    table.add_column("Route", style="bold")
    table.add_column("Priority")
    table.add_column("Result")
    table.add_column("Diff")
    table.add_column("Details")
    for outcome in result.results:
        if outcome.baseline_created:
            verdict = "[cyan]NEW BASELINE[/cyan]"
        elif outcome.passed:
            verdict = "[green]PASS[/green]"
        else:
            verdict = "[red]FAIL[/red]"
        diff = f"{outcome.comparison.diff_percentage:.2f}%" if outcome.comparison else "-"
        details = outcome.error or outcome.diff_path or ""
        table.add_row(outcome.route, outcome.priority, verdict, diff, details)
    console.print(table)

    console.print(
        f"Total: {result.total_tests}  "
        f"[green]Passed: {result.passed_tests}[/green]  "
        f"[red]Failed: {result.failed_tests}[/red]  "
        f"New baselines: {result.baselines_created}  "
        f"Duration: {result.duration_seconds:.1f}s"
    )
    if result.report_path:
        console.print(f"  JSON report: [blue]{result.report_path}[/blue]")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Changeset-driven visual regression testing"""
    setup_logging(verbose)


@cli.command()
@click.option("--config", "-c", default="visreg-config.json", help="Config file path")
@click.option("--changeset", "-s", required=True, help="Changeset JSON (id, diff, files, routes)")
@click.option("--update-baselines", is_flag=True, help="Store every capture as the new baseline")
def run(config: str, changeset: str, update_baselines: bool) -> None:
    """Classify a changeset, capture affected routes and compare them to baselines."""
    cfg = _load_config(config)
    if update_baselines:
        cfg.update_baselines = True
    try:
        context = ChangesetContext.load(changeset)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid changeset file {changeset}:[/red] {e}")
        sys.exit(1)

    orchestrator = Orchestrator(cfg)
    try:
        result = orchestrator.run(context, handle_interrupts=True)
    except VisualRegressionError as e:
        console.print(f"[red]{e.code}:[/red] {e}")
        if e.partial_result is not None:
            _print_summary(e.partial_result)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Run interrupted[/yellow]")
        sys.exit(130)

    _print_summary(result)
    if not result.passed:
        sys.exit(1)


@cli.command()
@click.option("--target", "-t", prompt="Target URL", help="Website URL to test")
def init(target: str) -> None:
    """Create a default configuration file."""
    config_path = Path("visreg-config.json")
    if config_path.exists():
        if not click.confirm("visreg-config.json already exists. Overwrite?"):
            return

    cfg = FrameworkConfig(target_url=target)
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nYou can now customize this file and run:")
    console.print("  [blue]visreg run --changeset changeset.json[/blue]")


@cli.group()
def baselines() -> None:
    """Inspect and manage stored baselines."""
    pass


@baselines.command("list")
@click.option("--changeset", "-s", "changeset_id", type=int, default=None, help="Changeset id")
@click.option("--config", "-c", default="visreg-config.json", help="Config file path")
def baselines_list(changeset_id: int | None, config: str) -> None:
    """List baselines, for one changeset or all of them."""
    orchestrator = Orchestrator(_load_config(config))
    try:
        listing = orchestrator.list_baselines(changeset_id)
    except VisualRegressionError as e:
        console.print(f"[red]{e.code}:[/red] {e}")
        sys.exit(1)

    if not any(listing.values()):
        console.print("[yellow]No baselines stored[/yellow]")
        return

    table = Table(title="Baselines")
    table.add_column("Changeset", style="bold")
    table.add_column("Route")
    table.add_column("Viewport")
    table.add_column("Captured")
    table.add_column("File")
    for cid, records in listing.items():
        for record in records:
            table.add_row(f"#{cid}", record.route, record.viewport.label,
                          record.captured_at, record.file_path)
    console.print(table)


@baselines.command("delete")
@click.option("--changeset", "-s", "changeset_id", type=int, required=True, help="Changeset id")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.option("--config", "-c", default="visreg-config.json", help="Config file path")
def baselines_delete(changeset_id: int, yes: bool, config: str) -> None:
    """Delete every baseline stored for a changeset."""
    orchestrator = Orchestrator(_load_config(config))
    if not yes and not click.confirm(f"Delete all baselines for changeset #{changeset_id}?"):
        return
    deleted = orchestrator.delete_baselines(changeset_id)
    console.print(f"[green]Deleted {deleted} baselines for changeset #{changeset_id}[/green]")


@baselines.command("size")
@click.option("--config", "-c", default="visreg-config.json", help="Config file path")
def baselines_size(config: str) -> None:
    """Show the disk space used by stored baselines."""
    orchestrator = Orchestrator(_load_config(config))
    size = orchestrator.baseline_storage_size()
    console.print(f"Baseline storage: {size / (1024 * 1024):.2f} MB ({size} bytes)")


if __name__ == "__main__":
    cli()
