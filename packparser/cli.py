"""
CLI Interface
=============
Command-line interface for the package import pipeline.

Usage:
    packparser parse <file> [options]        # dry run, nothing stored
    packparser import <file> [options]       # run an import job
    packparser status <job_id>
    packparser jobs
    packparser cancel <job_id>
    packparser renumber <package_id> [--mode global|per_tour|manual]
    packparser serve [options]
"""

from __future__ import annotations

import json
import os
import sys
import time

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from . import crud
from . import database as db
from . import storage
from .engine import ImportConfig, configure_logging, dry_run_parse
from .errors import PackageImportError
from .models import JobStatus, NumberingMode

console = Console()

_STATUS_STYLES = {
    "queued": "[yellow]queued[/]",
    "running": "[cyan]running[/]",
    "succeeded": "[green]succeeded[/]",
    "failed": "[red]failed[/]",
    "cancelled": "[dim]cancelled[/]",
}


def _config(log_level: str = "INFO") -> ImportConfig:
    config = ImportConfig.from_env(log_level=log_level)
    configure_logging(config.log_level, config.log_file)
    storage.init_storage(config.data_dir)
    db.init_db(config.db_path)
    return config


@click.group()
@click.version_option(version=__version__, prog_name="packparser")
def cli():
    """Package Parser: quiz package import pipeline."""
    pass


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--normalize",
    is_flag=True,
    default=False,
    help="Use the configured normalizer for low-confidence parses",
)
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only the JSON result to stdout (for programmatic use)",
)
def parse(file_path: str, normalize: bool, log_level: str, json_output: bool):
    """Parse a document without storing anything (dry run)."""
    if json_output:
        log_level = "ERROR"
    config = ImportConfig.from_env(log_level=log_level)
    configure_logging(config.log_level, config.log_file)

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Package Parser v{__version__}[/]\n"
                f"[dim]Parsing: {os.path.basename(file_path)}[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        result, report = dry_run_parse(file_path, config, use_normalizer=normalize)
    except PackageImportError as e:
        _print_error(e)
        sys.exit(1)

    if json_output:
        print(json.dumps(
            {
                "result": result.model_dump(mode="json"),
                "report": report.model_dump(mode="json"),
            },
            indent=2,
            ensure_ascii=False,
        ))
        return

    _display_tree(result.package)
    _display_report(report, result.confidence)
    _display_warnings(result.warnings)


@cli.command(name="import")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--owner", default="cli", help="Owner id recorded on the job")
@click.option(
    "--wait/--no-wait",
    default=True,
    help="Process the job here and wait (default), or only queue it "
         "for a running server",
)
@click.option("--log-level", default="WARNING", help="Logging level")
def import_(file_path: str, owner: str, wait: bool, log_level: str):
    """Import a document as a new package."""
    from .scheduler import ImportScheduler

    config = _config(log_level)
    scheduler = ImportScheduler(config=config) if wait else None

    try:
        if scheduler is not None:
            scheduler.start()
        job = crud.create_import_job(
            file_path, os.path.basename(file_path),
            owner_id=owner, config=config, scheduler=scheduler,
        )
    except PackageImportError as e:
        if scheduler is not None:
            scheduler.stop()
        _print_error(e)
        sys.exit(1)

    console.print(f"[bold]Job:[/] {job.id}")
    if scheduler is None:
        console.print("[dim]Queued; a running server will pick it up.[/]")
        return

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Queued...", total=100)
            while True:
                status = crud.get_job_status(job.id, db_path=config.db_path)
                progress.update(
                    task,
                    completed=status["progress"],
                    description=(status["step"] or status["status"]).capitalize(),
                )
                if JobStatus(status["status"]).is_terminal:
                    break
                time.sleep(0.2)
    finally:
        scheduler.stop()

    _display_job(status)
    if status["status"] != JobStatus.SUCCEEDED.value:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
def status(job_id: str):
    """Show one import job."""
    config = _config("WARNING")
    view = crud.get_job_status(job_id, db_path=config.db_path)
    if view is None:
        console.print(f"[red]Job not found:[/] {job_id}")
        sys.exit(1)
    _display_job(view)


@cli.command()
@click.option("--status", "status_filter", default=None,
              type=click.Choice([s.value for s in JobStatus]),
              help="Only jobs in this status")
@click.option("--limit", default=50, type=int, help="Maximum rows")
def jobs(status_filter: str, limit: int):
    """List import jobs, newest first."""
    config = _config("WARNING")
    views = crud.list_job_statuses(status=status_filter, limit=limit,
                                   db_path=config.db_path)
    if not views:
        console.print("[yellow]No jobs found[/]")
        return

    table = Table(title="Import Jobs", border_style="cyan")
    table.add_column("Job", style="bold")
    table.add_column("File")
    table.add_column("Status", justify="center")
    table.add_column("Step")
    table.add_column("Attempts", justify="right")
    table.add_column("Package", justify="right")
    table.add_column("Created")
    for view in views:
        table.add_row(
            view["job_id"][:12],
            view["file_name"],
            _STATUS_STYLES.get(view["status"], view["status"]),
            view["step"] or "-",
            str(view["attempts"]),
            str(view.get("package_id") or "-"),
            view["created_at"] or "",
        )
    console.print(table)


@cli.command()
@click.argument("job_id")
def cancel(job_id: str):
    """Cancel a queued job."""
    from .scheduler import ImportScheduler

    config = _config("WARNING")
    view = crud.get_job_status(job_id, db_path=config.db_path)
    if view is None:
        console.print(f"[red]Job not found:[/] {job_id}")
        sys.exit(1)
    if view["status"] == JobStatus.RUNNING.value:
        console.print(
            "[yellow]The job is running in another process; "
            "cancel it through the HTTP API.[/]"
        )
        sys.exit(1)

    if ImportScheduler(config=config).cancel(job_id):
        console.print(f"[green]Cancelled[/] {job_id}")
    else:
        console.print(f"[yellow]Job is already {view['status']}[/]")


@cli.command()
@click.argument("package_id", type=int)
@click.option("--mode", default=None,
              type=click.Choice([m.value for m in NumberingMode]),
              help="Switch the numbering mode before renumbering")
def renumber(package_id: int, mode: str):
    """Renumber a stored package."""
    config = _config("WARNING")
    result = crud.renumber_package(
        package_id, NumberingMode(mode) if mode else None, db_path=config.db_path
    )
    if result is None:
        console.print(f"[red]Package not found:[/] {package_id}")
        sys.exit(1)
    console.print(
        f"[green]Renumbered[/] package {package_id} "
        f"({result['numbering_mode']}, {result['total_questions']} questions)"
    )


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP server (with its import scheduler)."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Package Parser Service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _print_error(error: PackageImportError):
    console.print(f"[red]Error ({error.kind.value}):[/] {error.message}")
    if error.hint:
        console.print(f"[dim]{error.hint}[/]")


def _display_tree(package):
    """Display the parsed tours as a table."""
    console.print(f"[bold]Title:[/] {package.title or '(none)'}")
    if package.editors:
        console.print(f"[bold]Editors:[/] {', '.join(package.editors)}")
    console.print()

    table = Table(title="Tours", border_style="cyan")
    table.add_column("Tour", style="bold")
    table.add_column("Warm-up", justify="center")
    table.add_column("Blocks", justify="right")
    table.add_column("Questions", justify="right")
    table.add_column("Numbers")
    for tour in package.tours:
        numbers = [q.number for q in tour.ordered_questions()]
        shown = ", ".join(numbers[:6]) + (" …" if len(numbers) > 6 else "")
        table.add_row(
            tour.number,
            "[green]✓[/]" if tour.is_warmup else "",
            str(len(tour.blocks)),
            str(tour.question_count),
            shown,
        )
    console.print(table)
    console.print()


def _display_report(report, confidence: float):
    """Display the review report as a rich table."""
    table = Table(title="Review Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    table.add_row(
        "Total Questions",
        str(report.total_questions),
        "[green]✓[/]" if report.total_questions > 0 else "[red]✗[/]",
    )
    table.add_row(
        "Structured Successfully",
        f"{report.structured_successfully} ({report.success_rate}%)",
        "[green]✓[/]" if report.success_rate >= 90 else "[yellow]⚠[/]",
    )
    table.add_row("Numbering Mode", report.numbering_mode.value, "")
    table.add_row(
        "Confidence",
        f"{confidence:.2f}",
        "[green]✓[/]" if confidence >= 0.7 else "[yellow]⚠[/]",
    )
    table.add_row(
        "Missing Answers",
        str(len(report.questions_missing_answer)),
        status_icon(len(report.questions_missing_answer)),
    )
    table.add_row(
        "Missing Text",
        str(len(report.questions_missing_text)),
        status_icon(len(report.questions_missing_text)),
    )
    table.add_row(
        "Empty Tours",
        str(len(report.empty_tours)),
        status_icon(len(report.empty_tours)),
    )
    console.print(table)
    console.print()


def _display_warnings(warnings):
    if not warnings:
        return
    table = Table(title="Warnings", border_style="yellow")
    table.add_column("Type", style="bold")
    table.add_column("Message")
    for warning in warnings:
        table.add_row(warning.type.value, warning.message)
    console.print(table)
    console.print()


def _display_job(view: dict):
    table = Table(title="Import Job", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Job", view["job_id"])
    table.add_row("File", view["file_name"])
    table.add_row("Status", _STATUS_STYLES.get(view["status"], view["status"]))
    table.add_row("Step", view["step"] or "-")
    table.add_row("Progress", f"{view['progress']}%")
    table.add_row("Attempts", str(view["attempts"]))
    if "package_id" in view:
        table.add_row("Package", str(view["package_id"]))
        table.add_row("Confidence", f"{view['confidence'] or 0:.2f}")
        table.add_row("Warnings", str(len(view["warnings"])))
    if "error" in view:
        table.add_row("Error", f"[red]{view['error']['kind']}[/]: "
                               f"{view['error']['message']}")
        if view["error"]["hint"]:
            table.add_row("Hint", view["error"]["hint"])
    console.print(table)


# ─── Entry point (for python -m packparser.cli) ───────────────────────────────


if __name__ == "__main__":
    cli()
