"""
Root Typer application for the runspine CLI.

Exit codes:
    0  success
    1  unhandled error
    2  configuration file missing or invalid
    3  ledger could not be opened or migrated
    4  ledger defect (duplicate completion record)
    5  one or more jobs failed and ``--strict`` was given
"""

from __future__ import annotations

from pathlib import Path

import typer
from typer import Typer

from runspine import __version__
from runspine.cli.utils import console, err_console, print_dict, print_error, print_json, print_rows
from runspine.core.config import load_config
from runspine.core.errors import ConfigurationError, DuplicateRecordError, LedgerInitError
from runspine.core.logging import configure_logging, get_logger
from runspine.core.settings import RunspineSettings, get_settings
from runspine.engine import run_config
from runspine.execution.ledger import CompletionLedger
from runspine.execution.process import probe_capabilities
from runspine.reporting import ConsoleReporter, LogReporter

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_UNHANDLED = 1
EXIT_CONFIG = 2
EXIT_LEDGER_INIT = 3
EXIT_LEDGER_DEFECT = 4
EXIT_JOBS_FAILED = 5

app = Typer(
    name="runspine",
    help="runspine - run discovered jobs once, remember what finished.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
ledger_app = Typer(no_args_is_help=True)
app.add_typer(ledger_app, name="ledger", help="Inspect and initialize the completion ledger.")


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"runspine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """runspine CLI - run jobs from a configuration file and manage the ledger."""


def _settings(database: Path | None = None, **overrides: object) -> RunspineSettings:
    settings = get_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    if database is not None:
        update["database"] = database
    return settings.model_copy(update=update) if update else settings


# ── run ──────────────────────────────────────────────────────────────────


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Job configuration file (JSON or YAML)"),
    database: Path | None = typer.Option(None, "--database", "-d", help="Ledger database path"),
    max_concurrent: int | None = typer.Option(None, "--max-concurrent", "-j", min=1, help="Jobs in flight"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before a job's process is killed"),
    strict: bool = typer.Option(False, "--strict", help="Exit non-zero when any job failed"),
    json_out: bool = typer.Option(False, "--json", help="Print the run report as JSON"),
) -> None:
    """Discover jobs from CONFIG_PATH and run the ones not completed yet."""
    settings = _settings(database, job_timeout_seconds=timeout)

    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        raise typer.Exit(code=EXIT_CONFIG) from exc

    configure_logging(level=config.log_level or settings.log_level, json_format=settings.json_logs())

    reporters = [LogReporter()]
    if not json_out:
        reporters.append(ConsoleReporter(console))

    try:
        report = run_config(config, settings, reporters=reporters, max_concurrent=max_concurrent)
    except LedgerInitError as exc:
        print_error(f"Failed to initialize ledger, database may be corrupt: {exc}")
        raise typer.Exit(code=EXIT_LEDGER_INIT) from exc
    except Exception as exc:
        logger.exception("cli.unhandled_error", error=str(exc))
        print_error(f"Unhandled error: {exc}")
        raise typer.Exit(code=EXIT_UNHANDLED) from exc

    if json_out:
        print_json(report.to_dict())

    try:
        report.raise_for_defects()
    except DuplicateRecordError as exc:
        print_error(f"Ledger defect: {exc}")
        raise typer.Exit(code=EXIT_LEDGER_DEFECT) from exc

    if strict and report.failed:
        raise typer.Exit(code=EXIT_JOBS_FAILED)


# ── ledger ───────────────────────────────────────────────────────────────


def _open_ledger(database: Path | None) -> CompletionLedger:
    ledger = CompletionLedger(_settings(database).database)
    try:
        ledger.initialize()
    except LedgerInitError as exc:
        print_error(str(exc))
        raise typer.Exit(code=EXIT_LEDGER_INIT) from exc
    return ledger


@ledger_app.command("init")
def ledger_init(
    database: Path | None = typer.Option(None, "--database", "-d", help="Ledger database path"),
) -> None:
    """Create the ledger database and apply pending migrations."""
    path = _settings(database).database
    try:
        applied = CompletionLedger(path).initialize()
    except LedgerInitError as exc:
        print_error(str(exc))
        raise typer.Exit(code=EXIT_LEDGER_INIT) from exc

    if applied:
        console.print(f"Applied {len(applied)} migration(s) to {path}: {', '.join(applied)}")
    else:
        console.print(f"Ledger {path} is up to date.")


@ledger_app.command("show")
def ledger_show(
    record_id: str = typer.Argument(..., help="Job unique id"),
    database: Path | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the completion record of one job."""
    record = _open_ledger(database).lookup(record_id)
    if record is None:
        print_error(f"No record for '{record_id}'")
        raise typer.Exit(code=EXIT_UNHANDLED)

    data = record.to_dict()
    data["state"] = "completed" if record.is_complete else "interrupted"
    if json_out:
        print_json(data)
    else:
        print_dict(data, title=record_id)


@ledger_app.command("list")
def ledger_list(
    database: Path | None = typer.Option(None, "--database", "-d"),
    interrupted: bool = typer.Option(False, "--interrupted", help="Only unfinished records"),
    limit: int = typer.Option(50, "--limit", "-n", min=1),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List completion records, most recent first."""
    ledger = _open_ledger(database)
    records = ledger.list_records(limit=limit, interrupted_only=interrupted)
    rows = [record.to_dict() for record in records]
    if json_out:
        print_json({"items": rows, "total": ledger.count()})
        return
    print_rows(rows, title="Completion records")


# ── probe ────────────────────────────────────────────────────────────────


@app.command()
def probe(
    binaries: list[str] = typer.Argument(..., help="Binaries to look up on PATH"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check which external binaries are available."""
    capabilities = probe_capabilities(binaries)
    rows = [
        {"binary": name, "found": path is not None, "path": path}
        for name, path in capabilities.binaries.items()
    ]
    if json_out:
        print_json(rows)
    else:
        print_rows(rows, title="Capabilities")

    if capabilities.missing:
        err_console.print(f"[yellow]Missing:[/yellow] {', '.join(capabilities.missing)}")
        raise typer.Exit(code=EXIT_UNHANDLED)
