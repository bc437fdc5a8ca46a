"""
CLI interface for aura-guard.

Operator commands: database setup, usage reports and dry runs of the
pattern library against queries and messages.
"""

import logging
import os
import sqlite3
import sys
from typing import Dict, Optional

import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from aura_guard.config.loader import (
    PATTERN_SECTIONS,
    AlertThreshold,
    GuardConfig,
    ProviderCredentials,
    get_pattern_library,
    load_guard_config,
    load_pattern_library,
    pattern_categories,
)
from aura_guard.core.input_sanitizer import InputSanitizer, InputVerdict
from aura_guard.core.validator import QueryValidator
from aura_guard.storage.db import DEFAULT_DB_PATH
from aura_guard.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load_config(path: Optional[str]) -> GuardConfig:
    return load_guard_config(path) if path else GuardConfig()


def _alert_level(percent: float, threshold: Optional[AlertThreshold]) -> str:
    if threshold is None:
        return "-"
    if percent >= threshold.critical:
        return "[red]CRITICAL[/]"
    if percent >= threshold.warning:
        return "[yellow]WARNING[/]"
    return "[green]OK[/]"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """aura-guard CLI."""
    load_dotenv()
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    if ctx.invoked_subcommand is None:
        console.print("aura-guard - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")
):
    """Initialize the durable store."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Guard configuration file")
):
    """Show configuration, credentials and database state."""
    try:
        guard_config = _load_config(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    credentials = ProviderCredentials.from_env()
    available = {
        "openai": bool(credentials.openai_api_key),
        "brave": bool(credentials.brave_api_key),
        "google": bool(credentials.google_api_key and credentials.google_search_engine_id),
        "openweather": bool(credentials.openweather_api_key),
        "coingecko": True,
    }

    table = Table(title="Collaborators")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Credentials")
    for name, has_credentials in available.items():
        enabled = name == "openai" or guard_config.provider_enabled(name)
        table.add_row(
            name,
            "[green]yes[/]" if enabled else "[dim]no[/]",
            "[green]✓[/]" if has_credentials else "[red]missing[/]",
        )
    console.print(table)

    if os.path.exists(db):
        console.print(f"[green]✓[/] Database found at {db}")
    else:
        console.print(f"[yellow]![/] No database at {db}; run `aura-guard init`")
    console.print(f"Daily reply cap: {guard_config.replies.daily_cap}")
    console.print(f"Family friendly: {guard_config.family_friendly}")


@app.command()
def report(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Guard configuration file"),
    days: int = typer.Option(1, "--days", "-d", min=1, help="Number of days to include")
):
    """Report saved daily usage against the configured global limits."""
    try:
        guard_config = _load_config(config)
        repository = UsageRepository(db)
        snapshots = repository.history(days)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `aura-guard init` and start the bot to collect usage.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not snapshots:
        console.print("\n[bold yellow]No usage data found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Daily API usage")
    table.add_column("Date")
    table.add_column("API type")
    table.add_column("Calls", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Level")

    for snapshot in snapshots:
        limit = guard_config.global_limit(snapshot.api_type)
        if limit:
            percent = snapshot.count / limit * 100
            used = f"{percent:.0f}%"
            level = _alert_level(percent, guard_config.monitor.thresholds.get(snapshot.api_type))
        else:
            used, level = "-", "-"
        table.add_row(
            snapshot.date,
            snapshot.api_type,
            str(snapshot.count),
            str(limit) if limit else "unlimited",
            used,
            level,
        )
    console.print(table)


@app.command("check-query")
def check_query(
    api_type: str = typer.Argument(..., help="API type, e.g. web_search or weather"),
    query: str = typer.Argument(..., help="Query to validate"),
    patterns: Optional[str] = typer.Option(None, "--patterns", "-p", help="Custom pattern file")
):
    """Dry-run the query validator. Exits 1 when the query is rejected."""
    library = load_pattern_library(patterns) if patterns else get_pattern_library()
    result = QueryValidator(library).validate(api_type, query)
    if result.valid:
        console.print(f"[green]✓[/] Valid {api_type} query")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] Rejected: {result.reason}")
    if result.category:
        console.print(f"Category: {result.category}")
        console.print(f"Pattern: {result.pattern}")
    sys.exit(EXIT_CODE_FAIL)


@app.command("check-input")
def check_input(
    text: str = typer.Argument(..., help="Message to inspect"),
    patterns: Optional[str] = typer.Option(None, "--patterns", "-p", help="Custom pattern file")
):
    """Dry-run the input sanitizer. Exits 1 when the message is deflected."""
    library = load_pattern_library(patterns) if patterns else get_pattern_library()
    inspected = InputSanitizer(library).inspect(text)

    if inspected.verdict == InputVerdict.CLEAN:
        console.print("[green]✓[/] Clean")
        console.print(f"Forwarded text: {inspected.text}")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] {inspected.verdict.value} ({inspected.category})")
    console.print(f"Reply: {inspected.text}")
    sys.exit(EXIT_CODE_FAIL)


@app.command("validate-config")
def validate_config(
    path: str = typer.Argument(..., help="Guard configuration file"),
    patterns: Optional[str] = typer.Option(None, "--patterns", "-p", help="Pattern file to validate as well")
):
    """Validate a configuration file and, optionally, a pattern file."""
    try:
        guard_config = load_guard_config(path)
        library = load_pattern_library(patterns) if patterns else None
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {path} is valid")
    _print_limits(guard_config.limits, "Hourly limits per user")
    _print_limits(guard_config.global_limits, "Daily global limits")

    if library is not None:
        table = Table(title="Pattern library")
        table.add_column("Section")
        table.add_column("Rules", justify="right")
        table.add_column("Categories")
        for section in PATTERN_SECTIONS:
            table.add_row(section, str(len(library.get(section))), ", ".join(pattern_categories(library, section)))
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _print_limits(limits: Dict[str, int], title: str) -> None:
    table = Table(title=title)
    table.add_column("API type")
    table.add_column("Limit", justify="right")
    for api_type, limit in sorted(limits.items()):
        table.add_row(api_type, str(limit))
    console.print(table)


if __name__ == "__main__":
    app()
