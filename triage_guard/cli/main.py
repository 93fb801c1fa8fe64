"""
CLI interface for Triage Guard.

Operator access to the ledger, run history, offline screening and the HTTP
server.
"""

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from triage_guard.api.app import create_app
from triage_guard.config.loader import Settings, configure_logging, load_settings
from triage_guard.core.classifier import BibRecord, classify_records, summarize_decisions
from triage_guard.core.criteria import DEFAULT_CRITERIA_TEXT, CriteriaText, build_criteria
from triage_guard.storage.db import initialize_schema
from triage_guard.storage.ledger import Ledger, build_ledger
from triage_guard.storage.repository import RunRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    config_path = (ctx.obj or {}).get("config")
    settings = load_settings(config_path=config_path)
    configure_logging(settings.log_level)
    return settings


def _ledger(settings: Settings) -> Ledger:
    initialize_schema(settings.db_path)
    return build_ledger(
        db_path=settings.db_path,
        disabled=settings.ledger_disabled,
        conversion_rate=settings.tuning.credit_conversion_rate,
    )


def _format_cents(cents: int, currency: str = "usd") -> str:
    """Format integer cents as a currency amount."""
    symbol = "$" if currency == "usd" else f"{currency.upper()} "
    return f"{symbol}{cents / 100:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML tuning file (overrides TRIAGE_GUARD_CONFIG)",
    ),
):
    """Triage Guard CLI."""
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Triage Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Triage Guard database."""
    try:
        settings = _settings(ctx)
        initialize_schema(settings.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show the effective configuration."""
    try:
        settings = _settings(ctx)
    except Exception as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Triage Guard")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Database", settings.db_path)
    table.add_row("Ledger", "[yellow]disabled[/]" if settings.ledger_disabled else "[green]active[/]")
    table.add_row("Currency", settings.currency.upper())
    table.add_row("Managed providers", ", ".join(sorted(settings.managed_credentials)) or "none")
    table.add_row("Webhook secret", "set" if settings.webhook_secret else "[yellow]missing[/]")
    table.add_row("Max attempts", str(settings.tuning.max_attempts))
    table.add_row("Provider timeout", f"{settings.tuning.provider_timeout_seconds:g}s")
    console.print(table)


@app.command()
def balance(ctx: typer.Context, caller_id: str = typer.Argument(..., help="Caller id")):
    """Show a caller's credit balance."""
    try:
        settings = _settings(ctx)
        ledger = _ledger(settings)
        snapshot = ledger.balance(caller_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not ledger.is_active:
        console.print("[yellow]Ledger is disabled; balances are not tracked.[/]")
    updated = snapshot.updated_at.isoformat() if snapshot.updated_at else "never"
    console.print(f"{caller_id}: {_format_cents(snapshot.balance_cents, settings.currency)} (updated {updated})")


@app.command()
def credit(
    ctx: typer.Context,
    caller_id: str = typer.Argument(..., help="Caller id"),
    charge_cents: int = typer.Argument(..., help="Amount paid, in cents, before conversion"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Reason recorded on the transaction"),
):
    """Grant credits to a caller as if they had paid CHARGE_CENTS."""
    if charge_cents <= 0:
        console.print("[red]Error:[/] charge must be positive")
        sys.exit(EXIT_CODE_FAIL)
    try:
        settings = _settings(ctx)
        ledger = _ledger(settings)
        result = ledger.credit(caller_id, charge_cents, metadata={"source": "cli", "note": note})
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Credited {_format_cents(result.credited_cents, settings.currency)} to {caller_id} "
        f"({_format_cents(result.previous_balance_cents, settings.currency)} -> "
        f"{_format_cents(result.new_balance_cents, settings.currency)})"
    )


@app.command()
def transactions(
    ctx: typer.Context,
    caller_id: str = typer.Argument(..., help="Caller id"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum rows to show"),
):
    """List a caller's ledger transactions, newest first."""
    try:
        settings = _settings(ctx)
        rows = _ledger(settings).transactions(caller_id, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print(f"[dim]No transactions for {caller_id}.[/]")
        return

    table = Table(title=f"Transactions for {caller_id}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance after", justify="right")
    for row in rows:
        table.add_row(
            row.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            row.type.value,
            _format_cents(row.signed_amount_cents, settings.currency),
            _format_cents(row.balance_after_cents, settings.currency),
        )
    console.print(table)


@app.command()
def audit(ctx: typer.Context, caller_id: str = typer.Argument(..., help="Caller id")):
    """Replay a caller's transaction log against the cached balance.

    Exits with a failing code when the two disagree.
    """
    try:
        settings = _settings(ctx)
        result = _ledger(settings).audit(caller_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Balance:      {_format_cents(result.balance_cents, settings.currency)}")
    console.print(f"Log replay:   {_format_cents(result.replayed_balance_cents, settings.currency)}")
    console.print(f"Transactions: {result.transaction_count}")
    if result.consistent:
        console.print("[green]✓[/] Ledger is consistent")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] Drift of {result.drift_cents} cents")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def runs(
    ctx: typer.Context,
    caller_id: Optional[str] = typer.Option(None, "--caller", help="Only this caller's runs"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum rows to show"),
):
    """List recent triage runs."""
    try:
        settings = _settings(ctx)
        initialize_schema(settings.db_path)
        entries = RunRepository(settings.db_path).recent_runs(
            caller_id,
            limit=limit or settings.tuning.run_history_limit,
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[dim]No runs recorded.[/]")
        return

    table = Table(title="Recent runs")
    table.add_column("When")
    table.add_column("Caller")
    table.add_column("Record")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Source")
    table.add_column("Charged", justify="right")
    for entry in entries:
        cost = entry.cost or {}
        charged = cost.get("actualCents")
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.caller_id or "-",
            str(entry.decision.get("key", "")),
            entry.provider,
            str(entry.decision.get("status", "")),
            str(entry.decision.get("source", "")),
            _format_cents(charged, settings.currency) if charged is not None else "-",
        )
    console.print(table)


def _load_records(path: Path) -> List[BibRecord]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("records file must contain a JSON list")
    records = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("key"):
            raise ValueError(f"record {index} needs a key")
        fields = item.get("fields") or {}
        records.append(BibRecord(
            type=str(item.get("type") or "article"),
            key=str(item["key"]),
            fields={str(name): str(value) for name, value in fields.items()},
        ))
    return records


@app.command()
def screen(
    records_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of {type, key, fields}"),
    inclusion: Optional[Path] = typer.Option(None, "--inclusion", "-i", exists=True, help="Inclusion criteria text file"),
    exclusion: Optional[Path] = typer.Option(None, "--exclusion", "-e", exists=True, help="Exclusion criteria text file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write decisions as JSON"),
):
    """Screen records with the deterministic heuristics only."""
    try:
        records = _load_records(records_file)
        criteria_text = CriteriaText(
            inclusion=inclusion.read_text(encoding="utf-8") if inclusion else DEFAULT_CRITERIA_TEXT.inclusion,
            exclusion=exclusion.read_text(encoding="utf-8") if exclusion else DEFAULT_CRITERIA_TEXT.exclusion,
        )
        decisions = classify_records(records, build_criteria(criteria_text))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Screening decisions")
    table.add_column("Key")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Confidence", justify="right")
    table.add_column("Matches")
    for decision in decisions:
        matches = [match.rule_id for match in decision.inclusion_matches + decision.exclusion_matches]
        table.add_row(
            decision.record_key,
            decision.title[:60],
            decision.status.value,
            f"{decision.confidence:.2f}",
            ", ".join(matches) or "-",
        )
    console.print(table)

    summary = summarize_decisions(decisions)
    counts = ", ".join(f"{label}: {count}" for label, count in sorted(summary.by_status.items()))
    console.print(f"\n[bold]Total:[/bold] {summary.total} ({counts or 'none'})")

    if output:
        output.write_text(json.dumps([d.to_dict() for d in decisions], indent=2), encoding="utf-8")
        console.print(f"[green]✓[/] Decisions written to {output}")


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API with uvicorn."""
    try:
        settings = _settings(ctx)
        application = create_app(settings)
    except Exception as e:
        console.print(f"[red]Error starting server:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    uvicorn.run(application, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
