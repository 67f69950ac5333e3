"""CLI for split-ledger using Typer."""

import logging
import sys
from decimal import Decimal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .models import Group, Member, SettlementSuggestion, SyncPayload
from .service import LedgerService

app = typer.Typer(
    name="split-ledger",
    help="Track shared group expenses and settle who owes whom",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def format_money(amount: Decimal, currency: str, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02 USD)
    Positive amounts have spaces:      85.02 USD
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"([red]{abs_amount:,.2f}[/red] {currency})"
        return f"({abs_amount:,.2f} {currency})"
    if use_color:
        return f" [green]{abs_amount:,.2f}[/green] {currency} "
    return f" {abs_amount:,.2f} {currency} "


def member_name(group: Group, member_id: str) -> str:
    """Display name of a member, falling back to the id for removed members."""
    member = group.get_member(member_id)
    return member.name if member else f"[dim]{member_id}[/dim]"


def display_balances(group: Group, balances: dict[str, Decimal]):
    """Display member balances in a table."""
    table = Table(
        title=f"Balances: {group.name}", show_header=True, header_style="bold magenta"
    )
    table.add_column("Member", style="cyan")
    table.add_column("Balance", justify="right")

    for member_id, balance in balances.items():
        table.add_row(member_name(group, member_id), format_money(balance, group.currency))

    console.print(table)


def display_suggestions(group: Group, suggestions: list[SettlementSuggestion]):
    """Display suggested transfers in a table."""
    if not suggestions:
        console.print("[green]✓ Everyone is settled up.[/green]")
        return

    table = Table(
        title=f"Suggested transfers: {group.name}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", style="dim", width=4)
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right")

    for idx, suggestion in enumerate(suggestions, start=1):
        table.add_row(
            str(idx),
            member_name(group, suggestion.from_member),
            member_name(group, suggestion.to_member),
            format_money(suggestion.amount, suggestion.currency),
        )

    console.print(table)


def _open_service() -> tuple[LedgerService, Database]:
    settings = load_settings()
    db = Database(settings.database_path)
    return LedgerService(settings, db), db


@app.command()
def balances(
    group_id: str = typer.Argument(..., help="Group ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show each member's net balance (positive = is owed money)."""
    setup_logging(verbose)

    try:
        service, db = _open_service()
        group = service.get_group(group_id)
        display_balances(group, service.get_balances(group_id))

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def suggest(
    group_id: str = typer.Argument(..., help="Group ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Suggest the transfers that settle a group."""
    setup_logging(verbose)

    try:
        service, db = _open_service()
        group = service.get_group(group_id)
        suggestions = service.suggest_settlements(group_id)
        display_suggestions(group, suggestions)

        if suggestions:
            first = suggestions[0]
            console.print(
                f"\n[bold]To record a transfer once it is paid, run:[/bold]\n"
                f"  [cyan]split-ledger settle {group_id} {first.from_member} "
                f"{first.to_member} {first.amount}[/cyan]\n"
            )

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def settle(
    group_id: str = typer.Argument(..., help="Group ID"),
    from_member: str = typer.Argument(..., help="Paying member ID"),
    to_member: str = typer.Argument(..., help="Receiving member ID"),
    amount: str = typer.Argument(..., help="Amount in group currency"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a transfer that has actually been paid."""
    setup_logging(verbose)

    try:
        service, db = _open_service()
        settlement = service.record_settlement(
            group_id, from_member, to_member, Decimal(amount)
        )
        console.print(
            f"\n[bold green]✓ Recorded settlement {settlement.id}[/bold green] "
            f"({settlement.amount} {settlement.currency})"
        )

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def invite(
    group_id: str = typer.Argument(..., help="Group ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the group's invite code, creating it if needed."""
    setup_logging(verbose)

    try:
        service, db = _open_service()
        code = service.generate_invite(group_id)
        console.print(f"Invite code: [bold cyan]{code}[/bold cyan]")

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def join(
    code: str = typer.Argument(..., help="Invite code"),
    member_id: str = typer.Argument(..., help="New member ID"),
    name: str = typer.Argument(..., help="New member name"),
    phone: str | None = typer.Option(None, "--phone", help="Phone number"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Join a group with an invite code."""
    setup_logging(verbose)

    try:
        service, db = _open_service()
        group = service.join_group(code, Member(id=member_id, name=name, phone=phone))
        console.print(
            f"[green]✓ {name} is a member of {group.name} "
            f"({len(group.members)} members)[/green]"
        )

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def merge(
    payload_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="JSON sync payload to merge"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Merge a replica's sync payload (JSON) into the local store.

    There are no commands to create groups or add expenses: a fresh store is
    filled by merging a payload exported from another replica.
    """
    setup_logging(verbose)

    try:
        service, db = _open_service()
        payload = SyncPayload.model_validate_json(payload_file.read_text())
        response = service.sync(payload)
        console.print(
            f"\n[bold green]✓ Merged {len(payload.groups)} groups[/bold green]\n"
            f"  New watermark: {response.last_synced_at.isoformat()}"
        )

    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "db" in locals():
            db.close()


if __name__ == "__main__":
    app()
