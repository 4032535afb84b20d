"""
Amendment Expiry Sweep — close every amendment whose voting window has ended.

Meant for cron or for an operator catching up after downtime. Running it
while the API's own background sweep is active is safe: each amendment is
finalized by exactly one caller.

Usage:
    python -m league_assembly.store.sweep
    python -m league_assembly.store.sweep --database-url sqlite:///./assembly.db
    python -m league_assembly.store.sweep --slug amendment-4
"""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.table import Table

from league_assembly.config import settings
from league_assembly.governance.resolution import ResolutionEngine
from league_assembly.store.database import Database

console = Console()


def run_sweep(database_url: str, slug: str | None = None) -> int:
    """
    Run one expiry sweep and print what it closed.

    Returns:
        Number of amendments finalized.
    """
    console.print("\n[bold blue]═══ Amendment Expiry Sweep ═══[/bold blue]")
    if slug:
        console.print(f"  Scope: [bold]{slug}[/bold]")

    database = Database(database_url)
    database.initialize()
    try:
        finalized = ResolutionEngine(database).close_expired_amendments(slug)
    finally:
        database.dispose()

    if not finalized:
        console.print("[yellow]No expired amendments to close[/yellow]\n")
        return 0

    table = Table(show_lines=True)
    table.add_column("Slug", style="cyan")
    table.add_column("Result", width=8)
    table.add_column("Aye", justify="right")
    table.add_column("Nay", justify="right")
    table.add_column("Abstain", justify="right")
    table.add_column("Needed", justify="right")
    table.add_column("Reason", style="dim")

    for record in finalized:
        colour = "green" if record.result.value == "PASSED" else "red"
        table.add_row(
            record.slug,
            f"[{colour}]{record.result.value}[/{colour}]",
            str(record.tally.aye),
            str(record.tally.nay),
            str(record.tally.abstain),
            str(record.needed),
            record.failure_reason or "—",
        )
    console.print(table)
    console.print(f"  Closed: [bold]{len(finalized)}[/bold]\n")
    return len(finalized)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="League Assembly amendment expiry sweep"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--slug",
        default=None,
        help="Only sweep this amendment",
    )
    args = parser.parse_args()

    try:
        run_sweep(args.database_url or settings.database_url_sync, slug=args.slug)
    except Exception as exc:
        console.print(f"[bold red]Sweep failed:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
