"""Market commands for perpsim CLI.

Handles the leaderboard and the instrument catalog.
"""

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

console = Console()


@click.command("leaderboard")
@click.option("-n", "--limit", type=int, default=None, help="Number of rows (1-50).")
def leaderboard(limit: Optional[int]) -> None:
    """Show the richest accounts by settled USD balance.

    \b
    Examples:
      perpsim leaderboard
      perpsim leaderboard -n 25
    """
    from perpsim.config import load_config
    from perpsim.db.store import LedgerStore
    from perpsim.errors import StorageError
    from perpsim.ledger.leaderboard import get_leaderboard
    from perpsim.ledger.margin import format_usd

    config = load_config()
    store = LedgerStore(config.ledger.db_path)
    try:
        store.initialize()
    except StorageError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise SystemExit(1)

    payload = get_leaderboard(
        store,
        limit,
        default_limit=config.leaderboard.default_limit,
        max_limit=config.leaderboard.max_limit,
    )
    if not payload["ok"]:
        console.print(f"[red]{payload['message']}[/red]")
        raise SystemExit(1)

    rows = payload["leaderboard"]
    if not rows:
        console.print("[dim]No ranked users yet.[/dim]")
        return

    table = Table(title="Leaderboard", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="bold")
    table.add_column("Name")
    table.add_column("USD Balance", justify="right", style="green")
    for row in rows:
        table.add_row(str(row["rank"]), row["name"], format_usd(row["usdBalance"]))
    console.print(table)


@click.command("tokens")
@click.argument("query", required=False, default="")
@click.option("-n", "--limit", type=int, default=20, show_default=True, help="Rows to show.")
def tokens(query: str, limit: int) -> None:
    """List tradable instruments from the price feed.

    \b
    Examples:
      perpsim tokens
      perpsim tokens bit
    """
    from perpsim.config import load_config
    from perpsim.pricing import CryptoComPriceFeed

    config = load_config()
    feed = CryptoComPriceFeed(base_url=config.pricing.base_url, timeout=config.pricing.timeout)
    catalog = feed.fetch_tokens()
    if not catalog:
        console.print("[red]Token feed unavailable.[/red]")
        raise SystemExit(1)

    needle = query.strip().lower()
    if needle:
        catalog = [
            token for token in catalog
            if needle in token.id or needle in token.symbol.lower() or needle in token.name.lower()
        ]

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Instrument", style="bold")
    table.add_column("Symbol")
    table.add_column("Name")
    table.add_column("Market")
    for token in catalog[:limit]:
        table.add_row(token.id, token.symbol, token.name, token.label)
    console.print(table)
