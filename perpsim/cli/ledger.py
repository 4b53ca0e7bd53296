"""Ledger commands for perpsim CLI.

Handles account registration, position management, wallet adjustments
and transfers. Every command acts as the user given by ``--user``.
"""

import json
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def _get_config():
    """Lazily load configuration."""
    from perpsim.config import load_config

    return load_config()


def _get_engine():
    """Get a settlement engine wired to the configured store and feed."""
    from perpsim.errors import StorageError
    from perpsim.ledger.settlement import SettlementEngine

    try:
        return SettlementEngine.from_config(_get_config())
    except StorageError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise SystemExit(1)


def _fmt(value: float, signed: bool = False) -> str:
    from perpsim.ledger.margin import format_usd

    return format_usd(value, signed=signed)


def _pnl_markup(value: float) -> str:
    color = "green" if value >= 0 else "red"
    return f"[{color}]{_fmt(value, signed=True)}[/{color}]"


user_option = click.option(
    "-u", "--user",
    "user_id",
    type=int,
    envvar="PERPSIM_USER",
    required=True,
    help="Acting user id (or set PERPSIM_USER).",
)


def _positions_table(positions, marks: Optional[dict] = None) -> Table:
    from perpsim.ledger.margin import position_pnl

    table = Table(title="Open Positions", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Market", style="bold")
    table.add_column("Side")
    table.add_column("Size", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Margin", justify="right")
    table.add_column("SL / TP", justify="right")
    if marks is not None:
        table.add_column("Mark", justify="right")
        table.add_column("P&L", justify="right")

    for position in positions:
        side = (
            f"[green]LONG {position.leverage:g}x[/green]"
            if position.side == "buy"
            else f"[red]SHORT {position.leverage:g}x[/red]"
        )
        levels = " / ".join(
            _fmt(level) if level is not None else "-"
            for level in (position.stop_loss, position.take_profit)
        )
        row = [
            position.id,
            position.currency.upper(),
            side,
            f"{position.amount:g}",
            _fmt(position.execution_price),
            _fmt(position.margin),
            levels,
        ]
        if marks is not None:
            mark = marks.get(position.currency)
            if mark is None:
                row.extend(["[dim]n/a[/dim]", "[dim]n/a[/dim]"])
            else:
                row.extend([_fmt(mark), _pnl_markup(position_pnl(position, mark))])
        table.add_row(*row)
    return table


def _print_result(result, title: str) -> None:
    """Print a settlement result, exiting with status 1 on failure."""
    if not result.ok:
        console.print(Panel(
            f"[red]{result.message}[/red]",
            title="[bold red]Rejected[/bold red]",
            border_style="red",
        ))
        raise SystemExit(1)

    lines = [f"[green]{result.message}[/green]"] if result.message else []
    if result.closed_pnl is not None and result.closed_count:
        lines.append(f"Realized P&L: {_pnl_markup(result.closed_pnl)}")
    if result.price_source == "fallback":
        lines.append("[yellow]Price feed unavailable; settled at your client price.[/yellow]")
    if result.wallet is not None:
        lines.append(f"USD Balance: {_fmt(result.wallet.usd_balance)}")

    console.print(Panel(
        "\n".join(lines),
        title=f"[bold green]{title}[/bold green]",
        border_style="green",
    ))


# ==================== Accounts ====================


@click.command("register")
@click.argument("name")
@click.argument("email")
def register(name: str, email: str) -> None:
    """Register a user with the default simulated wallet.

    \b
    Examples:
      perpsim register Alice alice@example.com
    """
    from perpsim.errors import LedgerError

    if not name.strip() or "@" not in email:
        console.print("[red]A name and a valid email are required.[/red]")
        raise SystemExit(1)

    engine = _get_engine()

    try:
        user_id = engine.store.create_user(name, email)
    except LedgerError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise SystemExit(1)

    console.print(Panel(
        f"[green]Registered {name.strip()}[/green]\n\n"
        f"User ID: [bold]{user_id}[/bold]\n"
        f"Use [cyan]--user {user_id}[/cyan] or set [cyan]PERPSIM_USER={user_id}[/cyan].",
        title="[bold green]Account Created[/bold green]",
        border_style="green",
    ))


@click.command("users")
@click.argument("query")
@user_option
def users(query: str, user_id: int) -> None:
    """Search other users by name or email.

    \b
    Examples:
      perpsim users ali -u 1
    """
    from perpsim.errors import LedgerError

    engine = _get_engine()
    try:
        matches = engine.store.search_users(query, exclude_id=user_id)
    except LedgerError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise SystemExit(1)

    if not matches:
        console.print("[dim]No matching users.[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Email")
    for match in matches:
        table.add_row(str(match.id), match.name, match.email)
    console.print(table)


@click.command("state")
@click.option("-m", "--mark", is_flag=True, help="Mark positions to live feed prices.")
@user_option
def state(mark: bool, user_id: int) -> None:
    """Show wallet, margin and open positions.

    \b
    Examples:
      perpsim state -u 1
      perpsim state -u 1 --mark
    """
    from perpsim.ledger.margin import unrealized_pnl

    engine = _get_engine()
    result = engine.get_state(user_id)
    if not result.ok:
        _print_result(result, "State")

    wallet = result.wallet
    summary = (
        f"USD Balance:        {_fmt(wallet.usd_balance)}\n"
        f"Margin In Use:      {_fmt(result.margin_in_use)}\n"
        f"Available Balance:  {_fmt(result.available_balance)}\n"
        f"BTC Balance:        {wallet.btc_balance:g}\n"
        f"Bonus:              {_fmt(wallet.bonus)}"
    )

    marks = None
    if mark and result.positions:
        marks = {}
        for currency in {position.currency for position in result.positions}:
            price = engine.resolver.fetch_trusted(currency)
            if price is not None:
                marks[currency] = price
        summary += f"\n{'─' * 35}\nUnrealized P&L:     {_pnl_markup(unrealized_pnl(result.positions, marks))}"

    console.print(Panel(summary, title="[bold]Wallet[/bold]", border_style="cyan"))

    if result.positions:
        console.print(_positions_table(result.positions, marks))
    else:
        console.print("[dim]No open positions.[/dim]")


# ==================== Trading ====================


@click.command("open")
@click.argument("currency")
@click.argument("side", type=click.Choice(["buy", "sell"]))
@click.argument("amount", type=float)
@click.option("-l", "--leverage", type=float, default=5.0, show_default=True, help="Leverage multiplier.")
@click.option(
    "-p", "--price",
    "client_price",
    type=float,
    default=None,
    help="Price you are seeing. Only used, within bounds, if the feed is down.",
)
@click.option("-s", "--sl", "stop_loss", type=float, default=None, help="Stop-loss price.")
@click.option("-t", "--tp", "take_profit", type=float, default=None, help="Take-profit price.")
@user_option
def open_position(
    currency: str,
    side: str,
    amount: float,
    leverage: float,
    client_price: Optional[float],
    stop_loss: Optional[float],
    take_profit: Optional[float],
    user_id: int,
) -> None:
    """Open a leveraged market position.

    \b
    Examples:
      perpsim open bitcoin buy 0.01 -l 5 -u 1
      perpsim open ethereum sell 0.5 -l 10 --sl 4200 --tp 3600 -u 1
    """
    engine = _get_engine()
    result = engine.open_position(user_id, {
        "currency": currency,
        "side": side,
        "amount": amount,
        "leverage": leverage,
        "clientPrice": client_price,
        "stopLoss": stop_loss,
        "takeProfit": take_profit,
    })
    _print_result(result, "Position Opened")


@click.command("close")
@click.argument("position_id")
@click.option("-p", "--price", "client_price", type=float, default=None, help="Fallback price.")
@user_option
def close_position(position_id: str, client_price: Optional[float], user_id: int) -> None:
    """Close one position by id.

    \b
    Examples:
      perpsim close bitcoin-1718000000000-1a2b3c4d -u 1
    """
    engine = _get_engine()
    result = engine.close_position(
        user_id, {"positionId": position_id, "clientPrice": client_price}
    )
    _print_result(result, "Position Closed")


@click.command("close-all")
@click.argument("currency", required=False)
@click.option("-p", "--price", "client_price", type=float, default=None, help="Fallback price.")
@user_option
def close_all(currency: Optional[str], client_price: Optional[float], user_id: int) -> None:
    """Close every position, or every position in CURRENCY.

    \b
    Examples:
      perpsim close-all -u 1
      perpsim close-all bitcoin -u 1
    """
    engine = _get_engine()
    result = engine.close_all(
        user_id, {"closeAll": True, "currency": currency, "clientPrice": client_price}
    )
    _print_result(result, "Positions Closed")


@click.command("sweep")
@user_option
def sweep(user_id: int) -> None:
    """Close positions whose stop loss or take profit was reached.

    \b
    Examples:
      perpsim sweep -u 1
    """
    engine = _get_engine()
    _print_result(engine.close_triggered(user_id), "Sweep")


# ==================== Wallet ====================


@click.command("adjust")
@click.argument("amount", type=float)
@click.argument("reason", required=False, default="")
@user_option
def adjust(amount: float, reason: str, user_id: int) -> None:
    """Settle a signed mini-game result against the wallet.

    \b
    Examples:
      perpsim adjust 250 "Blackjack win" -u 1
      perpsim adjust -- -100 "Roulette loss" -u 1
    """
    engine = _get_engine()
    result = engine.adjust_wallet(user_id, {"amount": amount, "reason": reason})
    _print_result(result, "Wallet Adjusted")


@click.command("transfer")
@click.argument("recipient_id", type=int)
@click.argument("amount", type=float)
@click.option("-n", "--note", default=None, help="Optional note for the recipient.")
@user_option
def transfer(recipient_id: int, amount: float, note: Optional[str], user_id: int) -> None:
    """Send simulated balance to another user.

    \b
    Examples:
      perpsim transfer 2 100 --note "lunch" -u 1
    """
    engine = _get_engine()
    result = engine.transfer(
        user_id, {"recipientId": recipient_id, "amount": amount, "note": note}
    )
    _print_result(result, "Transfer Sent")


@click.command("transfers")
@click.option("-n", "--limit", type=int, default=20, show_default=True, help="Rows to show.")
@user_option
def transfers(limit: int, user_id: int) -> None:
    """Show sent and received transfers, newest first.

    \b
    Examples:
      perpsim transfers -u 1
    """
    from perpsim.errors import LedgerError

    engine = _get_engine()
    try:
        if engine.store.get_user(user_id) is None:
            console.print("[red]User not found.[/red]")
            raise SystemExit(1)
        rows = engine.store.get_transfers(user_id, limit=max(limit, 1))
        names = {}
        for row in rows:
            for other_id in (row["senderId"], row["recipientId"]):
                if other_id != user_id and other_id not in names:
                    other = engine.store.get_user(other_id)
                    names[other_id] = other.name if other else f"#{other_id}"
    except LedgerError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise SystemExit(1)

    if not rows:
        console.print("[dim]No transfers yet.[/dim]")
        return

    table = Table(title="Transfers", show_header=True, header_style="bold cyan")
    table.add_column("When", style="dim")
    table.add_column("Direction")
    table.add_column("Counterparty", style="bold")
    table.add_column("Amount", justify="right")
    table.add_column("Note")
    for row in rows:
        if row["senderId"] == user_id:
            direction = "[red]Sent[/red]"
            counterparty = names.get(row["recipientId"], "")
            amount = f"[red]{_fmt(-row['amount'])}[/red]"
        else:
            direction = "[green]Received[/green]"
            counterparty = names.get(row["senderId"], "")
            amount = f"[green]{_fmt(row['amount'], signed=True)}[/green]"
        table.add_row(row["createdAt"][:19], direction, counterparty, amount, row["note"] or "")
    console.print(table)


@click.command("request")
@click.argument("payload")
@user_option
def request(payload: str, user_id: int) -> None:
    """Apply a raw JSON action payload and print the JSON response.

    \b
    Examples:
      perpsim request '{"action": "walletAdjust", "amount": 50, "reason": "Flappy"}' -u 1
    """
    try:
        body = json.loads(payload)
    except ValueError:
        console.print_json(json.dumps({"ok": False, "message": "Invalid JSON payload."}))
        raise SystemExit(1)

    engine = _get_engine()
    result = engine.handle(user_id, body)
    console.print_json(json.dumps(result.to_payload()))
    if not result.ok:
        raise SystemExit(1)
