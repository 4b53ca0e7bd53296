"""Margin and PnL calculations.

Pure functions over wallets, positions and mark prices. Nothing here does
I/O or rounds intermediate values; callers round the final currency delta
with :func:`round_currency`.
"""

from typing import Iterable, Mapping

from perpsim.models import Position, Wallet


def margin_in_use(positions: Iterable[Position]) -> float:
    """Sum of ``amount * execution_price / leverage`` over the positions."""
    return sum((position.margin for position in positions), 0.0)


def available_balance(wallet: Wallet, positions: Iterable[Position]) -> float:
    """Settled balance minus margin reserved by open positions."""
    return wallet.usd_balance - margin_in_use(positions)


def position_pnl(position: Position, mark_price: float) -> float:
    """Leveraged PnL of one position marked at ``mark_price``.

    ``(mark - entry) * amount * direction * leverage`` where direction is
    +1 for longs and -1 for shorts.
    """
    return (
        (mark_price - position.execution_price)
        * position.amount
        * position.direction
        * position.leverage
    )


def aggregate_pnl(
    positions: Iterable[Position], mark_prices: Mapping[str, float]
) -> float:
    """Total PnL of a position set.

    Raises:
        KeyError: If an instrument in the set has no mark price.
    """
    return sum(
        (position_pnl(position, mark_prices[position.currency]) for position in positions),
        0.0,
    )


def unrealized_pnl(
    positions: Iterable[Position], mark_prices: Mapping[str, float]
) -> float:
    """Display PnL, skipping positions whose instrument has no price."""
    return aggregate_pnl(
        [position for position in positions if position.currency in mark_prices],
        mark_prices,
    )


def triggered_positions(
    positions: Iterable[Position], mark_prices: Mapping[str, float]
) -> list[Position]:
    """Positions whose stop loss or take profit has been reached.

    Longs trigger when the mark falls to the stop loss or rises to the take
    profit; shorts the other way around. Unpriced instruments never trigger.
    """
    hits = []
    for position in positions:
        mark = mark_prices.get(position.currency)
        if mark is None:
            continue

        if position.side == "buy":
            stop_hit = position.stop_loss is not None and mark <= position.stop_loss
            target_hit = position.take_profit is not None and mark >= position.take_profit
        else:
            stop_hit = position.stop_loss is not None and mark >= position.stop_loss
            target_hit = position.take_profit is not None and mark <= position.take_profit

        if stop_hit or target_hit:
            hits.append(position)
    return hits


def round_currency(value: float) -> float:
    """Round a USD amount to cents."""
    return round(value, 2)


def format_usd(value: float, signed: bool = False) -> str:
    """Format a USD amount, e.g. ``+$1,250.00``."""
    sign = ""
    if value < 0:
        sign = "-"
    elif signed:
        sign = "+"
    return f"{sign}${abs(value):,.2f}"
