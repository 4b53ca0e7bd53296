"""Read-only leaderboard ranked by settled USD balance."""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from perpsim.db.store import LedgerStore
from perpsim.errors import StorageError
from perpsim.models import LeaderboardEntry, Wallet

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 50


def build_leaderboard(
    rows: Iterable[tuple[int, str, Wallet]], limit: int = DEFAULT_LIMIT
) -> list[LeaderboardEntry]:
    """Rank users by USD balance.

    Balances sort descending with ties broken by user id. Ranks are dense:
    equal balances share a rank and the next balance gets the next rank.

    Args:
        rows: ``(user_id, name, wallet)`` tuples.
        limit: Number of entries to return.

    Returns:
        The top ``limit`` entries.
    """
    ordered = sorted(rows, key=lambda row: (-row[2].usd_balance, row[0]))

    entries: list[LeaderboardEntry] = []
    rank = 0
    previous: Optional[float] = None
    for user_id, name, wallet in ordered[: max(limit, 0)]:
        if wallet.usd_balance != previous:
            rank += 1
            previous = wallet.usd_balance
        entries.append(
            LeaderboardEntry(rank=rank, id=user_id, name=name, usd_balance=wallet.usd_balance)
        )
    return entries


def clamp_limit(limit: Optional[int], default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Bound a requested row count to ``1..maximum``."""
    if limit is None:
        return default
    return min(max(int(limit), 1), maximum)


def get_leaderboard(
    store: LedgerStore,
    limit: Optional[int] = None,
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
) -> dict:
    """Build the leaderboard response from every ledger row.

    Returns:
        ``{ok, leaderboard: [{rank, id, name, usdBalance}], generatedAt}``,
        or ``{ok: False, message}`` if the store cannot be read.
    """
    try:
        rows = store.list_wallets()
    except StorageError:
        logger.exception("Unable to load leaderboard")
        return {"ok": False, "message": "Unable to load leaderboard."}

    entries = build_leaderboard(rows, clamp_limit(limit, default_limit, max_limit))
    return {
        "ok": True,
        "leaderboard": [entry.model_dump(by_alias=True) for entry in entries],
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
