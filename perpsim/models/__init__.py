"""Data models for perpsim."""

from perpsim.models.wallet import DEFAULT_WALLET, Wallet
from perpsim.models.position import Position
from perpsim.models.order import CloseOrder, OpenOrder, TransferRequest, WalletAdjustment
from perpsim.models.ledger import LeaderboardEntry, LedgerRecord, UserSummary
from perpsim.models.result import SettlementResult

__all__ = [
    "CloseOrder",
    "DEFAULT_WALLET",
    "LeaderboardEntry",
    "LedgerRecord",
    "OpenOrder",
    "Position",
    "SettlementResult",
    "TransferRequest",
    "UserSummary",
    "Wallet",
    "WalletAdjustment",
]
